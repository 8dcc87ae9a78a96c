"""Engine orchestration: evaluation ticks, dispatch, escalation and the operational surface"""

import os
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Dict, List, Optional

import psutil

from runbookd import __version__
from runbookd.actions.backends import create_backends
from runbookd.actions.executor import ActionExecutor
from runbookd.alerts.alert_rule import AlertKey, AlertRule, Severity, load_alert_rules
from runbookd.alerts.deduplicator import AlertEvent, Deduplicator, EventType
from runbookd.alerts.notifier import Notifier
from runbookd.alerts.rule_engine import UNKNOWN, RuleEngine
from runbookd.alerts.state_machine import AlertInstance, AlertStateMachine, AlertStore, Transition
from runbookd.alerts.storage.base_storage import AlertRecord, HistoryState
from runbookd.escalation.manager import EscalationManager
from runbookd.exceptions import RunbookNotFound
from runbookd.exporters.prometheus_exporter import PrometheusExporter
from runbookd.metrics import create_metric_source
from runbookd.runbooks.dispatcher import DispatchPlan, RunbookDispatcher
from runbookd.runbooks.runbook import RunbookRegistry, load_runbooks
from runbookd.utils.helpers import get_hostname, parse_duration, to_label_set
from runbookd.utils.logger import get_logger

CLEANUP_EVERY_TICKS = 100


class Engine:
    """Evaluates alert rules on a fixed tick and drives runbooks and escalation"""

    def __init__(self, config: Dict[str, Any], rules: Optional[List[AlertRule]] = None,
                 runbooks: Optional[RunbookRegistry] = None, metric_source=None,
                 backends=None, channels=None, storage=None):
        """
        Initialize engine

        Args:
            config: Configuration dictionary
            rules: Alert rules (loaded from engine.rules_file if omitted)
            runbooks: Runbook registry (loaded from engine.runbooks_file if omitted)
            metric_source: Metric source (built from config if omitted)
            backends: Action backends by name (shell and process if omitted)
            channels: Notification channels by name (built from config if omitted)
            storage: History storage (SQLite from config if omitted)
        """
        self.config = config
        self.logger = get_logger(self.__class__.__name__)
        self.running = False
        self._threads: List[threading.Thread] = []
        self._tick_count = 0
        self._tick_lock = threading.Lock()
        self._rules_lock = threading.Lock()
        self.plans: Dict[AlertKey, DispatchPlan] = {}

        engine_config = config['engine']
        if engine_config.get('hostname', 'auto') == 'auto':
            self.hostname = get_hostname()
        else:
            self.hostname = engine_config['hostname']

        self.evaluation_interval = parse_duration(engine_config.get('evaluation_interval'), 30)
        self.grace_window = parse_duration(engine_config.get('grace_window'), 300)

        self.logger.info(f"Initializing engine for host: {self.hostname}")

        self.exporter = PrometheusExporter(config)

        if storage is None:
            from runbookd.alerts.storage.sqlite_storage import SQLiteStorage
            storage = SQLiteStorage(config['storage'])
        self.storage = storage

        self.metric_source = metric_source or create_metric_source(
            config['metric_source'], registry=self.exporter.registry
        )

        self.rules = list(rules) if rules is not None else self._load_rules()
        self.runbooks = runbooks if runbooks is not None else self._load_runbooks()
        self.runbooks.validate_against(self.rules)

        self.store = AlertStore()
        self.state_machine = AlertStateMachine(self.store)
        self.deduplicator = Deduplicator()
        self.rule_engine = RuleEngine(self.metric_source, metrics=self.exporter)

        self.notifier = Notifier(
            config['notifications'], channels=channels, storage=self.storage, metrics=self.exporter
        )
        self.executor = ActionExecutor(
            config['actions'],
            backends if backends is not None else create_backends(config.get('backends')),
            storage=self.storage,
            metrics=self.exporter,
        )
        self.escalation = EscalationManager(
            config['escalation'],
            self.notifier,
            is_firing=self.store.is_firing,
            instance_lookup=self.store.get,
            storage=self.storage,
            metrics=self.exporter,
        )
        self.dispatcher = RunbookDispatcher(
            self.runbooks, self.executor, on_remediation_exhausted=self._on_remediation_exhausted
        )

        self._pool = ThreadPoolExecutor(
            max_workers=int(engine_config.get('workers', 4)),
            thread_name_prefix='rule'
        )

        self.logger.info(
            f"Engine initialized with {len(self.rules)} rules and {len(self.runbooks)} runbooks"
        )

    def _load_rules(self) -> List[AlertRule]:
        rules_file = self.config['engine'].get('rules_file')
        if not rules_file:
            self.logger.warning("No alert rules file specified")
            return []
        return load_alert_rules(rules_file)

    def _load_runbooks(self) -> RunbookRegistry:
        runbooks_file = self.config['engine'].get('runbooks_file')
        if not runbooks_file:
            self.logger.warning("No runbooks file specified; every firing alert will escalate")
            return RunbookRegistry()
        return load_runbooks(runbooks_file)

    # Evaluation

    def tick(self, now: Optional[datetime] = None) -> List[AlertEvent]:
        """
        Run one evaluation tick over every enabled rule.

        Rules are processed in parallel; a failing rule is logged and never
        affects the others. Ticks never overlap.

        Returns:
            The surfaced alert events produced by this tick
        """
        now = now or datetime.now()
        with self._tick_lock:
            started = time.monotonic()
            with self._rules_lock:
                rules = [rule for rule in self.rules if rule.enabled]

            futures = {self._pool.submit(self._process_rule, rule, now): rule for rule in rules}
            events = []
            for future in as_completed(futures):
                rule = futures[future]
                try:
                    events.extend(future.result())
                except Exception as e:
                    self.logger.error(f"Error evaluating rule {rule.name}: {e}", exc_info=True)

            self.store.gc(now, self.grace_window)
            self._update_firing_gauge()
            self.exporter.tick_duration.set(time.monotonic() - started)
            self._tick_count += 1

        return events

    def _process_rule(self, rule: AlertRule, now: datetime) -> List[AlertEvent]:
        """Evaluate one rule and apply its results; the only writer for its keys"""
        observations = self.rule_engine.evaluate_detailed(
            rule, now, self.store.label_sets(rule.name)
        )

        events = []
        for labels, per_tier in observations.items():
            for tier in rule.tiers:
                observation = per_tier.get(tier.severity, UNKNOWN)
                transition = self.state_machine.observe(
                    rule, tier, labels, observation.breach, observation.value, now
                )
                key = AlertKey(rule.name, labels, tier.severity)
                if transition == Transition.FIRING:
                    self._record_firing(self.store.get(key), now)
                elif transition == Transition.RESOLVED:
                    self._on_resolved(key, now)

            tracks = self.store.tracks(rule.name, labels)
            for event in self.deduplicator.reconcile(rule.name, labels, tracks, now):
                self._handle_event(event, now)
                events.append(event)

        return events

    def _handle_event(self, event: AlertEvent, now: datetime) -> None:
        self.notifier.notify(event)

        if event.starts_firing:
            if event.event_type == EventType.ESCALATED and event.previous is not None:
                # The higher tier now owns escalation for this label set
                self.escalation.cancel(event.previous)
            self._dispatch(event.instance, now)
        elif event.event_type == EventType.DOWNGRADED:
            self.escalation.arm(event.key, event.instance.tier, now)

    def _dispatch(self, instance: AlertInstance, now: datetime) -> None:
        try:
            self.plans[instance.key] = self.dispatcher.dispatch(instance)
        except RunbookNotFound as e:
            self.logger.warning(f"{e}; escalating {instance.key} immediately")
            self.escalation.escalate_now(instance.key, instance.tier, now, reason=str(e))
            return
        self.escalation.arm(instance.key, instance.tier, now)

    def _on_remediation_exhausted(self, instance: AlertInstance, results) -> None:
        reason = f"remediation failed: {results[-1]}" if results else "remediation failed"
        # Stay on the tick clock that process_due runs on
        now = instance.last_evaluated_at or datetime.now()
        self.escalation.escalate_now(instance.key, instance.tier, now, reason=reason)

    def _on_resolved(self, key: AlertKey, now: datetime) -> None:
        """Per-key resolution: stop retries and escalation, close history"""
        self.executor.cancel(key)
        self.escalation.resolve(key, now)
        self.plans.pop(key, None)
        instance = self.store.get(key)
        if instance is None:
            return
        try:
            self.storage.resolve_alert(instance.alert_id, now)
        except Exception as e:
            self.logger.error(f"Failed to record resolution of {key}: {e}")

    def _record_firing(self, instance: AlertInstance, now: datetime) -> None:
        record = AlertRecord(
            alert_id=instance.alert_id,
            rule_name=instance.key.rule,
            severity=instance.key.severity.label,
            state=HistoryState.FIRING,
            fired_at=now,
            metric_value=instance.last_value,
            threshold=instance.tier.threshold,
            labels=dict(instance.key.labels),
        )
        try:
            self.storage.save_alert(record)
        except Exception as e:
            self.logger.error(f"Failed to record firing of {instance.key}: {e}")

    def _update_firing_gauge(self) -> None:
        counts: Dict = {}
        for instance in self.store.active():
            if instance.is_firing:
                group = (instance.key.rule, instance.key.severity.label)
                counts[group] = counts.get(group, 0) + 1
        self.exporter.update_firing(counts)

    # Operational surface

    def active_alerts(self) -> List[Dict[str, Any]]:
        """Pending and firing alert instances, most severe first"""
        alerts = []
        for instance in self.store.active():
            entry = instance.to_dict()
            entry['surfaced'] = self.deduplicator.surfaced(instance.key.rule, instance.key.labels) == instance.key.severity
            entry['silenced'] = self.notifier.is_silenced(instance.key.rule, instance.key.labels)
            entry['open_tickets'] = [t.ticket_id for t in self.escalation.tickets(instance.key, open_only=True)]
            alerts.append(entry)
        return sorted(alerts, key=lambda a: (-Severity.parse(a['severity']), a['rule'], a['alert_id']))

    def silence(self, rule_name: str, labels, duration) -> datetime:
        """Silence notifications and pages for a (rule, label set) for a duration"""
        seconds = parse_duration(duration)
        if not seconds or seconds <= 0:
            raise ValueError(f"Invalid silence duration: {duration}")
        return self.notifier.silence(rule_name, to_label_set(labels), seconds)

    def acknowledge(self, ticket_id: str):
        """Acknowledge an escalation ticket, pausing escalation for its alert"""
        return self.escalation.acknowledge(ticket_id)

    def force_evaluate(self) -> List[AlertEvent]:
        """Run a tick immediately"""
        self.logger.info("Forced evaluation requested")
        return self.tick()

    def dry_run(self, rule_name: str, labels, severity, value: Optional[float] = None):
        """Render a runbook's resolution steps for a hypothetical alert"""
        return self.dispatcher.dry_run(
            rule_name, to_label_set(labels), Severity.parse(severity), value
        )

    def reload(self, rules: List[AlertRule], runbooks: RunbookRegistry,
               now: Optional[datetime] = None) -> None:
        """
        Atomically replace rules and runbooks.

        Alerts of rules that are no longer configured are resolved: their
        remediation is cancelled and their tickets closed.

        Raises:
            ConfigurationError: If the new runbooks do not match the new rules;
                the running configuration is left untouched
        """
        runbooks.validate_against(rules)
        names = [rule.name for rule in rules]
        now = now or datetime.now()
        with self._tick_lock:
            with self._rules_lock:
                self.rules = list(rules)
            self.runbooks.swap(runbooks)
            for instance in self.store.active():
                if instance.key.rule not in names:
                    self.logger.info(f"Rule {instance.key.rule} removed; resolving {instance.key}")
                    self._on_resolved(instance.key, now)
            self.store.drop_rules(names)
            self.deduplicator.forget_rules(names)
        self.logger.info(f"Reloaded {len(rules)} rules and {len(runbooks)} runbooks")

    def reload_from_files(self) -> None:
        """Reload rules and runbooks from the configured files"""
        self.reload(self._load_rules(), self._load_runbooks())

    # Lifecycle

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown and reload"""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.running = False

        def reload_handler(signum, frame):
            self.logger.info("Received SIGHUP, reloading rules and runbooks")
            try:
                self.reload_from_files()
            except Exception as e:
                self.logger.error(f"Reload failed, keeping current configuration: {e}")

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        if hasattr(signal, 'SIGHUP'):
            signal.signal(signal.SIGHUP, reload_handler)

    def start(self):
        """Start the engine and block until stopped"""
        self.logger.info("Starting engine...")
        self.running = True
        self._setup_signal_handlers()

        try:
            if self.config['prometheus'].get('enabled', True):
                self.exporter.start()
            self.exporter.info.labels(version=__version__, hostname=self.hostname).set(1)

            self.escalation.start()

            for name, target in (('evaluator', self._run_evaluator_loop),
                                 ('self-monitor', self._self_monitor_loop)):
                thread = threading.Thread(target=target, daemon=True, name=name)
                thread.start()
                self._threads.append(thread)
                self.logger.info(f"Started {name} thread")

            self.logger.info("Engine started successfully")

            while self.running:
                time.sleep(1)

        except KeyboardInterrupt:
            self.logger.info("Keyboard interrupt received")
        except Exception as e:
            self.logger.error(f"Engine error: {e}", exc_info=True)
            raise
        finally:
            self.stop()

    def stop(self):
        """Stop background threads and release resources"""
        self.running = False
        self.logger.info("Stopping engine...")

        for thread in self._threads:
            thread.join(timeout=2)
        self._threads = []

        self.shutdown()
        self.logger.info("Engine stopped")

    def shutdown(self):
        """Release pools, connections and the exporter"""
        self.escalation.stop()
        self.executor.shutdown(wait=False)
        self._pool.shutdown(wait=True)
        self.metric_source.close()
        self.storage.close()
        self.exporter.stop()

    def _run_evaluator_loop(self):
        """Run the evaluation tick loop"""
        self.logger.debug(f"Starting evaluator loop (interval: {self.evaluation_interval}s)")

        while self.running:
            try:
                self.tick()

                if self._tick_count % CLEANUP_EVERY_TICKS == 0:
                    self.storage.cleanup_old_alerts(self.storage.retention_days)

            except Exception as e:
                self.logger.error(f"Error in evaluator loop: {e}", exc_info=True)
            time.sleep(self.evaluation_interval)

    def _self_monitor_loop(self):
        """Monitor the engine's own resource usage"""
        limits = self.config['resource_limits']
        check_interval = limits['check_interval']
        max_cpu = limits['max_cpu_percent']
        max_memory_mb = limits['max_memory_mb']

        process = psutil.Process(os.getpid())

        while self.running:
            try:
                cpu_percent = process.cpu_percent(interval=1.0)
                memory_bytes = process.memory_info().rss
                memory_mb = memory_bytes / 1024 / 1024

                self.exporter.process_cpu.set(cpu_percent)
                self.exporter.process_memory.set(memory_bytes)
                self.logger.debug(f"Engine resource usage: CPU={cpu_percent:.2f}%, Memory={memory_mb:.2f}MB")

                if cpu_percent > max_cpu:
                    self.logger.warning(f"Engine CPU usage ({cpu_percent:.2f}%) exceeds limit ({max_cpu}%)")
                if memory_mb > max_memory_mb:
                    self.logger.warning(f"Engine memory usage ({memory_mb:.2f}MB) exceeds limit ({max_memory_mb}MB)")

            except psutil.Error as e:
                self.logger.error(f"Error in self-monitoring: {e}")
            time.sleep(check_interval)
