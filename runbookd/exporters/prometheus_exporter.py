"""Prometheus HTTP exporter for engine self-metrics"""

from prometheus_client import start_http_server, Gauge, Counter
from prometheus_client.core import CollectorRegistry

from runbookd.utils.logger import get_logger


class PrometheusExporter:
    """Prometheus HTTP server exposing the engine's own metrics"""

    def __init__(self, config, registry: CollectorRegistry = None):
        """
        Initialize Prometheus exporter

        Args:
            config: Configuration dictionary
            registry: Registry to register metrics in (a fresh one if omitted)
        """
        self.config = config
        self.logger = get_logger(self.__class__.__name__)

        self.host = config.get('prometheus', {}).get('host', '0.0.0.0')
        self.port = config.get('prometheus', {}).get('port', 9464)

        self.registry = registry if registry is not None else CollectorRegistry()
        self.running = False

        self._setup_engine_metrics()

    def _setup_engine_metrics(self):
        """Setup engine self-monitoring metrics"""
        self.info = Gauge(
            'runbookd_info',
            'Engine information',
            ['version', 'hostname'],
            registry=self.registry
        )

        self.alerts_firing = Gauge(
            'runbookd_alerts_firing',
            'Alert instances currently firing',
            ['rule', 'severity'],
            registry=self.registry
        )

        self.rule_evaluations = Counter(
            'runbookd_rule_evaluations_total',
            'Total number of rule evaluations',
            ['rule'],
            registry=self.registry
        )

        self.metric_unavailable = Counter(
            'runbookd_metric_unavailable_total',
            'Total number of metric queries that returned no usable data',
            ['rule'],
            registry=self.registry
        )

        self.tick_duration = Gauge(
            'runbookd_tick_duration_seconds',
            'Duration of the last evaluation tick in seconds',
            registry=self.registry
        )

        self.actions = Counter(
            'runbookd_actions_total',
            'Total number of executed actions by outcome',
            ['action', 'outcome'],
            registry=self.registry
        )

        self.escalation_tickets = Counter(
            'runbookd_escalation_tickets_total',
            'Total number of escalation tickets opened',
            ['tier'],
            registry=self.registry
        )

        self.notification_failures = Counter(
            'runbookd_notification_failures_total',
            'Notifications that no channel could deliver',
            registry=self.registry
        )

        self.process_cpu = Gauge(
            'runbookd_process_cpu_percent',
            'Engine process CPU usage percent',
            registry=self.registry
        )

        self.process_memory = Gauge(
            'runbookd_process_memory_bytes',
            'Engine process resident memory in bytes',
            registry=self.registry
        )

    def start(self):
        """Start HTTP server"""
        try:
            self.logger.info(f"Starting Prometheus HTTP server on {self.host}:{self.port}")
            start_http_server(self.port, addr=self.host, registry=self.registry)
            self.running = True
            self.logger.info(f"Metrics available at http://{self.host}:{self.port}/metrics")
        except Exception as e:
            self.logger.error(f"Failed to start Prometheus HTTP server: {e}")
            raise

    def stop(self):
        """Stop HTTP server"""
        self.running = False
        self.logger.info("Prometheus HTTP server stopped")

    def update_firing(self, counts):
        """
        Replace the firing gauge with fresh counts

        Args:
            counts: Mapping of (rule, severity label) -> number of firing instances
        """
        self.alerts_firing.clear()
        for (rule, severity), count in counts.items():
            self.alerts_firing.labels(rule=rule, severity=severity).set(count)
