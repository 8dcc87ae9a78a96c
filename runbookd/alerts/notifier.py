"""
Notifier: delivers alert and escalation events with primary/fallback routing.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from runbookd.alerts.alert_rule import AlertKey, Severity
from runbookd.alerts.channels.base_channel import BaseChannel, substitute_template
from runbookd.alerts.deduplicator import AlertEvent, EventType
from runbookd.exceptions import EscalationDeliveryFailure
from runbookd.utils.helpers import LabelSet

logger = logging.getLogger(__name__)

LINK_ANNOTATIONS = ('runbook_url', 'dashboard_url')

EVENT_STATUS = {
    EventType.FIRING: 'firing',
    EventType.ESCALATED: 'firing',
    EventType.DOWNGRADED: 'firing',
    EventType.RESOLVED: 'resolved',
}


class Notifier:
    """Routes notifications to channels and tracks silences"""

    def __init__(self, config: Dict, channels: Optional[Dict[str, BaseChannel]] = None,
                 storage=None, metrics=None):
        """
        Initialize notifier.

        Args:
            config: Notifications configuration dict
            channels: Pre-built channels by name (built from config if omitted)
            storage: Optional storage backend for meta-alert records
            metrics: Optional exporter for delivery failure counters
        """
        self.config = config
        self.storage = storage
        self.metrics = metrics
        self.send_resolved = config.get('send_resolved', True)
        self.channels = channels if channels is not None else self._init_channels()

        self.routing = [name for name in (config.get('primary'), config.get('fallback')) if name]
        if not self.routing:
            self.routing = list(self.channels)

        self._silences: Dict[Tuple[str, LabelSet], datetime] = {}
        self._lock = threading.Lock()

        logger.info(f"Notifier initialized (routing: {' -> '.join(self.routing) or 'none'})")

    def _init_channels(self) -> Dict[str, BaseChannel]:
        """Initialize notification channels based on config"""
        channels = {}
        channel_config = self.config.get('channels', {})

        if channel_config.get('slack', {}).get('enabled', False):
            from runbookd.alerts.channels.slack_channel import SlackChannel
            channels['slack'] = SlackChannel(channel_config['slack'])

        if channel_config.get('webhook', {}).get('enabled', False):
            from runbookd.alerts.channels.webhook_channel import WebhookChannel
            channels['webhook'] = WebhookChannel(channel_config['webhook'])

        if channel_config.get('log', {}).get('enabled', True):
            from runbookd.alerts.channels.log_channel import LogChannel
            channels['log'] = LogChannel(channel_config.get('log'))

        if not channels:
            logger.warning("No notification channels enabled")

        return channels

    # Silences

    def silence(self, rule_name: str, labels: LabelSet, seconds: float,
                now: Optional[datetime] = None) -> datetime:
        """Suppress notifications for a (rule, label set) until now + seconds"""
        until = (now or datetime.now()) + timedelta(seconds=seconds)
        with self._lock:
            self._silences[(rule_name, labels)] = until
        logger.info(f"Silenced {rule_name} {dict(labels)} until {until.isoformat()}")
        return until

    def unsilence(self, rule_name: str, labels: LabelSet) -> bool:
        with self._lock:
            return self._silences.pop((rule_name, labels), None) is not None

    def is_silenced(self, rule_name: str, labels: LabelSet,
                    now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        with self._lock:
            until = self._silences.get((rule_name, labels))
            if until is None:
                return False
            if until <= now:
                del self._silences[(rule_name, labels)]
                return False
            return True

    def silences(self) -> Dict[Tuple[str, LabelSet], datetime]:
        with self._lock:
            return dict(self._silences)

    # Delivery

    def notify(self, event: AlertEvent) -> bool:
        """
        Deliver an alert event.

        Returns:
            True if delivered, False if skipped or every channel failed
        """
        if event.event_type == EventType.RESOLVED and not self.send_resolved:
            return False
        if self.is_silenced(event.key.rule, event.key.labels, event.timestamp):
            logger.info(f"Notification for {event.key} suppressed by silence")
            return False

        message = self.build_message(event)
        links = self._links(event)
        try:
            channel = self.deliver(event.key, event.key.severity, message, links, self.routing)
            logger.info(f"Notified {event.event_type} for {event.key} via {channel}")
            return True
        except EscalationDeliveryFailure as e:
            self.meta_alert(e, event.key)
            return False

    def page(self, ticket, contact_tier, instance=None) -> bool:
        """Page an escalation contact tier about an open ticket"""
        key = ticket.key
        if self.is_silenced(key.rule, key.labels, ticket.opened_at):
            logger.info(f"Escalation page for {key} suppressed by silence")
            return False

        description = f"Alert unresolved; escalating to {contact_tier.name} (tier {ticket.tier_index + 1})"
        if instance is not None:
            actions = instance.action_summary()
            if actions:
                description += "\nRemediation attempts:\n" + "\n".join(f"- {a}" for a in actions)

        message = {
            'status': 'escalation',
            'summary': f"ESCALATION: {key}",
            'description': description,
        }
        links = self._links_for(instance) if instance is not None else {}
        channels = list(contact_tier.channels) + [c for c in self.routing if c not in contact_tier.channels]
        try:
            channel = self.deliver(key, key.severity, message, links, channels)
            logger.info(f"Paged {contact_tier.name} for {key} via {channel}")
            return True
        except EscalationDeliveryFailure as e:
            self.meta_alert(e, key)
            return False

    def deliver(self, alert_key: AlertKey, severity: Severity, message: Dict[str, str],
                links: Dict[str, str], channel_names: List[str]) -> str:
        """
        Try each channel in order until one succeeds.

        Returns:
            Name of the channel that delivered

        Raises:
            EscalationDeliveryFailure: If every channel failed
        """
        attempted = []
        for name in channel_names:
            channel = self.channels.get(name)
            if channel is None:
                logger.warning(f"Channel {name} not available")
                continue
            attempted.append(name)
            try:
                if channel.send(alert_key, severity, message, links):
                    return name
                logger.warning(f"Delivery via {name} failed for {alert_key}, trying next channel")
            except Exception as e:
                logger.error(f"Error sending notification via {name}: {e}")

        raise EscalationDeliveryFailure(str(alert_key), attempted)

    def meta_alert(self, failure: EscalationDeliveryFailure, alert_key: AlertKey) -> None:
        """Failure to page is itself critical: raise a standalone operational alert"""
        logger.critical(f"META-ALERT: {failure}")
        if self.metrics:
            self.metrics.notification_failures.inc()
        if self.storage:
            try:
                self.storage.save_meta_alert(str(alert_key), str(failure), datetime.now())
            except Exception as e:
                logger.error(f"Failed to record meta-alert: {e}")

    # Formatting

    def build_message(self, event: AlertEvent) -> Dict[str, str]:
        """Format an event from rule annotations"""
        instance = event.instance
        labels = dict(event.key.labels)
        if instance is None:
            return {
                'status': EVENT_STATUS[event.event_type],
                'summary': f"Alert {event.event_type}: {event.key}",
                'description': '',
            }

        rule = instance.rule
        tier = instance.tier
        annotations = rule.annotations or {}

        summary = annotations.get('summary', f"{rule.name} ({tier.severity.label})")
        summary = substitute_template(summary, instance.last_value, tier.threshold, labels)

        description = annotations.get(
            'description', f"{rule.expression} {rule.operator} {tier.threshold}"
        )
        description = substitute_template(description, instance.last_value, tier.threshold, labels)

        if event.event_type == EventType.ESCALATED and event.previous is not None:
            description += f"\nSeverity raised from {event.previous.severity.label} to {tier.severity.label}"
        elif event.event_type == EventType.DOWNGRADED and event.previous is not None:
            description += f"\n{event.previous.severity.label.capitalize()} cleared; still {tier.severity.label}"
        elif event.event_type == EventType.FIRING and instance.flapping:
            description += "\nRe-fired shortly after resolving (flapping)"

        message = {
            'status': EVENT_STATUS[event.event_type],
            'summary': summary,
            'description': description,
        }
        if instance.last_value is not None:
            message['value'] = f"{instance.last_value:.2f}"
        return message

    def _links(self, event: AlertEvent) -> Dict[str, str]:
        return self._links_for(event.instance) if event.instance is not None else {}

    def _links_for(self, instance) -> Dict[str, str]:
        annotations = instance.rule.annotations or {}
        return {name: annotations[name] for name in LINK_ANNOTATIONS if annotations.get(name)}
