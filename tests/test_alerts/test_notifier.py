"""Tests for notification routing, silences and meta-alerts"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests

from runbookd.actions.executor import ActionOutcome, ActionResult
from runbookd.alerts.alert_rule import AlertKey, Severity
from runbookd.alerts.channels.slack_channel import SlackChannel
from runbookd.alerts.channels.webhook_channel import WebhookChannel
from runbookd.alerts.deduplicator import AlertEvent, EventType
from runbookd.alerts.notifier import Notifier
from runbookd.alerts.state_machine import AlertInstance
from runbookd.escalation.manager import ContactTier, EscalationTicket
from runbookd.exceptions import EscalationDeliveryFailure

from conftest import FakeChannel, at, make_rule

NOTIFY_CONFIG = {'primary': 'primary', 'fallback': 'fallback', 'send_resolved': True}


def firing_event(event_type=EventType.FIRING, labels=(("host", "a"),)):
    rule = make_rule(critical=(95, 0, 0))
    rule.annotations = {
        'summary': "CPU on {{ labels.host }} at {{ value }}%",
        'runbook_url': "https://wiki.example.com/high_cpu",
    }
    tier = rule.tier(Severity.CRITICAL)
    key = AlertKey(rule.name, labels, Severity.CRITICAL)
    instance = AlertInstance(key, rule, tier)
    instance.last_value = 97.5
    return AlertEvent(event_type, key, instance, at(0))


class TestNotifier:
    """Test primary/fallback delivery"""

    def test_primary_delivery(self):
        primary, fallback = FakeChannel(), FakeChannel()
        notifier = Notifier(NOTIFY_CONFIG, channels={'primary': primary, 'fallback': fallback})

        assert notifier.notify(firing_event()) is True

        assert len(primary.sent) == 1
        assert fallback.sent == []
        _, severity, message, links = primary.sent[0]
        assert severity == Severity.CRITICAL
        assert message['summary'] == "CPU on a at 97.50%"
        assert message['status'] == 'firing'
        assert links == {'runbook_url': "https://wiki.example.com/high_cpu"}

    def test_fallback_on_failure(self):
        primary, fallback = FakeChannel(ok=False), FakeChannel()
        notifier = Notifier(NOTIFY_CONFIG, channels={'primary': primary, 'fallback': fallback})

        assert notifier.notify(firing_event()) is True
        assert len(primary.sent) == 1
        assert len(fallback.sent) == 1

    def test_fallback_on_exception(self):
        primary, fallback = FakeChannel(ok=RuntimeError("boom")), FakeChannel()
        notifier = Notifier(NOTIFY_CONFIG, channels={'primary': primary, 'fallback': fallback})

        assert notifier.notify(firing_event()) is True
        assert len(fallback.sent) == 1

    def test_meta_alert_when_all_channels_fail(self):
        storage = MagicMock()
        metrics = MagicMock()
        notifier = Notifier(
            NOTIFY_CONFIG,
            channels={'primary': FakeChannel(ok=False), 'fallback': FakeChannel(ok=False)},
            storage=storage,
            metrics=metrics,
        )

        assert notifier.notify(firing_event()) is False

        metrics.notification_failures.inc.assert_called_once()
        storage.save_meta_alert.assert_called_once()
        alert_id, message, _ = storage.save_meta_alert.call_args[0]
        assert alert_id == "high_cpu[host=a]/critical"
        assert "primary, fallback" in message

    def test_deliver_raises(self):
        notifier = Notifier(NOTIFY_CONFIG, channels={'primary': FakeChannel(ok=False)})
        key = AlertKey("r", (), Severity.WARNING)
        with pytest.raises(EscalationDeliveryFailure):
            notifier.deliver(key, Severity.WARNING, {'summary': 's'}, {}, ['primary', 'fallback'])

    def test_resolved_not_sent_when_disabled(self):
        primary = FakeChannel()
        config = dict(NOTIFY_CONFIG, send_resolved=False)
        notifier = Notifier(config, channels={'primary': primary})

        assert notifier.notify(firing_event(EventType.RESOLVED)) is False
        assert primary.sent == []

    def test_escalated_message_mentions_previous(self):
        primary = FakeChannel()
        notifier = Notifier(NOTIFY_CONFIG, channels={'primary': primary})
        event = firing_event(EventType.ESCALATED)
        event.previous = AlertKey(event.key.rule, event.key.labels, Severity.WARNING)

        notifier.notify(event)

        assert "raised from warning to critical" in primary.sent[0][2]['description']


class TestSilences:
    """Test silencing a (rule, label set)"""

    def test_silence_suppresses_until_deadline(self):
        primary = FakeChannel()
        notifier = Notifier(NOTIFY_CONFIG, channels={'primary': primary})
        event = firing_event()

        notifier.silence("high_cpu", (("host", "a"),), 600, now=at(0))

        assert notifier.notify(event) is False
        assert primary.sent == []

        event.timestamp = at(0) + timedelta(seconds=601)
        assert notifier.notify(event) is True

    def test_silence_is_per_label_set(self):
        primary = FakeChannel()
        notifier = Notifier(NOTIFY_CONFIG, channels={'primary': primary})
        notifier.silence("high_cpu", (("host", "b"),), 600, now=at(0))

        assert notifier.notify(firing_event()) is True

    def test_silence_suppresses_pages(self):
        primary = FakeChannel()
        notifier = Notifier(NOTIFY_CONFIG, channels={'primary': primary})
        key = AlertKey("high_cpu", (), Severity.CRITICAL)
        notifier.silence("high_cpu", (), 600, now=at(0))

        ticket = EscalationTicket("ESC-00001", key, 0, "on-call", at(10))
        assert notifier.page(ticket, ContactTier("on-call", ['primary'])) is False
        assert primary.sent == []

    def test_page_includes_action_summary(self):
        pager = FakeChannel()
        notifier = Notifier(NOTIFY_CONFIG, channels={'pager': pager})
        event = firing_event()
        event.instance.record_action(ActionResult("restart", "web1", ActionOutcome.FAILURE))
        ticket = EscalationTicket("ESC-00002", event.key, 1, "team-lead", at(10))

        assert notifier.page(ticket, ContactTier("team-lead", ['pager']), event.instance) is True

        message = pager.sent[0][2]
        assert message['status'] == 'escalation'
        assert "tier 2" in message['description']
        assert "restart on web1: failure" in message['description']


class TestChannels:
    """Test HTTP channels without network access"""

    def test_slack_payload(self):
        channel = SlackChannel({'webhook_url': 'https://hooks.slack.test/x', 'channel': '#ops'})
        key = AlertKey("high_cpu", (), Severity.CRITICAL)
        with patch('runbookd.alerts.channels.slack_channel.requests.post') as post:
            post.return_value.status_code = 200
            assert channel.send(key, Severity.CRITICAL, {'status': 'firing', 'summary': 'hot'}) is True

        payload = post.call_args[1]['json']
        assert payload['channel'] == '#ops'
        assert '<!channel>' in payload['text']

    def test_slack_request_error(self):
        channel = SlackChannel({'webhook_url': 'https://hooks.slack.test/x'})
        key = AlertKey("high_cpu", (), Severity.WARNING)
        with patch('runbookd.alerts.channels.slack_channel.requests.post',
                   side_effect=requests.exceptions.ConnectionError("down")):
            assert channel.send(key, Severity.WARNING, {'status': 'firing', 'summary': 'hot'}) is False

    def test_webhook_put(self):
        channel = WebhookChannel({'url': 'https://hooks.test/alerts', 'method': 'PUT'})
        key = AlertKey("disk_full", (("mount_point", "/"),), Severity.WARNING)
        with patch('runbookd.alerts.channels.webhook_channel.requests.request') as request:
            request.return_value.status_code = 204
            assert channel.send(key, Severity.WARNING, {'status': 'firing', 'summary': 'full'}) is True

        assert request.call_args[0][0] == 'PUT'
        payload = request.call_args[1]['json']
        assert payload['labels'] == {'mount_point': '/'}
