"""Tests for SQLite storage backend"""

import pytest
import tempfile
import os
from datetime import datetime, timedelta

from runbookd.actions.executor import ActionOutcome, ActionResult
from runbookd.alerts.alert_rule import AlertKey, Severity
from runbookd.alerts.storage.sqlite_storage import SQLiteStorage
from runbookd.alerts.storage.base_storage import AlertRecord, HistoryState
from runbookd.escalation.manager import EscalationTicket


class TestSQLiteStorage:
    """Test SQLite storage backend"""

    @pytest.fixture
    def storage(self):
        """Create temporary SQLite storage"""
        temp_db = tempfile.NamedTemporaryFile(delete=False, suffix='.db')
        temp_db.close()

        config = {
            'sqlite_path': temp_db.name,
            'retention_days': 30,
        }
        storage = SQLiteStorage(config)

        yield storage

        storage.close()
        os.unlink(temp_db.name)

    def record(self, alert_id="high_cpu_critical", fired_at=None, rule_name="high_cpu"):
        return AlertRecord(
            alert_id=alert_id,
            rule_name=rule_name,
            severity="critical",
            state=HistoryState.FIRING,
            fired_at=fired_at or datetime.now(),
            metric_value=97.0,
            threshold=95.0,
            labels={"host": "server1"},
        )

    def test_save_and_get_alert(self, storage):
        """Test saving and retrieving an alert"""
        storage.save_alert(self.record())

        retrieved = storage.get_alert("high_cpu_critical")
        assert retrieved is not None
        assert retrieved.rule_name == "high_cpu"
        assert retrieved.state == HistoryState.FIRING
        assert retrieved.metric_value == 97.0
        assert retrieved.labels == {"host": "server1"}

    def test_get_nonexistent_alert(self, storage):
        assert storage.get_alert("nonexistent") is None

    def test_resolve_alert(self, storage):
        """Test resolving the open occurrence"""
        storage.save_alert(self.record())
        resolved_at = datetime.now()

        storage.resolve_alert("high_cpu_critical", resolved_at)

        retrieved = storage.get_alert("high_cpu_critical")
        assert retrieved.state == HistoryState.RESOLVED
        assert retrieved.resolved_at == resolved_at
        assert storage.get_active_alerts() == []

    def test_each_occurrence_is_a_row(self, storage):
        first = datetime.now() - timedelta(hours=1)
        storage.save_alert(self.record(fired_at=first))
        storage.resolve_alert("high_cpu_critical", first + timedelta(minutes=5))
        storage.save_alert(self.record())

        history = storage.get_alerts_by_rule("high_cpu")
        assert len(history) == 2
        assert [a.state for a in history] == [HistoryState.FIRING, HistoryState.RESOLVED]
        assert len(storage.get_active_alerts()) == 1

    def test_action_results_and_output(self, storage):
        result = ActionResult(
            action="top_cpu",
            target="localhost",
            outcome=ActionOutcome.SUCCESS,
            output="PID CPU% NAME",
            output_ref="top_cpu:abc123",
            alert_id="high_cpu[]/critical",
        )

        storage.save_action_result(result)

        assert storage.get_action_output("top_cpu:abc123") == "PID CPU% NAME"
        rows = storage.get_action_results("high_cpu[]/critical")
        assert rows[0]['outcome'] == ActionOutcome.SUCCESS

    def test_ticket_upsert(self, storage):
        key = AlertKey("high_cpu", (), Severity.CRITICAL)
        ticket = EscalationTicket("ESC-00001", key, 0, "on-call", datetime.now(), reason="window elapsed")

        storage.save_ticket(ticket)
        ticket.acknowledged = True
        ticket.closed_at = datetime.now()
        storage.save_ticket(ticket)

        tickets = storage.get_tickets(str(key))
        assert len(tickets) == 1
        assert tickets[0]['acknowledged'] == 1
        assert tickets[0]['closed_at'] is not None

    def test_meta_alerts(self, storage):
        storage.save_meta_alert("high_cpu[]/critical", "all channels failed", datetime.now())

        meta = storage.get_meta_alerts()
        assert len(meta) == 1
        assert meta[0]['message'] == "all channels failed"

    def test_cleanup_old_alerts(self, storage):
        """Only resolved history past retention is deleted"""
        old = datetime.now() - timedelta(days=40)
        storage.save_alert(self.record("old_resolved", fired_at=old))
        storage.resolve_alert("old_resolved", old + timedelta(minutes=1))
        storage.save_alert(self.record("old_firing", fired_at=old))
        storage.save_alert(self.record("recent"))

        deleted = storage.cleanup_old_alerts(days=30)

        assert deleted == 1
        assert storage.get_alert("old_resolved") is None
        assert storage.get_alert("old_firing") is not None
        assert storage.get_alert("recent") is not None
