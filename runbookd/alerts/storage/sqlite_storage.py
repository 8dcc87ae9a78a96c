"""
SQLite storage backend for alert, action and escalation history.
"""

import sqlite3
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from pathlib import Path

from runbookd.alerts.storage.base_storage import BaseStorage, AlertRecord, HistoryState

logger = logging.getLogger(__name__)


class SQLiteStorage(BaseStorage):
    """SQLite implementation of history storage"""

    def __init__(self, config: Dict):
        """
        Initialize SQLite storage.

        Args:
            config: Storage configuration dict with 'sqlite_path' key
        """
        self.db_path = config.get('sqlite_path', './data/runbookd.db')
        self.retention_days = config.get('retention_days', 30)

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Shared by the tick, executor and escalation threads
        self._lock = threading.Lock()
        self.conn = None
        self._init_db()

        logger.info(f"Initialized SQLite storage at {self.db_path}")

    def _init_db(self):
        """Create database tables and indexes"""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self.conn.execute("PRAGMA journal_mode=WAL")

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS alert_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id VARCHAR(255) NOT NULL,
                rule_name VARCHAR(255) NOT NULL,
                severity VARCHAR(20) NOT NULL,
                state VARCHAR(20) NOT NULL,
                metric_value REAL,
                threshold REAL,
                labels TEXT,
                fired_at TIMESTAMP NOT NULL,
                resolved_at TIMESTAMP,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS action_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                output_ref VARCHAR(255) UNIQUE,
                alert_id VARCHAR(255),
                action VARCHAR(255) NOT NULL,
                target VARCHAR(255) NOT NULL,
                outcome VARCHAR(20) NOT NULL,
                retries INTEGER DEFAULT 0,
                error TEXT,
                output TEXT,
                executed_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS escalation_tickets (
                ticket_id VARCHAR(64) PRIMARY KEY,
                alert_id VARCHAR(255) NOT NULL,
                tier_index INTEGER NOT NULL,
                contact VARCHAR(255) NOT NULL,
                reason TEXT,
                opened_at TIMESTAMP NOT NULL,
                acknowledged INTEGER DEFAULT 0,
                next_escalation_at TIMESTAMP,
                closed_at TIMESTAMP
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS meta_alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id VARCHAR(255) NOT NULL,
                message TEXT NOT NULL,
                raised_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_alert_id ON alert_history(alert_id)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_state ON alert_history(state)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_fired_at ON alert_history(fired_at)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_rule_name ON alert_history(rule_name)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_action_alert ON action_results(alert_id)"
        )

        self.conn.commit()

    def _write(self, sql: str, params: tuple) -> sqlite3.Cursor:
        with self._lock:
            try:
                cursor = self.conn.execute(sql, params)
                self.conn.commit()
                return cursor
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def _read(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def save_alert(self, record: AlertRecord) -> None:
        """Save a new firing occurrence"""
        data = record.to_dict()
        try:
            self._write("""
                INSERT INTO alert_history (
                    alert_id, rule_name, severity, state, metric_value,
                    threshold, labels, fired_at, resolved_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                data['alert_id'],
                data['rule_name'],
                data['severity'],
                data['state'],
                data['metric_value'],
                data['threshold'],
                data['labels'],
                data['fired_at'],
                data['resolved_at'],
            ))
            logger.debug(f"Saved alert: {record.alert_id}")
        except sqlite3.Error as e:
            logger.error(f"Failed to save alert {record.alert_id}: {e}")
            raise

    def get_alert(self, alert_id: str) -> Optional[AlertRecord]:
        """Retrieve the most recent occurrence of an alert"""
        try:
            rows = self._read("""
                SELECT * FROM alert_history
                WHERE alert_id = ?
                ORDER BY fired_at DESC, id DESC
                LIMIT 1
            """, (alert_id,))
            return AlertRecord.from_dict(dict(rows[0])) if rows else None
        except sqlite3.Error as e:
            logger.error(f"Failed to get alert {alert_id}: {e}")
            return None

    def resolve_alert(self, alert_id: str, resolved_at: datetime) -> None:
        """Mark the open occurrence of an alert as resolved"""
        try:
            self._write("""
                UPDATE alert_history
                SET state = ?, resolved_at = ?, updated_at = CURRENT_TIMESTAMP
                WHERE alert_id = ? AND resolved_at IS NULL
            """, (HistoryState.RESOLVED, resolved_at.isoformat(), alert_id))
            logger.debug(f"Resolved alert {alert_id}")
        except sqlite3.Error as e:
            logger.error(f"Failed to resolve alert {alert_id}: {e}")
            raise

    def get_active_alerts(self) -> List[AlertRecord]:
        """Get all unresolved occurrences"""
        try:
            rows = self._read("""
                SELECT * FROM alert_history
                WHERE state = ? AND resolved_at IS NULL
                ORDER BY fired_at DESC
            """, (HistoryState.FIRING,))
            return [AlertRecord.from_dict(dict(row)) for row in rows]
        except sqlite3.Error as e:
            logger.error(f"Failed to get active alerts: {e}")
            return []

    def get_alerts_by_rule(self, rule_name: str, limit: int = 100) -> List[AlertRecord]:
        """Get recent occurrences for a specific rule"""
        try:
            rows = self._read("""
                SELECT * FROM alert_history
                WHERE rule_name = ?
                ORDER BY fired_at DESC
                LIMIT ?
            """, (rule_name, limit))
            return [AlertRecord.from_dict(dict(row)) for row in rows]
        except sqlite3.Error as e:
            logger.error(f"Failed to get alerts for rule {rule_name}: {e}")
            return []

    def save_action_result(self, result) -> None:
        """Persist an ActionResult including its captured output"""
        try:
            self._write("""
                INSERT INTO action_results (
                    output_ref, alert_id, action, target, outcome,
                    retries, error, output, executed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                result.output_ref,
                result.alert_id,
                result.action,
                result.target,
                result.outcome,
                result.retries,
                result.error,
                result.output,
                result.timestamp.isoformat(),
            ))
        except sqlite3.Error as e:
            logger.error(f"Failed to save action result {result.output_ref}: {e}")
            raise

    def get_action_output(self, output_ref: str) -> Optional[str]:
        """Fetch captured output by its reference"""
        try:
            rows = self._read(
                "SELECT output FROM action_results WHERE output_ref = ?", (output_ref,)
            )
            return rows[0]['output'] if rows else None
        except sqlite3.Error as e:
            logger.error(f"Failed to get action output {output_ref}: {e}")
            return None

    def get_action_results(self, alert_id: str) -> List[Dict]:
        """Get recorded action results for an alert"""
        try:
            rows = self._read("""
                SELECT action, target, outcome, retries, error, output_ref, executed_at
                FROM action_results WHERE alert_id = ? ORDER BY id
            """, (alert_id,))
            return [dict(row) for row in rows]
        except sqlite3.Error as e:
            logger.error(f"Failed to get action results for {alert_id}: {e}")
            return []

    def save_ticket(self, ticket) -> None:
        """Insert or update an EscalationTicket"""
        try:
            self._write("""
                INSERT INTO escalation_tickets (
                    ticket_id, alert_id, tier_index, contact, reason,
                    opened_at, acknowledged, next_escalation_at, closed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(ticket_id) DO UPDATE SET
                    acknowledged = excluded.acknowledged,
                    next_escalation_at = excluded.next_escalation_at,
                    closed_at = excluded.closed_at
            """, (
                ticket.ticket_id,
                str(ticket.key),
                ticket.tier_index,
                ticket.contact,
                ticket.reason,
                ticket.opened_at.isoformat(),
                int(ticket.acknowledged),
                ticket.next_escalation_at.isoformat() if ticket.next_escalation_at else None,
                ticket.closed_at.isoformat() if ticket.closed_at else None,
            ))
        except sqlite3.Error as e:
            logger.error(f"Failed to save escalation ticket {ticket.ticket_id}: {e}")
            raise

    def get_tickets(self, alert_id: str) -> List[Dict]:
        """Get escalation tickets for an alert"""
        try:
            rows = self._read(
                "SELECT * FROM escalation_tickets WHERE alert_id = ? ORDER BY opened_at",
                (alert_id,)
            )
            return [dict(row) for row in rows]
        except sqlite3.Error as e:
            logger.error(f"Failed to get tickets for {alert_id}: {e}")
            return []

    def save_meta_alert(self, alert_id: str, message: str, raised_at: datetime) -> None:
        """Record a failure to deliver a notification"""
        try:
            self._write(
                "INSERT INTO meta_alerts (alert_id, message, raised_at) VALUES (?, ?, ?)",
                (alert_id, message, raised_at.isoformat())
            )
        except sqlite3.Error as e:
            logger.error(f"Failed to save meta-alert for {alert_id}: {e}")
            raise

    def get_meta_alerts(self) -> List[Dict]:
        try:
            return [dict(row) for row in self._read("SELECT * FROM meta_alerts ORDER BY id", ())]
        except sqlite3.Error as e:
            logger.error(f"Failed to get meta-alerts: {e}")
            return []

    def cleanup_old_alerts(self, days: int) -> int:
        """Delete resolved history older than specified days"""
        cutoff = (datetime.now() - timedelta(days=days)).isoformat()
        try:
            cursor = self._write("""
                DELETE FROM alert_history
                WHERE fired_at < ?
                AND state = ?
            """, (cutoff, HistoryState.RESOLVED))
            deleted_count = cursor.rowcount

            self._write("DELETE FROM action_results WHERE executed_at < ?", (cutoff,))
            self._write(
                "DELETE FROM escalation_tickets WHERE opened_at < ? AND closed_at IS NOT NULL", (cutoff,)
            )

            if deleted_count > 0:
                logger.info(f"Cleaned up {deleted_count} old alerts (>{days} days)")

            return deleted_count

        except sqlite3.Error as e:
            logger.error(f"Failed to cleanup old alerts: {e}")
            return 0

    def close(self) -> None:
        """Close database connection"""
        if self.conn:
            try:
                self.conn.close()
                logger.debug("Closed SQLite connection")
            except sqlite3.Error as e:
                logger.error(f"Error closing SQLite connection: {e}")
