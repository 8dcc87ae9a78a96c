"""
Base storage interface for alert, action and escalation history.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
import json


class HistoryState:
    """Stored occurrence state constants"""
    FIRING = 'firing'
    RESOLVED = 'resolved'


@dataclass
class AlertRecord:
    """One firing occurrence of an alert instance"""
    alert_id: str
    rule_name: str
    severity: str
    state: str
    fired_at: datetime
    metric_value: Optional[float] = None
    threshold: Optional[float] = None
    labels: Dict[str, str] = field(default_factory=dict)
    resolved_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for storage"""
        return {
            'alert_id': self.alert_id,
            'rule_name': self.rule_name,
            'severity': self.severity,
            'state': self.state,
            'metric_value': self.metric_value,
            'threshold': self.threshold,
            'labels': json.dumps(self.labels),
            'fired_at': self.fired_at.isoformat(),
            'resolved_at': self.resolved_at.isoformat() if self.resolved_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'AlertRecord':
        """Create AlertRecord from dictionary"""
        return cls(
            alert_id=data['alert_id'],
            rule_name=data['rule_name'],
            severity=data['severity'],
            state=data['state'],
            metric_value=data.get('metric_value'),
            threshold=data.get('threshold'),
            labels=json.loads(data['labels']) if isinstance(data['labels'], str) else data['labels'],
            fired_at=datetime.fromisoformat(data['fired_at']) if isinstance(data['fired_at'], str) else data['fired_at'],
            resolved_at=datetime.fromisoformat(data['resolved_at']) if data.get('resolved_at') and isinstance(data['resolved_at'], str) else data.get('resolved_at'),
        )


class BaseStorage(ABC):
    """Abstract base class for history storage backends"""

    retention_days = 30

    @abstractmethod
    def save_alert(self, record: AlertRecord) -> None:
        """Save a new firing occurrence"""
        pass

    @abstractmethod
    def get_alert(self, alert_id: str) -> Optional[AlertRecord]:
        """
        Retrieve the most recent occurrence of an alert.

        Args:
            alert_id: Unique alert identifier

        Returns:
            AlertRecord or None if not found
        """
        pass

    @abstractmethod
    def resolve_alert(self, alert_id: str, resolved_at: datetime) -> None:
        """Mark the open occurrence of an alert as resolved"""
        pass

    @abstractmethod
    def get_active_alerts(self) -> List[AlertRecord]:
        """Get all occurrences that have not been resolved"""
        pass

    @abstractmethod
    def get_alerts_by_rule(self, rule_name: str, limit: int = 100) -> List[AlertRecord]:
        """Get recent occurrences for a specific rule"""
        pass

    @abstractmethod
    def save_action_result(self, result) -> None:
        """Persist an ActionResult including its captured output"""
        pass

    @abstractmethod
    def get_action_output(self, output_ref: str) -> Optional[str]:
        """Fetch captured output by its reference"""
        pass

    @abstractmethod
    def save_ticket(self, ticket) -> None:
        """Insert or update an EscalationTicket"""
        pass

    @abstractmethod
    def save_meta_alert(self, alert_id: str, message: str, raised_at: datetime) -> None:
        """Record a failure to deliver a notification"""
        pass

    @abstractmethod
    def cleanup_old_alerts(self, days: int) -> int:
        """
        Delete resolved history older than specified days.

        Returns:
            Number of alert rows deleted
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection and cleanup resources"""
        pass
