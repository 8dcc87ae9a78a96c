"""
Alert instance lifecycle: Inactive -> Pending -> Firing -> (Resolved) -> Inactive.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from runbookd.alerts.alert_rule import AlertKey, AlertRule, Severity, SeverityTier
from runbookd.utils.helpers import LabelSet

logger = logging.getLogger(__name__)


class AlertState:
    """Alert state constants"""
    INACTIVE = 'inactive'
    PENDING = 'pending'    # Condition met, waiting for the for-duration
    FIRING = 'firing'      # Duration met
    RESOLVED = 'resolved'  # Transient: reported as a transition, never stored


class Transition:
    """Transitions reported by AlertStateMachine.observe"""
    PENDING = 'pending'
    FIRING = 'firing'
    RESOLVED = 'resolved'
    RESET = 'reset'        # Pending breach ended before firing


class AlertInstance:
    """Lifecycle state for one (rule, label set, severity) key"""

    def __init__(self, key: AlertKey, rule: AlertRule, tier: SeverityTier):
        self.key = key
        self.rule = rule
        self.tier = tier
        self.state = AlertState.INACTIVE
        self.first_breach_at: Optional[datetime] = None
        self.last_evaluated_at: Optional[datetime] = None
        self.fired_at: Optional[datetime] = None
        self.resolved_at: Optional[datetime] = None
        self.inactive_since: Optional[datetime] = None
        self.true_streak = 0
        self.false_streak = 0
        self.breach_seconds = 0.0
        self.clear_seconds = 0.0
        self.last_value: Optional[float] = None
        self.occurrences = 0
        self.flapping = False
        self.last_action_outcome: Optional[str] = None
        self.action_results: List = []
        self.escalation_handle = None  # EscalationTimer while armed
        self._results_lock = threading.Lock()

    @property
    def alert_id(self) -> str:
        return self.rule.generate_alert_id(self.key.labels, self.key.severity)

    @property
    def is_active(self) -> bool:
        return self.state in (AlertState.PENDING, AlertState.FIRING)

    @property
    def is_firing(self) -> bool:
        return self.state == AlertState.FIRING

    def record_action(self, result) -> None:
        """Attach an action result (called from executor threads)"""
        with self._results_lock:
            self.action_results.append(result)
            self.last_action_outcome = result.outcome

    def action_summary(self) -> List[str]:
        with self._results_lock:
            return [str(r) for r in self.action_results]

    def to_dict(self) -> Dict:
        return {
            'alert_id': self.alert_id,
            'rule': self.key.rule,
            'labels': dict(self.key.labels),
            'severity': self.key.severity.label,
            'state': self.state,
            'first_breach_at': self.first_breach_at.isoformat() if self.first_breach_at else None,
            'fired_at': self.fired_at.isoformat() if self.fired_at else None,
            'last_evaluated_at': self.last_evaluated_at.isoformat() if self.last_evaluated_at else None,
            'value': self.last_value,
            'true_streak': self.true_streak,
            'false_streak': self.false_streak,
            'last_action_outcome': self.last_action_outcome,
        }


class AlertStore:
    """
    Concurrent key -> AlertInstance map.

    The map itself is lock-protected; each instance has a single writer, the
    worker processing its rule during a tick.
    """

    def __init__(self):
        self._instances: Dict[AlertKey, AlertInstance] = {}
        self._lock = threading.RLock()

    def get(self, key: AlertKey) -> Optional[AlertInstance]:
        with self._lock:
            return self._instances.get(key)

    def create(self, key: AlertKey, rule: AlertRule, tier: SeverityTier) -> AlertInstance:
        with self._lock:
            instance = self._instances.get(key)
            if instance is None:
                instance = AlertInstance(key, rule, tier)
                self._instances[key] = instance
            return instance

    def tracks(self, rule_name: str, labels: LabelSet) -> Dict[Severity, AlertInstance]:
        """All severity tracks of one (rule, label set)"""
        with self._lock:
            return {
                key.severity: inst for key, inst in self._instances.items()
                if key.rule == rule_name and key.labels == labels
            }

    def label_sets(self, rule_name: str) -> List[LabelSet]:
        with self._lock:
            return list({key.labels for key in self._instances if key.rule == rule_name})

    def active(self) -> List[AlertInstance]:
        with self._lock:
            return [inst for inst in self._instances.values() if inst.is_active]

    def is_firing(self, key: AlertKey) -> bool:
        instance = self.get(key)
        return instance is not None and instance.is_firing

    def gc(self, now: datetime, grace_seconds: float) -> int:
        """Drop instances that have been Inactive for longer than the grace window"""
        cutoff = now - timedelta(seconds=grace_seconds)
        with self._lock:
            stale = [
                key for key, inst in self._instances.items()
                if inst.state == AlertState.INACTIVE
                and inst.inactive_since is not None
                and inst.inactive_since <= cutoff
            ]
            for key in stale:
                del self._instances[key]
        if stale:
            logger.debug(f"Garbage-collected {len(stale)} inactive alert instances")
        return len(stale)

    def drop_rules(self, keep: List[str]) -> None:
        """Forget instances of rules no longer configured"""
        with self._lock:
            for key in [k for k in self._instances if k.rule not in keep]:
                del self._instances[key]

    def __len__(self):
        with self._lock:
            return len(self._instances)


class AlertStateMachine:
    """Applies for-duration and clear-duration hysteresis per alert key"""

    def __init__(self, store: AlertStore):
        self.store = store

    def observe(self, rule: AlertRule, tier: SeverityTier, labels: LabelSet,
                breach: Optional[bool], value: Optional[float],
                now: datetime) -> Optional[str]:
        """
        Feed one tick's breach signal for a key into its state machine.

        Args:
            rule: Rule being evaluated
            tier: Severity tier of this track
            labels: Label set of this track
            breach: True, False, or None for unknown
            value: Observed metric value (if known)
            now: Tick time

        Returns:
            A Transition constant, or None if nothing externally relevant changed
        """
        key = AlertKey(rule.name, labels, tier.severity)
        instance = self.store.get(key)

        if instance is None:
            if breach is not True:
                return None
            instance = self.store.create(key, rule, tier)

        # Configuration may have been swapped since the instance was created
        instance.rule = rule
        instance.tier = tier

        if breach is None:
            # Unknown: streaks frozen, the gap does not count towards any duration
            instance.last_evaluated_at = now
            return None

        elapsed = 0.0
        if instance.last_evaluated_at is not None:
            elapsed = max((now - instance.last_evaluated_at).total_seconds(), 0.0)
        instance.last_evaluated_at = now
        instance.last_value = value

        if instance.state == AlertState.INACTIVE:
            return self._from_inactive(instance, breach, now)
        if instance.state == AlertState.PENDING:
            return self._from_pending(instance, breach, elapsed, now)
        return self._from_firing(instance, breach, elapsed, now)

    def _from_inactive(self, instance: AlertInstance, breach: bool, now: datetime) -> Optional[str]:
        if not breach:
            instance.false_streak += 1
            return None

        # A re-breach while still inside the grace window counts as flapping
        instance.flapping = instance.resolved_at is not None
        instance.state = AlertState.PENDING
        instance.inactive_since = None
        instance.first_breach_at = now
        instance.true_streak = 1
        instance.false_streak = 0
        instance.breach_seconds = 0.0
        instance.clear_seconds = 0.0
        with instance._results_lock:
            instance.action_results = []
            instance.last_action_outcome = None

        if instance.breach_seconds >= instance.tier.for_seconds:
            return self._fire(instance, now)

        logger.debug(f"Alert pending: {instance.key}")
        return Transition.PENDING

    def _from_pending(self, instance: AlertInstance, breach: bool, elapsed: float,
                      now: datetime) -> Optional[str]:
        if not breach:
            # No partial credit for a breach that never sustained
            logger.debug(
                f"Alert reset: {instance.key} after {instance.breach_seconds:.0f}s "
                f"(needed {instance.tier.for_seconds:.0f}s)"
            )
            instance.state = AlertState.INACTIVE
            instance.inactive_since = now
            instance.true_streak = 0
            instance.false_streak = 1
            instance.breach_seconds = 0.0
            instance.first_breach_at = None
            return Transition.RESET

        instance.true_streak += 1
        instance.breach_seconds += elapsed
        if instance.breach_seconds >= instance.tier.for_seconds:
            return self._fire(instance, now)
        return None

    def _from_firing(self, instance: AlertInstance, breach: bool, elapsed: float,
                     now: datetime) -> Optional[str]:
        if breach:
            instance.true_streak += 1
            instance.false_streak = 0
            instance.clear_seconds = 0.0
            return None

        instance.false_streak += 1
        instance.true_streak = 0
        if instance.false_streak > 1:
            instance.clear_seconds += elapsed

        if instance.clear_seconds < instance.tier.clear_seconds:
            logger.debug(
                f"Alert {instance.key} clearing ({instance.clear_seconds:.0f}s of "
                f"{instance.tier.clear_seconds:.0f}s)"
            )
            return None

        instance.state = AlertState.INACTIVE
        instance.inactive_since = now
        instance.resolved_at = now
        instance.breach_seconds = 0.0
        instance.clear_seconds = 0.0
        logger.info(f"Alert resolved: {instance.key}")
        return Transition.RESOLVED

    def _fire(self, instance: AlertInstance, now: datetime) -> str:
        instance.state = AlertState.FIRING
        instance.fired_at = now
        instance.resolved_at = None
        instance.occurrences += 1
        logger.info(f"Alert firing: {instance.key} (value: {instance.last_value})")
        return Transition.FIRING
