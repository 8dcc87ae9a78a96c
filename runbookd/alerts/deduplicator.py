"""
Surfaces only the highest firing severity per (rule, label set).
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from runbookd.alerts.alert_rule import AlertKey, Severity
from runbookd.alerts.state_machine import AlertInstance
from runbookd.utils.helpers import LabelSet

logger = logging.getLogger(__name__)


class EventType:
    """Externally visible state changes"""
    FIRING = 'firing'            # Began firing (first surfaced track of an occurrence)
    ESCALATED = 'escalated'      # A higher tier took over the surfaced slot
    DOWNGRADED = 'downgraded'    # Surfaced tier resolved, a lower one still fires
    RESOLVED = 'resolved'        # No track fires any more


@dataclass
class AlertEvent:
    """One notification-worthy change for a (rule, label set)"""
    event_type: str
    key: AlertKey
    instance: Optional[AlertInstance]
    timestamp: datetime
    previous: Optional[AlertKey] = None

    @property
    def starts_firing(self) -> bool:
        """Whether this event begins firing at a (new) severity tier"""
        return self.event_type in (EventType.FIRING, EventType.ESCALATED)


class Deduplicator:
    """Tracks the surfaced severity per (rule, label set) across ticks"""

    def __init__(self):
        self._surfaced: Dict[Tuple[str, LabelSet], Severity] = {}
        self._lock = threading.Lock()

    def reconcile(self, rule_name: str, labels: LabelSet,
                  tracks: Dict[Severity, AlertInstance],
                  now: datetime) -> List[AlertEvent]:
        """
        Compare the currently firing tracks with what is surfaced.

        Args:
            rule_name: Rule identity
            labels: Label set shared by the tracks
            tracks: Severity -> instance for every live track
            now: Tick time

        Returns:
            At most one event describing the externally visible change
        """
        group = (rule_name, labels)
        top: Optional[Severity] = None
        for severity in sorted(tracks, reverse=True):
            if tracks[severity].is_firing:
                top = severity
                break

        with self._lock:
            previous = self._surfaced.get(group)
            if top is None:
                self._surfaced.pop(group, None)
            else:
                self._surfaced[group] = top

        if previous == top:
            return []

        previous_key = AlertKey(rule_name, labels, previous) if previous is not None else None

        if top is None:
            event_type = EventType.RESOLVED
            key = previous_key
            instance = tracks.get(previous)
        else:
            key = AlertKey(rule_name, labels, top)
            instance = tracks[top]
            if previous is None:
                event_type = EventType.FIRING
            elif top > previous:
                event_type = EventType.ESCALATED
            else:
                event_type = EventType.DOWNGRADED

        logger.debug(f"Surfaced change for {key}: {event_type}")
        return [AlertEvent(event_type, key, instance, now, previous=previous_key)]

    def surfaced(self, rule_name: str, labels: LabelSet) -> Optional[Severity]:
        with self._lock:
            return self._surfaced.get((rule_name, labels))

    def forget_rules(self, keep: List[str]) -> None:
        with self._lock:
            for group in [g for g in self._surfaced if g[0] not in keep]:
                del self._surfaced[group]
