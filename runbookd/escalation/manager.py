"""
Escalation ladder: timers per alert key, tickets per contact tier.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from runbookd.alerts.alert_rule import AlertKey, SeverityTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContactTier:
    """One rung of the escalation ladder"""
    name: str
    channels: List[str]


@dataclass
class EscalationTicket:
    """A page to a contact tier about an unresolved alert"""
    ticket_id: str
    key: AlertKey
    tier_index: int
    contact: str
    opened_at: datetime
    reason: str = ""
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    next_escalation_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    def to_dict(self) -> Dict:
        return {
            'ticket_id': self.ticket_id,
            'alert': str(self.key),
            'tier_index': self.tier_index,
            'contact': self.contact,
            'opened_at': self.opened_at.isoformat(),
            'reason': self.reason,
            'acknowledged': self.acknowledged,
            'next_escalation_at': self.next_escalation_at.isoformat() if self.next_escalation_at else None,
            'closed_at': self.closed_at.isoformat() if self.closed_at else None,
        }


@dataclass
class EscalationTimer:
    """Pending escalation for one alert key"""
    key: AlertKey
    next_at: datetime
    interval: float
    tier_index: int = 0
    paused: bool = False
    tickets: List[EscalationTicket] = field(default_factory=list)


class EscalationManager:
    """
    Schedules, cancels and fires escalation timers.

    Timers are keyed by alert key, so cancellation is a dict removal. Due
    timers are processed by a background loop (or directly via process_due).
    """

    def __init__(self, config: Dict, notifier, is_firing: Callable[[AlertKey], bool],
                 instance_lookup: Optional[Callable] = None, storage=None, metrics=None):
        """
        Initialize escalation manager.

        Args:
            config: Escalation configuration dict
            notifier: Notifier used to page contact tiers
            is_firing: Returns whether an alert key is still firing
            instance_lookup: Returns the AlertInstance for a key (page context)
            storage: Optional storage backend for tickets
            metrics: Optional exporter for ticket counters
        """
        self.notifier = notifier
        self.is_firing = is_firing
        self.instance_lookup = instance_lookup
        self.storage = storage
        self.metrics = metrics

        self.enabled = config.get('enabled', True)
        self.check_interval = float(config.get('check_interval', 10))
        self.critical_window = float(config.get('critical_window', 300))
        self.warning_window = float(config.get('warning_window', 1800))
        self.backoff_factor = float(config.get('backoff_factor', 2.0))
        self.contact_tiers = [
            ContactTier(tier['name'], list(tier['channels']))
            for tier in config.get('contact_tiers', [])
        ]

        self._timers: Dict[AlertKey, EscalationTimer] = {}
        self._tickets: Dict[str, EscalationTicket] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self._running = False
        self._thread: Optional[threading.Thread] = None

        logger.info(
            f"Escalation manager initialized with {len(self.contact_tiers)} contact tiers"
            f"{'' if self.enabled else ' (disabled)'}"
        )

    def window_for(self, tier: SeverityTier) -> float:
        """Escalation window of a tier: configured, else by severity class"""
        if tier.escalation_window is not None:
            return tier.escalation_window
        return self.critical_window if tier.severity.is_critical_class else self.warning_window

    def arm(self, key: AlertKey, tier: SeverityTier, now: datetime) -> Optional[EscalationTimer]:
        """Arm the first escalation timer for a newly surfaced alert"""
        if not self.enabled or not self.contact_tiers:
            return None

        window = self.window_for(tier)
        with self._lock:
            timer = self._timers.get(key)
            if timer is None:
                timer = self._add_timer(key, now + timedelta(seconds=window), window)
                logger.info(f"Escalation armed for {key} in {window:.0f}s")
        return timer

    def _add_timer(self, key: AlertKey, next_at: datetime, interval: float) -> EscalationTimer:
        """Register a timer and hand it to the alert instance; caller holds the lock"""
        timer = EscalationTimer(key, next_at, interval)
        self._timers[key] = timer
        self._set_handle(key, timer)
        return timer

    def _drop_timer(self, key: AlertKey) -> Optional[EscalationTimer]:
        timer = self._timers.pop(key, None)
        if timer is not None:
            self._set_handle(key, None)
        return timer

    def _set_handle(self, key: AlertKey, timer: Optional[EscalationTimer]) -> None:
        instance = self.instance_lookup(key) if self.instance_lookup else None
        if instance is not None:
            instance.escalation_handle = timer

    def escalate_now(self, key: AlertKey, tier: SeverityTier, now: datetime,
                     reason: str) -> Optional[EscalationTicket]:
        """Skip the remaining window and open the next ticket immediately"""
        if not self.enabled or not self.contact_tiers:
            return None

        with self._lock:
            timer = self._timers.get(key)
            if timer is None:
                timer = self._add_timer(key, now, self.window_for(tier))
            elif timer.paused:
                logger.info(f"Escalation for {key} is acknowledged; not escalating ({reason})")
                return None
            ticket = self._open_ticket(timer, now, reason)

        if ticket is not None:
            self._page(ticket)
        return ticket

    def process_due(self, now: Optional[datetime] = None) -> List[EscalationTicket]:
        """Open tickets for every expired, unpaused timer whose alert still fires"""
        now = now or datetime.now()
        opened = []
        with self._lock:
            due = [t for t in self._timers.values() if not t.paused and t.next_at <= now]
            for timer in due:
                ticket = self._open_ticket(timer, now, "escalation window elapsed")
                if ticket is not None:
                    opened.append(ticket)

        for ticket in opened:
            self._page(ticket)
        return opened

    def _open_ticket(self, timer: EscalationTimer, now: datetime, reason: str) -> Optional[EscalationTicket]:
        """Open the next tier's ticket and re-arm; caller holds the lock"""
        key = timer.key
        if not self.is_firing(key):
            logger.debug(f"Escalation for {key} dropped: no longer firing")
            self._drop_timer(key)
            return None

        if timer.tier_index >= len(self.contact_tiers):
            logger.warning(f"Escalation ladder exhausted for {key}")
            timer.next_at = datetime.max
            return None

        contact = self.contact_tiers[timer.tier_index]
        ticket = EscalationTicket(
            ticket_id=f"ESC-{next(self._ids):05d}",
            key=key,
            tier_index=timer.tier_index,
            contact=contact.name,
            opened_at=now,
            reason=reason,
        )

        timer.tier_index += 1
        timer.interval *= self.backoff_factor
        if timer.tier_index < len(self.contact_tiers):
            timer.next_at = now + timedelta(seconds=timer.interval)
            ticket.next_escalation_at = timer.next_at
        else:
            timer.next_at = datetime.max

        timer.tickets.append(ticket)
        self._tickets[ticket.ticket_id] = ticket

        logger.warning(f"Escalation ticket {ticket.ticket_id} opened for {key} -> {contact.name} ({reason})")
        if self.metrics:
            self.metrics.escalation_tickets.labels(tier=contact.name).inc()
        self._store(ticket)
        return ticket

    def _page(self, ticket: EscalationTicket) -> None:
        contact = self.contact_tiers[ticket.tier_index]
        instance = self.instance_lookup(ticket.key) if self.instance_lookup else None
        self.notifier.page(ticket, contact, instance)

    def cancel(self, key: AlertKey) -> bool:
        """Drop the pending timer for a key, leaving its tickets open"""
        with self._lock:
            return self._drop_timer(key) is not None

    def resolve(self, key: AlertKey, now: Optional[datetime] = None) -> List[EscalationTicket]:
        """
        Cancel all pending escalation for a key and close its tickets.

        Tickets opened under an earlier, cancelled timer for the same key are
        closed too.
        """
        now = now or datetime.now()
        with self._lock:
            self._drop_timer(key)
            closed = [t for t in self._tickets.values() if t.key == key and t.is_open]
            for ticket in closed:
                ticket.closed_at = now
                ticket.next_escalation_at = None

        for ticket in closed:
            logger.info(f"Escalation ticket {ticket.ticket_id} closed: {key} resolved")
            self._store(ticket)
        return closed

    def acknowledge(self, ticket_id: str, now: Optional[datetime] = None) -> EscalationTicket:
        """
        Acknowledge a ticket, pausing escalation for its alert key.

        Raises:
            KeyError: If the ticket is unknown
        """
        now = now or datetime.now()
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            if ticket is None:
                raise KeyError(f"Unknown escalation ticket: {ticket_id}")
            ticket.acknowledged = True
            ticket.acknowledged_at = now
            ticket.next_escalation_at = None
            timer = self._timers.get(ticket.key)
            if timer is not None:
                timer.paused = True

        logger.info(f"Escalation ticket {ticket_id} acknowledged; escalation paused for {ticket.key}")
        self._store(ticket)
        return ticket

    def has_timer(self, key: AlertKey) -> bool:
        with self._lock:
            return key in self._timers

    def timer(self, key: AlertKey) -> Optional[EscalationTimer]:
        with self._lock:
            return self._timers.get(key)

    def tickets(self, key: Optional[AlertKey] = None, open_only: bool = False) -> List[EscalationTicket]:
        with self._lock:
            tickets = list(self._tickets.values())
        if key is not None:
            tickets = [t for t in tickets if t.key == key]
        if open_only:
            tickets = [t for t in tickets if t.is_open]
        return tickets

    def _store(self, ticket: EscalationTicket) -> None:
        if not self.storage:
            return
        try:
            self.storage.save_ticket(ticket)
        except Exception as e:
            logger.error(f"Failed to store escalation ticket {ticket.ticket_id}: {e}")

    # Background loop

    def start(self) -> None:
        if self._thread is not None or not self.enabled:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="escalation")
        self._thread.start()
        logger.info("Started escalation thread")

    def stop(self) -> None:
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

    def _run_loop(self) -> None:
        logger.debug(f"Starting escalation loop (interval: {self.check_interval}s)")
        while self._running:
            try:
                self.process_due()
            except Exception as e:
                logger.error(f"Error in escalation loop: {e}", exc_info=True)
            time.sleep(self.check_interval)
