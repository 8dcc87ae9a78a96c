"""
Action executor: retries, backoff, cancellation and per-target mutual exclusion.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

from runbookd.actions.backends import ActionBackend
from runbookd.exceptions import ActionExecutionFailure, ActionTimeout
from runbookd.runbooks.templates import BoundAction

logger = logging.getLogger(__name__)


class ActionOutcome:
    """Action outcome constants"""
    SUCCESS = 'success'
    FAILURE = 'failure'
    TIMEOUT = 'timeout'
    SKIPPED = 'skipped'      # Precondition no longer held; not a failure
    CANCELLED = 'cancelled'  # Alert resolved before the action completed


@dataclass
class ActionResult:
    """Recorded outcome of one action, including all of its retries"""
    action: str
    target: str
    outcome: str
    retries: int = 0
    timestamp: datetime = field(default_factory=datetime.now)
    output: str = ""
    output_ref: Optional[str] = None
    error: Optional[str] = None
    mutating: bool = True
    alert_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == ActionOutcome.SUCCESS

    @property
    def failed(self) -> bool:
        return self.outcome in (ActionOutcome.FAILURE, ActionOutcome.TIMEOUT)

    def raise_for_outcome(self) -> None:
        """
        Raise if the action ultimately failed or timed out.

        Raises:
            ActionTimeout: If the final attempt timed out
            ActionExecutionFailure: If the final attempt failed
        """
        if self.outcome == ActionOutcome.TIMEOUT:
            raise ActionTimeout(self.action, self.target, self.error)
        if self.outcome == ActionOutcome.FAILURE:
            raise ActionExecutionFailure(self.action, self.target, self.error)

    def to_dict(self) -> Dict:
        return {
            'action': self.action,
            'target': self.target,
            'outcome': self.outcome,
            'retries': self.retries,
            'timestamp': self.timestamp.isoformat(),
            'output_ref': self.output_ref,
            'error': self.error,
            'alert_id': self.alert_id,
        }

    def __str__(self):
        text = f"{self.action} on {self.target}: {self.outcome}"
        if self.retries:
            text += f" after {self.retries} retr{'y' if self.retries == 1 else 'ies'}"
        if self.error:
            text += f" ({self.error})"
        return text


class ActionExecutor:
    """Runs actions on a worker pool with retry and per-target locking"""

    def __init__(self, config: Dict, backends: Dict[str, ActionBackend],
                 storage=None, metrics=None):
        """
        Initialize action executor.

        Args:
            config: Actions configuration dict
            backends: Backend name -> implementation
            storage: Optional storage backend for action results
            metrics: Optional exporter for action counters
        """
        self.backends = backends
        self.storage = storage
        self.metrics = metrics

        self.max_retries = int(config.get('max_retries', 3))
        self.backoff_base = float(config.get('backoff_base', 1.0))
        self.backoff_max = float(config.get('backoff_max', 60.0))
        self.timeout = float(config.get('timeout', 30))
        self.output_limit = int(config.get('output_limit', 4096))

        self._pool = ThreadPoolExecutor(
            max_workers=int(config.get('workers', 8)),
            thread_name_prefix='action'
        )
        self._target_locks: Dict[str, threading.Lock] = {}
        self._cancel_events: Dict[object, threading.Event] = {}
        self._guard = threading.Lock()
        self._shutdown = threading.Event()

        logger.info(
            f"Action executor initialized (max_retries: {self.max_retries}, "
            f"backends: {', '.join(sorted(backends))})"
        )

    # Cancellation scopes

    def begin(self, alert_key) -> threading.Event:
        """Open a fresh cancellation scope for an alert occurrence"""
        with self._guard:
            event = threading.Event()
            self._cancel_events[alert_key] = event
            return event

    def cancel(self, alert_key) -> bool:
        """Cancel in-flight retries for an alert; applied actions are not undone"""
        with self._guard:
            event = self._cancel_events.pop(alert_key, None)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancelled pending actions for {alert_key}")
        return True

    def _scope(self, alert_key) -> threading.Event:
        if alert_key is None:
            return self._shutdown
        with self._guard:
            event = self._cancel_events.get(alert_key)
            if event is None:
                event = threading.Event()
                self._cancel_events[alert_key] = event
            return event

    def _target_lock(self, target: str) -> threading.Lock:
        with self._guard:
            lock = self._target_locks.get(target)
            if lock is None:
                lock = threading.Lock()
                self._target_locks[target] = lock
            return lock

    # Execution

    def submit(self, action: BoundAction, timeout: Optional[float] = None,
               alert_key=None, idempotent: Optional[bool] = None,
               precondition: Optional[str] = None,
               on_result: Optional[Callable[[ActionResult], None]] = None) -> Future:
        """Run an action asynchronously; see run() for the arguments"""
        scope = self._scope(alert_key)
        return self._pool.submit(
            self._run_in_scope, action, timeout, alert_key, idempotent, precondition, on_result, scope
        )

    def submit_job(self, fn: Callable, *args) -> Future:
        """Run a multi-step job (e.g. ordered resolution steps) on the worker pool"""
        return self._pool.submit(fn, *args)

    def run(self, action: BoundAction, timeout: Optional[float] = None,
            alert_key=None, idempotent: Optional[bool] = None,
            precondition: Optional[str] = None,
            on_result: Optional[Callable[[ActionResult], None]] = None) -> ActionResult:
        """
        Execute an action against its bound target.

        Args:
            action: Bound action (carries the target)
            timeout: Per-attempt timeout in seconds
            alert_key: Alert the action belongs to, for cancellation
            idempotent: Override the template's idempotency flag
            precondition: Precondition re-checked before a non-idempotent retry
            on_result: Callback receiving the final ActionResult

        Returns:
            The final ActionResult
        """
        return self._run_in_scope(action, timeout, alert_key, idempotent, precondition,
                                  on_result, self._scope(alert_key))

    def _run_in_scope(self, action: BoundAction, timeout: Optional[float], alert_key,
                      idempotent: Optional[bool], precondition: Optional[str],
                      on_result, cancel_event: threading.Event) -> ActionResult:
        timeout = timeout or action.template.timeout or self.timeout
        if idempotent is None:
            idempotent = action.template.idempotent
        if precondition is None:
            precondition = action.template.precondition

        # Non-idempotent actions retry at most once, and only behind a precondition
        if idempotent:
            retry_limit = self.max_retries
        else:
            retry_limit = min(1, self.max_retries) if precondition else 0

        retries = 0
        while True:
            if cancel_event.is_set():
                outcome, output, error = ActionOutcome.CANCELLED, "", "alert resolved"
                break

            outcome, output, error = self._attempt(action, timeout)
            if outcome == ActionOutcome.SUCCESS or retries >= retry_limit:
                break

            delay = min(self.backoff_base * (2 ** retries), self.backoff_max)
            logger.warning(
                f"Action {action.name} on {action.target} {outcome} ({error}); "
                f"retrying in {delay:.1f}s"
            )
            if cancel_event.wait(delay):
                outcome, error = ActionOutcome.CANCELLED, "alert resolved during backoff"
                break

            if not idempotent:
                backend = self.backends.get(action.template.backend)
                if backend is None or not backend.check_precondition(action, precondition):
                    logger.info(
                        f"Precondition '{precondition}' no longer holds for {action.name} "
                        f"on {action.target}; retry skipped"
                    )
                    outcome, error = ActionOutcome.SKIPPED, f"precondition '{precondition}' no longer holds"
                    break

            retries += 1

        result = ActionResult(
            action=action.name,
            target=action.target,
            outcome=outcome,
            retries=retries,
            output=(output or "")[:self.output_limit],
            output_ref=f"{action.name}:{uuid.uuid4().hex[:12]}",
            error=error,
            mutating=action.mutating,
            alert_id=str(alert_key) if alert_key is not None else None,
        )
        self._record(result)

        if on_result is not None:
            try:
                on_result(result)
            except Exception as e:
                logger.error(f"Error in action result callback for {action.name}: {e}", exc_info=True)

        return result

    def _attempt(self, action: BoundAction, timeout: float):
        """One attempt; returns (outcome, output, error)"""
        backend = self.backends.get(action.template.backend)
        if backend is None:
            return ActionOutcome.FAILURE, "", f"no backend '{action.template.backend}'"

        lock = self._target_lock(action.target) if action.mutating else None
        if lock is not None and not lock.acquire(timeout=timeout):
            return ActionOutcome.TIMEOUT, "", f"target {action.target} busy for {timeout}s"

        try:
            result = backend.execute(action, timeout)
            if result.ok:
                return ActionOutcome.SUCCESS, result.output, None
            return ActionOutcome.FAILURE, result.output, result.error or "action failed"
        except ActionTimeout as e:
            return ActionOutcome.TIMEOUT, "", e.error or str(e)
        except Exception as e:
            logger.error(f"Action {action.name} on {action.target} raised: {e}", exc_info=True)
            return ActionOutcome.FAILURE, "", str(e)
        finally:
            if lock is not None:
                lock.release()

    def _record(self, result: ActionResult) -> None:
        level = logging.INFO if not result.failed else logging.ERROR
        logger.log(level, f"Action result: {result}")

        if self.metrics:
            self.metrics.actions.labels(action=result.action, outcome=result.outcome).inc()

        if self.storage:
            try:
                self.storage.save_action_result(result)
            except Exception as e:
                logger.error(f"Failed to store action result for {result.action}: {e}")

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and cancel every pending retry"""
        self._shutdown.set()
        with self._guard:
            events = list(self._cancel_events.values())
            self._cancel_events.clear()
        for event in events:
            event.set()
        self._pool.shutdown(wait=wait, cancel_futures=True)
