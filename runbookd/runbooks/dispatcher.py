"""
Runbook dispatch: turns a firing alert into diagnosis and resolution actions.
"""

import logging
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from runbookd.actions.executor import ActionExecutor, ActionOutcome, ActionResult
from runbookd.alerts.state_machine import AlertInstance
from runbookd.exceptions import ActionExecutionFailure, ParameterValidationError
from runbookd.runbooks.runbook import RunbookEntry, RunbookRegistry, alert_context

logger = logging.getLogger(__name__)


@dataclass
class DispatchPlan:
    """What a dispatch started; futures complete asynchronously"""
    alert_id: str
    diagnosis: List[Future] = field(default_factory=list)
    resolution: Optional[Future] = None
    remediation_enabled: bool = False


@dataclass
class PlannedStep:
    """One resolution step as a dry run renders it"""
    action: str
    command: Optional[str]
    applicable: bool
    idempotent: bool
    mutating: bool
    error: Optional[str] = None

    def __str__(self):
        if self.error:
            return f"[invalid] {self.action}: {self.error}"
        status = "run" if self.applicable else "skip"
        flags = [] if self.idempotent else ["non-idempotent"]
        return f"[{status}] {self.command}{' (' + ', '.join(flags) + ')' if flags else ''}"


class RunbookDispatcher:
    """Looks up runbooks and hands their steps to the action executor"""

    def __init__(self, registry: RunbookRegistry, executor: ActionExecutor,
                 on_remediation_exhausted: Optional[Callable[[AlertInstance, List[ActionResult]], None]] = None):
        """
        Initialize dispatcher.

        Args:
            registry: Runbook registry
            executor: Action executor
            on_remediation_exhausted: Called when a resolution step finally fails
        """
        self.registry = registry
        self.executor = executor
        self.on_remediation_exhausted = on_remediation_exhausted

    def dispatch(self, instance: AlertInstance) -> DispatchPlan:
        """
        Start the runbook for a firing alert instance without blocking.

        Raises:
            RunbookNotFound: If no runbook is registered for the rule
        """
        entry = self.registry.get(instance.key.rule)
        context = alert_context(instance.key.rule, instance.key.labels,
                                instance.key.severity, instance.last_value)

        self.executor.begin(instance.key)
        plan = DispatchPlan(instance.alert_id, remediation_enabled=instance.tier.auto_remediate)

        for step in entry.diagnosis:
            try:
                action = step.bind(context)
            except ParameterValidationError as e:
                logger.error(f"Diagnosis step {step.action.name} for {instance.key} rejected: {e}")
                self._record_invalid(instance, step.action.name, str(e))
                continue
            plan.diagnosis.append(self.executor.submit(
                action,
                alert_key=instance.key,
                on_result=instance.record_action,
            ))

        if entry.resolution:
            if instance.tier.auto_remediate:
                plan.resolution = self.executor.submit_job(self._resolve, instance, entry, context)
            else:
                logger.info(
                    f"{instance.key}: {instance.tier.severity.label} tier is notify-only; "
                    f"{len(entry.resolution)} resolution steps not executed"
                )

        logger.info(
            f"Dispatched runbook for {instance.key}: {len(plan.diagnosis)} diagnosis steps"
            f"{', remediation started' if plan.resolution else ''}"
        )
        return plan

    def _resolve(self, instance: AlertInstance, entry: RunbookEntry, context) -> List[ActionResult]:
        """Run resolution steps in declared order; stop at the first final failure"""
        results = []
        for step in entry.resolution:
            if not instance.is_firing:
                logger.info(f"{instance.key} no longer firing; remaining resolution steps dropped")
                break

            if not step.applies(context):
                logger.info(f"{instance.key}: resolution step {step.action.name} not applicable, skipped")
                continue

            try:
                action = step.bind(context)
            except ParameterValidationError as e:
                logger.error(f"Resolution step {step.action.name} for {instance.key} rejected: {e}")
                results.append(self._record_invalid(instance, step.action.name, str(e)))
                self._exhausted(instance, results)
                break

            result = self.executor.run(
                action,
                alert_key=instance.key,
                idempotent=step.idempotent,
                precondition=step.precondition,
                on_result=instance.record_action,
            )
            results.append(result)

            if result.outcome == ActionOutcome.CANCELLED:
                break
            try:
                result.raise_for_outcome()
            except ActionExecutionFailure as e:
                logger.error(f"Remediation for {instance.key} exhausted: {e}")
                self._exhausted(instance, results)
                break

        return results

    def _exhausted(self, instance: AlertInstance, results: List[ActionResult]) -> None:
        if self.on_remediation_exhausted is None:
            return
        try:
            self.on_remediation_exhausted(instance, results)
        except Exception as e:
            logger.error(f"Error handling exhausted remediation for {instance.key}: {e}", exc_info=True)

    def _record_invalid(self, instance: AlertInstance, action_name: str, error: str) -> ActionResult:
        result = ActionResult(
            action=action_name,
            target='-',
            outcome=ActionOutcome.FAILURE,
            error=error,
            alert_id=instance.alert_id,
        )
        instance.record_action(result)
        return result

    def dry_run(self, rule_name: str, labels, severity, value: Optional[float] = None) -> List[PlannedStep]:
        """
        Render a runbook's resolution steps without executing anything.

        Raises:
            RunbookNotFound: If no runbook is registered for the rule
        """
        entry = self.registry.get(rule_name)
        context = alert_context(rule_name, labels, severity, value)

        planned = []
        for step in entry.resolution:
            try:
                action = step.bind(context)
                command = action.describe()
                error = None
            except ParameterValidationError as e:
                command, error = None, str(e)
            planned.append(PlannedStep(
                action=step.action.name,
                command=command,
                applicable=step.applies(context),
                idempotent=step.idempotent,
                mutating=step.action.mutating,
                error=error,
            ))
        return planned
