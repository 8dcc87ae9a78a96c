"""
Runbook entries and the registry that maps rule identities to them.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from runbookd.alerts.alert_rule import AlertRule, Severity
from runbookd.exceptions import ConfigurationError, RunbookNotFound
from runbookd.runbooks.templates import ActionTemplate, BoundAction, parse_action_template, render_reference

logger = logging.getLogger(__name__)


@dataclass
class Applicability:
    """
    Condition under which a resolution step applies.

    Every configured clause must hold; an empty condition always applies.
    """
    labels: Dict[str, str] = field(default_factory=dict)
    min_severity: Optional[Severity] = None
    value_above: Optional[float] = None
    value_below: Optional[float] = None

    def matches(self, context: Dict[str, Any]) -> bool:
        labels = context.get('labels', {})
        for key, expected in self.labels.items():
            if labels.get(key) != str(expected):
                return False

        if self.min_severity is not None:
            severity = context.get('severity_level')
            if severity is None or severity < self.min_severity:
                return False

        value = context.get('value')
        if self.value_above is not None and (value is None or value <= self.value_above):
            return False
        if self.value_below is not None and (value is None or value >= self.value_below):
            return False

        return True

    @classmethod
    def parse(cls, config: Optional[Dict]) -> 'Applicability':
        if not config:
            return cls()
        if not isinstance(config, dict):
            raise ConfigurationError(f"Invalid 'when' condition: {config!r}")
        unknown = set(config) - {'labels', 'min_severity', 'value_above', 'value_below'}
        if unknown:
            raise ConfigurationError(f"Unknown 'when' clauses: {sorted(unknown)}")
        try:
            return cls(
                labels={str(k): str(v) for k, v in (config.get('labels') or {}).items()},
                min_severity=Severity.parse(config['min_severity']) if config.get('min_severity') else None,
                value_above=float(config['value_above']) if config.get('value_above') is not None else None,
                value_below=float(config['value_below']) if config.get('value_below') is not None else None,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid 'when' condition {config!r}: {e}")


@dataclass
class DiagnosisStep:
    """Read-only step gathering evidence"""
    action: ActionTemplate
    target: Any
    params: Dict[str, Any] = field(default_factory=dict)
    expects: str = ""

    def bind(self, context: Dict[str, Any]) -> BoundAction:
        return bind_step(self.action, self.target, self.params, context)


@dataclass
class ResolutionStep:
    """Mutating step, executed in declared order"""
    action: ActionTemplate
    target: Any
    params: Dict[str, Any] = field(default_factory=dict)
    when: Applicability = field(default_factory=Applicability)
    idempotent: bool = True
    precondition: Optional[str] = None
    description: str = ""

    def applies(self, context: Dict[str, Any]) -> bool:
        return self.when.matches(context)

    def bind(self, context: Dict[str, Any]) -> BoundAction:
        return bind_step(self.action, self.target, self.params, context)


@dataclass
class RunbookEntry:
    """Diagnosis, resolution and prevention procedure for one rule"""
    rule: str
    diagnosis: List[DiagnosisStep] = field(default_factory=list)
    resolution: List[ResolutionStep] = field(default_factory=list)
    prevention: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None


def bind_step(action: ActionTemplate, target: Any, params: Dict[str, Any],
              context: Dict[str, Any]) -> BoundAction:
    """Render a step's target and parameters from alert data, then validate them"""
    rendered_target = render_reference(target, context)
    rendered = {name: render_reference(value, context) for name, value in params.items()}
    return action.bind(rendered_target, rendered)


def alert_context(rule_name: str, labels: Iterable[Tuple[str, str]], severity: Severity,
                  value: Optional[float]) -> Dict[str, Any]:
    """Data available to step templates and applicability conditions"""
    return {
        'rule': rule_name,
        'labels': dict(labels),
        'severity': severity.label,
        'severity_level': severity,
        'value': value,
    }


class RunbookRegistry:
    """Maps rule identities to runbook entries; swapped atomically on reload"""

    def __init__(self, entries: Optional[Iterable[RunbookEntry]] = None,
                 actions: Optional[Dict[str, ActionTemplate]] = None):
        self._lock = threading.Lock()
        self._entries: Dict[str, RunbookEntry] = {}
        self.actions: Dict[str, ActionTemplate] = dict(actions or {})
        for entry in entries or []:
            if entry.rule in self._entries:
                raise ConfigurationError(f"Duplicate runbook for rule {entry.rule}")
            self._entries[entry.rule] = entry

    def get(self, rule_name: str) -> RunbookEntry:
        """
        Look up the runbook for a rule.

        Raises:
            RunbookNotFound: If no runbook is registered
        """
        with self._lock:
            entry = self._entries.get(rule_name)
        if entry is None:
            raise RunbookNotFound(rule_name)
        return entry

    def __contains__(self, rule_name: str) -> bool:
        with self._lock:
            return rule_name in self._entries

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def rules(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def swap(self, other: 'RunbookRegistry') -> None:
        """Atomically replace all entries and actions with another registry's"""
        with self._lock:
            self._entries = dict(other._entries)
            self.actions = dict(other.actions)
        logger.info(f"Runbook registry swapped ({len(self._entries)} runbooks)")

    def validate_against(self, rules: Iterable[AlertRule]) -> None:
        """
        Reject runbooks for unknown rules; warn about rules without runbooks.

        Raises:
            ConfigurationError: If a runbook references an unknown rule
        """
        rule_names = {rule.name for rule in rules}
        with self._lock:
            orphans = sorted(set(self._entries) - rule_names)
            missing = sorted(rule_names - set(self._entries))
        if orphans:
            raise ConfigurationError(f"Runbooks reference unknown rules: {orphans}")
        for name in missing:
            logger.warning(f"Rule {name} has no runbook; firing alerts will escalate immediately")


def _parse_updated(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ConfigurationError(f"Invalid runbook updated timestamp: {value!r}")


def _resolve_action(actions: Dict[str, ActionTemplate], rule: str, step: Dict) -> ActionTemplate:
    if not isinstance(step, dict) or 'action' not in step:
        raise ConfigurationError(f"Runbook {rule}: step without action: {step!r}")
    action = actions.get(step['action'])
    if action is None:
        raise ConfigurationError(f"Runbook {rule}: unknown action '{step['action']}'")
    if 'target' not in step:
        raise ConfigurationError(f"Runbook {rule}: step '{step['action']}' has no target")
    return action


def parse_runbook(config: Dict, actions: Dict[str, ActionTemplate]) -> RunbookEntry:
    """Build a RunbookEntry from its YAML mapping"""
    rule = config.get('rule') if isinstance(config, dict) else None
    if not rule:
        raise ConfigurationError(f"Runbook without rule: {config!r}")

    diagnosis = []
    for step in config.get('diagnosis') or []:
        action = _resolve_action(actions, rule, step)
        if action.mutating:
            raise ConfigurationError(
                f"Runbook {rule}: diagnosis step '{action.name}' uses a mutating action"
            )
        diagnosis.append(DiagnosisStep(
            action=action,
            target=step['target'],
            params=dict(step.get('params') or {}),
            expects=step.get('expects', ''),
        ))

    resolution = []
    for step in config.get('resolution') or []:
        action = _resolve_action(actions, rule, step)
        resolution.append(ResolutionStep(
            action=action,
            target=step['target'],
            params=dict(step.get('params') or {}),
            when=Applicability.parse(step.get('when')),
            idempotent=bool(step.get('idempotent', action.idempotent)),
            precondition=step.get('precondition', action.precondition),
            description=step.get('description', ''),
        ))

    prevention = config.get('prevention') or []
    if isinstance(prevention, str):
        prevention = [prevention]

    return RunbookEntry(
        rule=rule,
        diagnosis=diagnosis,
        resolution=resolution,
        prevention=[str(note) for note in prevention],
        updated_at=_parse_updated(config.get('updated')),
    )


def load_runbooks(runbooks_file: str) -> RunbookRegistry:
    """
    Load action templates and runbooks from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigurationError: If the file or any entry is malformed
    """
    try:
        with open(runbooks_file, 'r') as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(f"Runbooks file not found: {runbooks_file}")
        raise
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML format: {e}")

    config = config or {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"Runbooks file {runbooks_file} must contain a mapping")

    actions = {
        name: parse_action_template(name, action_config)
        for name, action_config in (config.get('actions') or {}).items()
    }
    entries = [parse_runbook(entry, actions) for entry in config.get('runbooks') or []]

    registry = RunbookRegistry(entries, actions)
    logger.info(f"Loaded {len(entries)} runbooks and {len(actions)} actions from {runbooks_file}")
    return registry
