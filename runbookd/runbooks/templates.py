"""
Parameterized action templates.

Commands are argv lists whose elements may contain ``{param}`` placeholders.
Parameters are validated against their declared type before they are bound,
so alert data never reaches a backend as an unchecked string.
"""

import re
import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from runbookd.exceptions import ConfigurationError, ParameterValidationError
from runbookd.utils.helpers import parse_duration

_NAME_RE = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.:-]*$')
_PATH_RE = re.compile(r'^/[A-Za-z0-9_./-]*$')
_REFERENCE_RE = re.compile(r'\{([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)?)\}')

VALID_BACKENDS = ['shell', 'process']


def _to_int(value):
    if isinstance(value, bool):
        raise ValueError("booleans are not integers")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError("not an integer")
    return int(str(value).strip()) if isinstance(value, str) else int(value)


def _to_float(value):
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    return float(value)


def _to_name(value):
    value = str(value)
    if not _NAME_RE.match(value):
        raise ValueError("must match [A-Za-z0-9_][A-Za-z0-9_.:-]*")
    return value


def _to_path(value):
    value = str(value)
    if not _PATH_RE.match(value) or '..' in value.split('/'):
        raise ValueError("must be an absolute path without '..'")
    return value


PARAM_TYPES = {
    'int': _to_int,
    'float': _to_float,
    'name': _to_name,
    'path': _to_path,
}


def coerce_param(name: str, param_type: str, value: Any):
    """Validate and convert a parameter to its declared type"""
    try:
        return PARAM_TYPES[param_type](value)
    except (TypeError, ValueError) as e:
        raise ParameterValidationError(f"Parameter '{name}' ({param_type}) rejected value {value!r}: {e}")


def render_reference(template: Any, context: Dict[str, Any]) -> Any:
    """
    Resolve ``{labels.x}``, ``{value}``, ``{rule}`` and ``{severity}`` references.

    A template that is exactly one reference returns the referenced value
    unchanged; non-string templates are returned as is.
    """
    if not isinstance(template, str):
        return template

    def lookup(ref: str):
        head, _, tail = ref.partition('.')
        if head not in context:
            raise ParameterValidationError(f"Unknown reference '{{{ref}}}'")
        value = context[head]
        if tail:
            if not isinstance(value, dict) or tail not in value:
                raise ParameterValidationError(f"Alert has no value for '{{{ref}}}'")
            value = value[tail]
        if value is None:
            raise ParameterValidationError(f"Alert has no value for '{{{ref}}}'")
        return value

    whole = _REFERENCE_RE.fullmatch(template)
    if whole:
        return lookup(whole.group(1))
    return _REFERENCE_RE.sub(lambda m: str(lookup(m.group(1))), template)


@dataclass(frozen=True)
class BoundAction:
    """An action template with validated parameters and target"""
    template: 'ActionTemplate'
    target: str
    params: Tuple[Tuple[str, Any], ...]

    @property
    def name(self) -> str:
        return self.template.name

    @property
    def mutating(self) -> bool:
        return self.template.mutating

    @property
    def param_dict(self) -> Dict[str, Any]:
        return dict(self.params)

    def argv(self) -> List[str]:
        """Render the shell command; each element stays a single argument"""
        values = dict(self.params, target=self.target)
        return [part.format(**values) for part in self.template.command]

    def describe(self) -> str:
        if self.template.backend == 'shell':
            return " ".join(self.argv())
        args = ", ".join(f"{k}={v}" for k, v in self.params)
        return f"{self.template.operation}({args}) on {self.target}"


@dataclass(frozen=True)
class ActionTemplate:
    """Reusable action definition"""
    name: str
    backend: str
    params: Dict[str, str] = field(default_factory=dict)
    command: Tuple[str, ...] = ()
    operation: Optional[str] = None
    mutating: bool = True
    idempotent: bool = True
    precondition: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        if self.backend not in VALID_BACKENDS:
            raise ConfigurationError(f"Action {self.name}: invalid backend {self.backend}. Must be one of {VALID_BACKENDS}")

        for param, param_type in self.params.items():
            if param_type not in PARAM_TYPES:
                raise ConfigurationError(
                    f"Action {self.name}: parameter {param} has invalid type {param_type}. "
                    f"Must be one of {list(PARAM_TYPES)}"
                )

        if self.backend == 'shell':
            if not self.command:
                raise ConfigurationError(f"Action {self.name}: shell actions need a command")
            allowed = set(self.params) | {'target'}
            for part in self.command:
                for _, field_name, _, _ in string.Formatter().parse(part):
                    if field_name is not None and field_name not in allowed:
                        raise ConfigurationError(
                            f"Action {self.name}: command references undeclared parameter '{field_name}'"
                        )
        elif not self.operation:
            raise ConfigurationError(f"Action {self.name}: {self.backend} actions need an operation")

    def bind(self, target: Any, raw_params: Optional[Dict[str, Any]] = None) -> BoundAction:
        """
        Validate parameters and target and bind them to this template.

        Raises:
            ParameterValidationError: If a value is missing, unexpected or invalid
        """
        raw_params = raw_params or {}
        unexpected = set(raw_params) - set(self.params)
        if unexpected:
            raise ParameterValidationError(f"Action {self.name}: unexpected parameters {sorted(unexpected)}")

        bound = []
        for param, param_type in sorted(self.params.items()):
            if param not in raw_params:
                raise ParameterValidationError(f"Action {self.name}: missing parameter '{param}'")
            bound.append((param, coerce_param(param, param_type, raw_params[param])))

        return BoundAction(self, coerce_param('target', 'name', target), tuple(bound))


def parse_action_template(name: str, config: Dict) -> ActionTemplate:
    """Build an ActionTemplate from its YAML mapping"""
    if not isinstance(config, dict):
        raise ConfigurationError(f"Action {name} must be a mapping")

    command = config.get('command', ())
    if isinstance(command, str):
        raise ConfigurationError(f"Action {name}: command must be a list of arguments, not a shell string")

    timeout = config.get('timeout')
    if timeout is not None:
        try:
            timeout = parse_duration(timeout)
        except ValueError as e:
            raise ConfigurationError(f"Action {name}: {e}")

    return ActionTemplate(
        name=name,
        backend=config.get('backend', 'shell'),
        params=dict(config.get('params', {})),
        command=tuple(str(part) for part in command),
        operation=config.get('operation'),
        mutating=bool(config.get('mutating', True)),
        idempotent=bool(config.get('idempotent', True)),
        precondition=config.get('precondition'),
        timeout=timeout,
    )
