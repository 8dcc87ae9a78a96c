"""
Alert rule data structures and loading utilities.
"""

import operator
import yaml
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional
import logging

from runbookd.exceptions import ConfigurationError
from runbookd.utils.helpers import LabelSet, format_labels, parse_duration

logger = logging.getLogger(__name__)

COMPARATORS = {
    '>': operator.gt,
    '>=': operator.ge,
    '<': operator.lt,
    '<=': operator.le,
}

VALID_DOMAINS = ['infra', 'db', 'backend', 'frontend']


class Severity(IntEnum):
    """Alert severity with an explicit total order"""
    INFO = 1
    WARNING = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value) -> 'Severity':
        if isinstance(value, Severity):
            return value
        try:
            return cls[str(value).upper()]
        except KeyError:
            valid = [s.name.lower() for s in cls]
            raise ConfigurationError(f"Invalid severity: {value}. Must be one of {valid}")

    @property
    def label(self) -> str:
        return self.name.lower()

    @property
    def is_critical_class(self) -> bool:
        return self >= Severity.CRITICAL


@dataclass(frozen=True)
class SeverityTier:
    """Independently thresholded and timed variant of a rule"""
    severity: Severity
    threshold: float
    for_seconds: float
    clear_seconds: float = 0.0
    window_seconds: float = 60.0
    auto_remediate: bool = False
    escalation_window: Optional[float] = None

    def __post_init__(self):
        if self.for_seconds < 0:
            raise ConfigurationError(f"for-duration must be >= 0, got {self.for_seconds}")
        if self.clear_seconds < 0:
            raise ConfigurationError(f"clear-duration must be >= 0, got {self.clear_seconds}")
        if self.window_seconds <= 0:
            raise ConfigurationError(f"window must be > 0, got {self.window_seconds}")


@dataclass(frozen=True)
class AlertKey:
    """Identity of an alert instance: one per (rule, label set, severity)"""
    rule: str
    labels: LabelSet
    severity: Severity

    @property
    def group(self):
        """The (rule, label set) pair shared by all severity tracks"""
        return (self.rule, self.labels)

    def __str__(self):
        label_str = format_labels(self.labels)
        base = f"{self.rule}[{label_str}]" if label_str else self.rule
        return f"{base}/{self.severity.label}"


@dataclass
class AlertRule:
    """Alert rule definition"""
    name: str
    expression: str
    operator: str  # >, >=, <, <=
    tiers: List[SeverityTier]
    domain: str = 'infra'
    group_by: List[str] = field(default_factory=list)
    enabled: bool = True
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self):
        """Validate rule configuration"""
        if not self.name:
            raise ConfigurationError("Rule name must not be empty")

        if not self.expression:
            raise ConfigurationError(f"Rule {self.name}: expression must not be empty")

        if self.operator not in COMPARATORS:
            raise ConfigurationError(
                f"Invalid operator: {self.operator}. Must be one of {list(COMPARATORS)}"
            )

        if self.domain not in VALID_DOMAINS:
            raise ConfigurationError(f"Invalid domain: {self.domain}. Must be one of {VALID_DOMAINS}")

        if not self.tiers:
            raise ConfigurationError(f"Rule {self.name}: at least one severity tier must be specified")

        severities = [t.severity for t in self.tiers]
        if len(set(severities)) != len(severities):
            raise ConfigurationError(f"Rule {self.name}: duplicate severity tiers")

        # Most severe first
        self.tiers = sorted(self.tiers, key=lambda t: t.severity, reverse=True)

    def compare(self, value: float, threshold: float) -> bool:
        """Apply the rule's comparator"""
        return COMPARATORS[self.operator](value, threshold)

    def tier(self, severity: Severity) -> SeverityTier:
        for tier in self.tiers:
            if tier.severity == severity:
                return tier
        raise KeyError(f"Rule {self.name} has no {Severity.parse(severity).label} tier")

    def generate_alert_id(self, labels: Optional[LabelSet] = None,
                          severity: Optional[Severity] = None) -> str:
        """
        Generate unique alert ID based on rule name, labels and severity.

        Args:
            labels: Label set of this specific alert instance
            severity: Severity track, if any

        Returns:
            Unique alert ID string
        """
        alert_id = self.name
        label_str = "_".join(f"{k}={v}" for k, v in (labels or ()))
        if label_str:
            alert_id = f"{alert_id}_{label_str}"
        if severity is not None:
            alert_id = f"{alert_id}_{severity.label}"
        return alert_id


def parse_tier(rule_name: str, severity_name: str, tier_config: Dict) -> SeverityTier:
    """Build a SeverityTier from its YAML mapping"""
    if not isinstance(tier_config, dict):
        raise ConfigurationError(f"Rule {rule_name}: tier {severity_name} must be a mapping")
    if 'threshold' not in tier_config:
        raise ConfigurationError(f"Rule {rule_name}: tier {severity_name} has no threshold")

    severity = Severity.parse(severity_name)
    try:
        threshold = float(tier_config['threshold'])
        for_seconds = parse_duration(tier_config.get('for'), default=0.0)
        clear_seconds = parse_duration(tier_config.get('clear'), default=0.0)
        window_seconds = parse_duration(tier_config.get('window'), default=60.0)
        escalation_window = parse_duration(tier_config.get('escalation_window'))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Rule {rule_name}: tier {severity_name}: {e}")

    # Critical tiers are auto-remediable unless configured otherwise
    auto_remediate = tier_config.get('auto_remediate', severity.is_critical_class)

    return SeverityTier(
        severity=severity,
        threshold=threshold,
        for_seconds=for_seconds,
        clear_seconds=clear_seconds,
        window_seconds=window_seconds,
        auto_remediate=bool(auto_remediate),
        escalation_window=escalation_window,
    )


def parse_rule(rule_config: Dict) -> AlertRule:
    """Build an AlertRule from its YAML mapping"""
    name = rule_config.get('name')
    if not name:
        raise ConfigurationError(f"Rule without name: {rule_config}")

    severities = rule_config.get('severities')
    if not isinstance(severities, dict) or not severities:
        raise ConfigurationError(f"Rule {name}: severities must be a non-empty mapping")

    condition = rule_config.get('condition', {})
    expression = rule_config.get('expression') or rule_config.get('metric_name')

    return AlertRule(
        name=name,
        expression=expression,
        operator=condition.get('operator', '>'),
        tiers=[parse_tier(name, sev, cfg) for sev, cfg in severities.items()],
        domain=rule_config.get('domain', 'infra'),
        group_by=list(rule_config.get('group_by', [])),
        enabled=rule_config.get('enabled', True),
        labels=dict(rule_config.get('labels', {})),
        annotations=dict(rule_config.get('annotations', {})),
        description=rule_config.get('description', ''),
    )


def load_alert_rules(rules_file: str) -> List[AlertRule]:
    """
    Load alert rules from YAML file.

    Unlike a best-effort loader, any malformed rule rejects the whole file so
    the engine never starts with a rule it cannot evaluate.

    Args:
        rules_file: Path to YAML configuration file

    Returns:
        List of AlertRule objects

    Raises:
        FileNotFoundError: If rules file doesn't exist
        ConfigurationError: If rules file has invalid format or an invalid rule
    """
    try:
        with open(rules_file, 'r') as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(f"Alert rules file not found: {rules_file}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse YAML file {rules_file}: {e}")
        raise ConfigurationError(f"Invalid YAML format: {e}")

    if not config or 'alert_rules' not in config:
        logger.warning(f"No alert_rules found in {rules_file}")
        return []

    rules = []
    names = set()
    for rule_config in config['alert_rules']:
        if not isinstance(rule_config, dict):
            raise ConfigurationError(f"Invalid rule entry in {rules_file}: {rule_config!r}")
        try:
            rule = parse_rule(rule_config)
        except ConfigurationError as e:
            logger.error(f"Failed to load rule {rule_config.get('name', 'unknown')}: {e}")
            raise

        if rule.name in names:
            raise ConfigurationError(f"Duplicate rule name: {rule.name}")
        names.add(rule.name)
        rules.append(rule)
        logger.debug(f"Loaded alert rule: {rule.name}")

    logger.info(f"Loaded {len(rules)} alert rules from {rules_file}")
    return rules
