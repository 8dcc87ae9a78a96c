"""
Rule engine: evaluates alert rules against a metric source, tier by tier.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, NamedTuple, Optional

from runbookd.alerts.alert_rule import AlertRule, Severity
from runbookd.exceptions import MetricUnavailable
from runbookd.metrics.base import MetricSource
from runbookd.utils.helpers import LabelSet

logger = logging.getLogger(__name__)


class Observation(NamedTuple):
    """Breach signal for one tier; breach is None when data is unknown"""
    breach: Optional[bool]
    value: Optional[float] = None


UNKNOWN = Observation(None, None)


class RuleEngine:
    """Evaluates each severity tier of a rule independently"""

    def __init__(self, metric_source: MetricSource, metrics=None):
        """
        Initialize rule engine.

        Args:
            metric_source: Backend used to evaluate rule expressions
            metrics: Optional exporter for evaluation counters
        """
        self.metric_source = metric_source
        self.metrics = metrics

    def evaluate(self, rule: AlertRule, tick_time: datetime,
                 known_label_sets: Iterable[LabelSet] = ()) -> Dict[LabelSet, Dict[Severity, Optional[bool]]]:
        """
        Evaluate a rule and return ``{label_set: {severity: True | False | None}}``.

        ``None`` means the tier's data was unavailable for that label set.
        """
        detailed = self.evaluate_detailed(rule, tick_time, known_label_sets)
        return {
            labels: {severity: obs.breach for severity, obs in per_tier.items()}
            for labels, per_tier in detailed.items()
        }

    def evaluate_detailed(self, rule: AlertRule, tick_time: datetime,
                          known_label_sets: Iterable[LabelSet] = ()) -> Dict[LabelSet, Dict[Severity, Observation]]:
        """
        Evaluate every tier of a rule, most severe first.

        Args:
            rule: Rule to evaluate
            tick_time: Time of the current tick
            known_label_sets: Label sets with live alert instances; any that are
                missing from a tier's result are reported as unknown for it

        Returns:
            Observations per label set and severity
        """
        per_tier_values: Dict[Severity, Optional[Dict[LabelSet, float]]] = {}

        for tier in rule.tiers:
            try:
                per_tier_values[tier.severity] = self.metric_source.query(
                    rule.expression, tier.window_seconds, rule.group_by
                )
            except MetricUnavailable as e:
                logger.warning(f"Rule {rule.name} ({tier.severity.label}): {e}")
                per_tier_values[tier.severity] = None
                if self.metrics:
                    self.metrics.metric_unavailable.labels(rule=rule.name).inc()
            except Exception as e:
                logger.error(
                    f"Rule {rule.name} ({tier.severity.label}): metric query error: {e}",
                    exc_info=True
                )
                per_tier_values[tier.severity] = None
                if self.metrics:
                    self.metrics.metric_unavailable.labels(rule=rule.name).inc()

        label_sets = set(known_label_sets)
        for values in per_tier_values.values():
            if values:
                label_sets.update(values)

        results: Dict[LabelSet, Dict[Severity, Observation]] = {}
        for labels in label_sets:
            results[labels] = {}
            for tier in rule.tiers:
                values = per_tier_values[tier.severity]
                if values is None or labels not in values:
                    results[labels][tier.severity] = UNKNOWN
                    continue
                value = values[labels]
                breach = rule.compare(value, tier.threshold)
                results[labels][tier.severity] = Observation(breach, value)
                logger.debug(
                    f"Rule {rule.name} ({tier.severity.label}) {dict(labels)}: "
                    f"{value} {rule.operator} {tier.threshold} -> {breach}"
                )

        if self.metrics:
            self.metrics.rule_evaluations.labels(rule=rule.name).inc()

        return results
