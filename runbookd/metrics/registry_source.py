"""
Metric source reading current values from a Prometheus client registry.
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from prometheus_client import CollectorRegistry

from runbookd.exceptions import MetricUnavailable
from runbookd.metrics.base import MetricSource, project_labels
from runbookd.utils.helpers import LabelSet

logger = logging.getLogger(__name__)

_SELECTOR_RE = re.compile(r'^\s*([a-zA-Z_:][a-zA-Z0-9_:]*)\s*(?:\{(.*)\})?\s*$')
_MATCHER_RE = re.compile(r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"([^"]*)"\s*')


def parse_selector(expression: str) -> Tuple[str, Dict[str, str]]:
    """
    Parse ``metric_name{label="value",...}`` into name and label selector.

    Example:
        >>> parse_selector('disk_usage_percent{mount_point="/"}')
        ('disk_usage_percent', {'mount_point': '/'})
    """
    match = _SELECTOR_RE.match(expression)
    if not match:
        raise ValueError(f"Invalid metric selector: {expression}")

    name, body = match.group(1), match.group(2)
    selector = {}
    if body:
        for part in body.split(','):
            if not part.strip():
                continue
            matcher = _MATCHER_RE.fullmatch(part)
            if not matcher:
                raise ValueError(f"Invalid label matcher '{part}' in {expression}")
            selector[matcher.group(1)] = matcher.group(2)
    return name, selector


class RegistrySource(MetricSource):
    """Reads current metric values from a CollectorRegistry"""

    def __init__(self, registry: CollectorRegistry):
        """
        Initialize registry source.

        Args:
            registry: Prometheus CollectorRegistry instance
        """
        self.registry = registry

    def query(self, expression: str, window: float,
              group_by: Optional[List[str]] = None) -> Dict[LabelSet, float]:
        """Instant read; the window is ignored for in-process gauges"""
        try:
            metric_name, label_selector = parse_selector(expression)
        except ValueError as e:
            raise MetricUnavailable(expression, str(e))

        samples = self.get_metric_value(metric_name, label_selector)
        if not samples:
            raise MetricUnavailable(expression)

        results: Dict[LabelSet, float] = {}
        for value, labels in samples:
            key = project_labels(labels, group_by)
            # Several samples collapsing into one group keep the worst (max) value
            results[key] = max(value, results[key]) if key in results else value
        return results

    def get_metric_value(self, metric_name: str,
                         label_selector: Optional[Dict[str, str]] = None) -> List[Tuple[float, Dict[str, str]]]:
        """
        Get current values for a metric with optional label filtering.

        Args:
            metric_name: Name of the metric to read
            label_selector: Dict of label key-value pairs to filter by

        Returns:
            List of (value, labels) tuples for matching metric samples
        """
        results = []

        for metric_family in self.registry.collect():
            if metric_family.name != metric_name:
                continue

            for sample in metric_family.samples:
                # Skip _created and similar auxiliary series
                if sample.name != metric_name and not sample.name.startswith(f"{metric_name}_total"):
                    continue
                if label_selector and not self._match_labels(sample.labels, label_selector):
                    continue
                results.append((sample.value, dict(sample.labels)))
            break

        if not results:
            logger.debug(f"No values found for metric {metric_name} with selector {label_selector}")

        return results

    def _match_labels(self, sample_labels: Dict[str, str],
                      selector: Dict[str, str]) -> bool:
        """Check if all selector labels match sample labels"""
        for key, value in selector.items():
            if sample_labels.get(key) != value:
                return False
        return True
