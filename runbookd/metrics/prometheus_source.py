"""
Metric source backed by the Prometheus HTTP query API.
"""

import logging
import math
from typing import Dict, List, Optional

import requests

from runbookd.exceptions import MetricUnavailable
from runbookd.metrics.base import MetricSource, project_labels
from runbookd.utils.helpers import LabelSet, format_duration

logger = logging.getLogger(__name__)


class PrometheusSource(MetricSource):
    """
    Instant queries against ``/api/v1/query``.

    The expression is opaque; the only interpretation applied is substitution
    of ``{window}`` with the tier's evaluation window (e.g. ``5m``), so a rule
    can be written as ``avg_over_time(cpu_usage_percent[{window}])``.
    """

    def __init__(self, config: Dict, session: Optional[requests.Session] = None):
        self.url = config['url'].rstrip('/')
        self.timeout = config.get('timeout', 10)
        self.session = session or requests.Session()

        logger.info(f"Prometheus metric source initialized (url: {self.url})")

    def query(self, expression: str, window: float,
              group_by: Optional[List[str]] = None) -> Dict[LabelSet, float]:
        promql = expression.replace('{window}', format_duration(window))

        try:
            response = self.session.get(
                f"{self.url}/api/v1/query",
                params={'query': promql},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.Timeout:
            raise MetricUnavailable(expression, f"timed out after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            raise MetricUnavailable(expression, str(e))
        except ValueError as e:
            raise MetricUnavailable(expression, f"invalid JSON response: {e}")

        if payload.get('status') != 'success':
            raise MetricUnavailable(expression, payload.get('error', 'query failed'))

        return self._parse_result(expression, payload.get('data', {}), group_by)

    def _parse_result(self, expression: str, data: Dict,
                      group_by: Optional[List[str]]) -> Dict[LabelSet, float]:
        result_type = data.get('resultType')
        result = data.get('result')

        if result_type == 'scalar':
            samples = [({}, result[1])]
        elif result_type == 'vector':
            samples = [(item.get('metric', {}), item['value'][1]) for item in result or []]
        else:
            raise MetricUnavailable(expression, f"unsupported result type: {result_type}")

        values: Dict[LabelSet, float] = {}
        for labels, raw in samples:
            value = float(raw)
            if math.isnan(value):
                continue
            key = project_labels(labels, group_by)
            values[key] = max(value, values[key]) if key in values else value

        if not values:
            raise MetricUnavailable(expression)
        return values

    def close(self) -> None:
        self.session.close()
