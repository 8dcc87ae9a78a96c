"""
Metric source interface.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from runbookd.utils.helpers import LabelSet


class MetricSource(ABC):
    """Abstract boundary to a metrics backend"""

    @abstractmethod
    def query(self, expression: str, window: float,
              group_by: Optional[List[str]] = None) -> Dict[LabelSet, float]:
        """
        Evaluate an expression over a time window.

        Args:
            expression: Opaque query string understood by the backend
            window: Evaluation window in seconds
            group_by: Label names to group results by (empty for a scalar)

        Returns:
            Mapping of label set to value. A scalar result is keyed by ``()``.

        Raises:
            MetricUnavailable: If the query failed, timed out or returned no data
        """
        pass

    def close(self) -> None:
        """Release backend resources"""
        pass


def project_labels(labels: Dict[str, str], group_by: Optional[List[str]]) -> LabelSet:
    """Keep only the group-by labels of a sample, in canonical order"""
    if not group_by:
        return ()
    return tuple(sorted((k, str(labels.get(k, ''))) for k in group_by))
