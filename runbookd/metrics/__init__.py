"""
Metric sources: the boundary to the metrics backend.
"""

from runbookd.metrics.base import MetricSource
from runbookd.metrics.prometheus_source import PrometheusSource
from runbookd.metrics.registry_source import RegistrySource
from runbookd.metrics.system_source import SystemSource

__all__ = ['MetricSource', 'PrometheusSource', 'RegistrySource', 'SystemSource', 'create_metric_source']


def create_metric_source(config, registry=None) -> MetricSource:
    """Build the configured metric source"""
    source_type = config.get('type', 'system')
    if source_type == 'prometheus':
        return PrometheusSource(config)
    if source_type == 'registry':
        if registry is None:
            raise ValueError("Registry metric source requires a CollectorRegistry")
        return RegistrySource(registry)
    return SystemSource(config)
