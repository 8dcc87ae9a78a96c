"""Self-metrics exporters"""

from runbookd.exporters.prometheus_exporter import PrometheusExporter

__all__ = ['PrometheusExporter']
