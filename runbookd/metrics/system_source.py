"""
Metric source reading host metrics directly with psutil.
"""

import logging
from typing import Dict, List, Optional

import psutil

from runbookd.exceptions import MetricUnavailable
from runbookd.metrics.base import MetricSource, project_labels
from runbookd.utils.helpers import LabelSet

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_FILESYSTEMS = ['tmpfs', 'devtmpfs', 'squashfs', 'overlay']


class SystemSource(MetricSource):
    """Local host metrics: cpu, memory, swap, disk and per-process CPU"""

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.exclude_filesystems = config.get('exclude_filesystems', DEFAULT_EXCLUDED_FILESYSTEMS)
        self.top_n = config.get('top_n', 20)

        self._readers = {
            'cpu_usage_percent': self._cpu_usage,
            'memory_usage_percent': self._memory_usage,
            'swap_usage_percent': self._swap_usage,
            'disk_usage_percent': self._disk_usage,
            'process_cpu_percent': self._process_cpu,
        }

    def query(self, expression: str, window: float,
              group_by: Optional[List[str]] = None) -> Dict[LabelSet, float]:
        reader = self._readers.get(expression.strip())
        if reader is None:
            raise MetricUnavailable(expression, "unknown system metric")

        try:
            samples = reader()
        except (psutil.Error, OSError) as e:
            raise MetricUnavailable(expression, str(e))

        values: Dict[LabelSet, float] = {}
        for labels, value in samples:
            key = project_labels(labels, group_by)
            values[key] = max(value, values[key]) if key in values else value

        if not values:
            raise MetricUnavailable(expression)
        return values

    def _cpu_usage(self):
        return [({}, psutil.cpu_percent(interval=0.1))]

    def _memory_usage(self):
        return [({}, psutil.virtual_memory().percent)]

    def _swap_usage(self):
        return [({}, psutil.swap_memory().percent)]

    def _disk_usage(self):
        samples = []
        for partition in psutil.disk_partitions(all=False):
            if partition.fstype in self.exclude_filesystems:
                continue
            try:
                usage = psutil.disk_usage(partition.mountpoint)
            except (PermissionError, OSError):
                continue
            samples.append(({'mount_point': partition.mountpoint, 'device': partition.device}, usage.percent))
        return samples

    def _process_cpu(self):
        processes = []
        for proc in psutil.process_iter(['pid', 'name', 'cpu_percent']):
            try:
                info = proc.info
                processes.append((
                    {'pid': str(info['pid']), 'name': (info['name'] or 'unknown')[:50]},
                    info['cpu_percent'] or 0.0,
                ))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        processes.sort(key=lambda p: p[1], reverse=True)
        return processes[:self.top_n]
