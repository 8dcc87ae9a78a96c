"""Tests for metric sources"""

from collections import namedtuple
from unittest.mock import MagicMock, patch

import pytest
import requests
from prometheus_client import CollectorRegistry, Gauge

from runbookd.exceptions import MetricUnavailable
from runbookd.metrics import create_metric_source
from runbookd.metrics.base import project_labels
from runbookd.metrics.prometheus_source import PrometheusSource
from runbookd.metrics.registry_source import RegistrySource, parse_selector
from runbookd.metrics.system_source import SystemSource


class TestParseSelector:
    """Test metric selector parsing"""

    def test_plain_name(self):
        assert parse_selector("cpu_usage_percent") == ("cpu_usage_percent", {})

    def test_with_labels(self):
        assert parse_selector('disk_usage_percent{mount_point="/", device="sda1"}') == (
            "disk_usage_percent", {"mount_point": "/", "device": "sda1"}
        )

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_selector("rate(x[5m])")


class TestRegistrySource:
    """Test reading values from a CollectorRegistry"""

    @pytest.fixture
    def registry(self):
        registry = CollectorRegistry()
        gauge = Gauge('disk_usage_percent', 'Disk usage', ['mount_point'], registry=registry)
        gauge.labels(mount_point='/').set(91.0)
        gauge.labels(mount_point='/var').set(40.0)
        return registry

    def test_grouped_query(self, registry):
        values = RegistrySource(registry).query("disk_usage_percent", 60, ["mount_point"])

        assert values == {
            (("mount_point", "/"),): 91.0,
            (("mount_point", "/var"),): 40.0,
        }

    def test_ungrouped_query_takes_max(self, registry):
        assert RegistrySource(registry).query("disk_usage_percent", 60) == {(): 91.0}

    def test_selector_filters(self, registry):
        values = RegistrySource(registry).query('disk_usage_percent{mount_point="/var"}', 60)
        assert values == {(): 40.0}

    def test_missing_metric(self, registry):
        with pytest.raises(MetricUnavailable):
            RegistrySource(registry).query("nope", 60)


class TestPrometheusSource:
    """Test Prometheus HTTP API queries with a mocked session"""

    def source(self, payload=None, error=None):
        session = MagicMock(spec=requests.Session)
        if error is not None:
            session.get.side_effect = error
        else:
            session.get.return_value.json.return_value = payload
        return PrometheusSource({'url': 'http://prom:9090/', 'timeout': 5}, session=session), session

    def test_vector_result(self):
        source, session = self.source({
            'status': 'success',
            'data': {
                'resultType': 'vector',
                'result': [
                    {'metric': {'instance': 'a', 'job': 'node'}, 'value': [1, '91.5']},
                    {'metric': {'instance': 'b', 'job': 'node'}, 'value': [1, '12']},
                ],
            },
        })

        values = source.query('avg_over_time(cpu[{window}])', 300, ['instance'])

        assert values == {(("instance", "a"),): 91.5, (("instance", "b"),): 12.0}
        args, kwargs = session.get.call_args
        assert args[0] == 'http://prom:9090/api/v1/query'
        assert kwargs['params'] == {'query': 'avg_over_time(cpu[5m])'}
        assert kwargs['timeout'] == 5

    def test_scalar_result(self):
        source, _ = self.source({'status': 'success', 'data': {'resultType': 'scalar', 'result': [1, '3']}})
        assert source.query('scalar(x)', 60) == {(): 3.0}

    def test_empty_vector_unavailable(self):
        source, _ = self.source({'status': 'success', 'data': {'resultType': 'vector', 'result': []}})
        with pytest.raises(MetricUnavailable):
            source.query('x', 60)

    def test_timeout_unavailable(self):
        source, _ = self.source(error=requests.exceptions.Timeout())
        with pytest.raises(MetricUnavailable, match="timed out"):
            source.query('x', 60)

    def test_error_status_unavailable(self):
        source, _ = self.source({'status': 'error', 'error': 'bad query'})
        with pytest.raises(MetricUnavailable, match="bad query"):
            source.query('x', 60)


class TestSystemSource:
    """Test psutil-backed host metrics"""

    def test_cpu_usage(self):
        with patch('runbookd.metrics.system_source.psutil.cpu_percent', return_value=42.0):
            assert SystemSource().query('cpu_usage_percent', 60) == {(): 42.0}

    def test_disk_usage_grouped(self):
        Partition = namedtuple('Partition', 'device mountpoint fstype')
        Usage = namedtuple('Usage', 'percent')
        partitions = [Partition('/dev/sda1', '/', 'ext4'), Partition('/dev/sdb1', '/data', 'xfs')]
        usage = {'/': Usage(91.0), '/data': Usage(10.0)}

        with patch('runbookd.metrics.system_source.psutil.disk_partitions', return_value=partitions), \
                patch('runbookd.metrics.system_source.psutil.disk_usage', side_effect=lambda p: usage[p]):
            values = SystemSource().query('disk_usage_percent', 60, ['mount_point'])

        assert values == {(("mount_point", "/"),): 91.0, (("mount_point", "/data"),): 10.0}

    def test_unknown_expression(self):
        with pytest.raises(MetricUnavailable):
            SystemSource().query('gpu_temperature', 60)


class TestFactory:
    """Test metric source selection"""

    def test_project_labels(self):
        assert project_labels({'a': '1', 'b': '2'}, ['b']) == (("b", "2"),)
        assert project_labels({'a': '1'}, None) == ()

    def test_create(self):
        assert isinstance(create_metric_source({'type': 'system'}), SystemSource)
        assert isinstance(
            create_metric_source({'type': 'registry'}, registry=CollectorRegistry()), RegistrySource
        )
        with pytest.raises(ValueError):
            create_metric_source({'type': 'registry'})
