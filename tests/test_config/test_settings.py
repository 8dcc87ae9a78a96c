"""Tests for configuration loading"""

import os
import tempfile
from unittest.mock import patch

import pytest

from runbookd.config.settings import get_default_config, load_config, merge_configs
from runbookd.exceptions import ConfigurationError


def write_config(content):
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        f.write(content)
        return f.name


class TestLoadConfig:
    """Test defaults, file merge, env overrides and validation"""

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = load_config()

        assert config['engine']['evaluation_interval'] == 30
        assert config['escalation']['critical_window'] == 300
        assert config['escalation']['warning_window'] == 1800
        assert config['actions']['max_retries'] == 3

    def test_file_merges_over_defaults(self):
        path = write_config("""
engine:
  evaluation_interval: 15s
  grace_window: 10m
escalation:
  critical_window: 2m
""")
        try:
            with patch.dict(os.environ, {}, clear=True):
                config = load_config(path)
        finally:
            os.unlink(path)

        assert config['engine']['evaluation_interval'] == 15
        assert config['engine']['grace_window'] == 600
        assert config['escalation']['critical_window'] == 120
        # Untouched defaults survive the merge
        assert config['escalation']['backoff_factor'] == 2.0

    def test_env_overrides(self):
        env = {
            'LOG_LEVEL': 'debug',
            'PROMETHEUS_PORT': '9999',
            'RUNBOOKD_EVALUATION_INTERVAL': '1m',
            'METRIC_SOURCE_URL': 'http://prom:9090',
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config()

        assert config['engine']['log_level'] == 'DEBUG'
        assert config['prometheus']['port'] == 9999
        assert config['engine']['evaluation_interval'] == 60
        assert config['metric_source']['url'] == 'http://prom:9090'

    def test_invalid_env_port(self):
        with patch.dict(os.environ, {'PROMETHEUS_PORT': 'abc'}, clear=True):
            with pytest.raises(ConfigurationError, match="PROMETHEUS_PORT"):
                load_config()

    def test_missing_file(self):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config("/nonexistent/runbookd.yaml")

    def test_invalid_values(self):
        cases = [
            ("engine:\n  log_level: LOUD\n", "log level"),
            ("prometheus:\n  port: 70000\n", "Prometheus port"),
            ("metric_source:\n  type: graphite\n", "metric_source type"),
            ("actions:\n  max_retries: -1\n", "max_retries"),
            ("escalation:\n  backoff_factor: 0.5\n", "backoff_factor"),
            ("escalation:\n  contact_tiers: []\n", "contact_tiers"),
            ("notifications:\n  primary: pager\n", "primary notification channel"),
            ("engine:\n  evaluation_interval: soon\n", "evaluation_interval"),
        ]
        for content, message in cases:
            path = write_config(content)
            try:
                with patch.dict(os.environ, {}, clear=True):
                    with pytest.raises(ConfigurationError, match=message):
                        load_config(path)
            finally:
                os.unlink(path)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            load_config("/nonexistent/runbookd.yaml")


class TestMergeConfigs:
    """Test recursive merging"""

    def test_nested_merge(self):
        base = get_default_config()
        merged = merge_configs(base, {'notifications': {'channels': {'log': {'enabled': False}}}})

        assert merged['notifications']['channels']['log']['enabled'] is False
        assert merged['notifications']['primary'] == 'slack'
        assert base['notifications']['channels']['log']['enabled'] is True
