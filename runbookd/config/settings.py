"""Configuration management"""

import os
import warnings
import yaml
from pathlib import Path
from typing import Dict, Any

from runbookd.exceptions import ConfigurationError
from runbookd.utils.helpers import parse_duration


def get_default_config() -> Dict[str, Any]:
    """Get default configuration"""
    return {
        'engine': {
            'hostname': 'auto',
            'log_level': 'INFO',
            'log_file': None,
            'log_format': 'text',
            'evaluation_interval': 30,
            'workers': 4,
            'grace_window': 300,
            'rules_file': None,
            'runbooks_file': None,
        },
        'prometheus': {
            'enabled': True,
            'port': 9464,
            'host': '0.0.0.0',
        },
        'metric_source': {
            'type': 'system',  # system, prometheus, or registry
            'url': 'http://localhost:9090',
            'timeout': 10,
        },
        'actions': {
            'max_retries': 3,
            'backoff_base': 1.0,
            'backoff_max': 60.0,
            'timeout': 30,
            'workers': 8,
            'output_limit': 4096,
        },
        'escalation': {
            'enabled': True,
            'check_interval': 10,
            'critical_window': 300,
            'warning_window': 1800,
            'backoff_factor': 2.0,
            'contact_tiers': [
                {'name': 'on-call', 'channels': ['slack', 'log']},
            ],
        },
        'notifications': {
            'primary': 'slack',
            'fallback': 'log',
            'send_resolved': True,
            'channels': {
                'slack': {
                    'enabled': False,
                    'webhook_url': '',
                    'channel': '#alerts',
                    'username': 'runbookd',
                    'icon_emoji': ':rotating_light:',
                    'timeout': 10,
                },
                'webhook': {
                    'enabled': False,
                    'url': '',
                    'method': 'POST',
                    'headers': {},
                    'timeout': 10,
                },
                'log': {
                    'enabled': True,
                },
            },
        },
        'storage': {
            'type': 'sqlite',
            'sqlite_path': './data/runbookd.db',
            'retention_days': 30,
        },
        'resource_limits': {
            'max_cpu_percent': 5.0,
            'max_memory_mb': 200,
            'check_interval': 60,
        },
    }


def load_config(config_path: str = None) -> Dict[str, Any]:
    """
    Load configuration from file and environment variables

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary

    Raises:
        ConfigurationError: If the file cannot be parsed or values are invalid
    """
    config = get_default_config()

    if config_path:
        if not Path(config_path).exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                yaml_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e
        if yaml_config:
            if not isinstance(yaml_config, dict):
                raise ConfigurationError(f"Config file {config_path} must contain a mapping")
            config = merge_configs(config, yaml_config)

    config = override_from_env(config)

    validate_config(config)

    return config


def merge_configs(base: Dict, override: Dict) -> Dict:
    """Recursively merge two configuration dictionaries"""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value
    return result


def override_from_env(config: Dict) -> Dict:
    """Override configuration from environment variables"""

    # Engine settings
    if 'RUNBOOKD_HOSTNAME' in os.environ:
        config['engine']['hostname'] = os.environ['RUNBOOKD_HOSTNAME']
    if 'LOG_LEVEL' in os.environ:
        config['engine']['log_level'] = os.environ['LOG_LEVEL'].upper()
    if 'LOG_FILE' in os.environ:
        config['engine']['log_file'] = os.environ['LOG_FILE']
    if 'LOG_FORMAT' in os.environ:
        config['engine']['log_format'] = os.environ['LOG_FORMAT'].lower()
    if 'RUNBOOKD_EVALUATION_INTERVAL' in os.environ:
        config['engine']['evaluation_interval'] = os.environ['RUNBOOKD_EVALUATION_INTERVAL']
    if 'RUNBOOKD_RULES_FILE' in os.environ:
        config['engine']['rules_file'] = os.environ['RUNBOOKD_RULES_FILE']
    if 'RUNBOOKD_RUNBOOKS_FILE' in os.environ:
        config['engine']['runbooks_file'] = os.environ['RUNBOOKD_RUNBOOKS_FILE']

    # Prometheus settings
    if 'PROMETHEUS_PORT' in os.environ:
        try:
            config['prometheus']['port'] = int(os.environ['PROMETHEUS_PORT'])
        except ValueError:
            raise ConfigurationError(f"Invalid PROMETHEUS_PORT: {os.environ['PROMETHEUS_PORT']}")
    if 'PROMETHEUS_HOST' in os.environ:
        config['prometheus']['host'] = os.environ['PROMETHEUS_HOST']

    # Metric source
    if 'METRIC_SOURCE_URL' in os.environ:
        config['metric_source']['url'] = os.environ['METRIC_SOURCE_URL']

    return config


def _duration(section: Dict, key: str, name: str, allow_zero: bool = False) -> float:
    """Normalize a duration setting in place and return it"""
    try:
        seconds = parse_duration(section.get(key))
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name}: {e}")
    if seconds is None or seconds < 0 or (seconds == 0 and not allow_zero):
        raise ConfigurationError(f"Invalid {name}: {section.get(key)}. Must be > 0")
    section[key] = seconds
    return seconds


def validate_config(config: Dict):
    """
    Validate configuration values

    Raises:
        ConfigurationError: If configuration is invalid
    """
    engine = config['engine']

    valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    log_level = str(engine['log_level']).upper()
    if log_level not in valid_log_levels:
        raise ConfigurationError(f"Invalid log level: {log_level}. Must be one of {valid_log_levels}")

    if engine.get('log_format', 'text') not in ('text', 'json'):
        raise ConfigurationError(f"Invalid log_format: {engine['log_format']}. Must be 'text' or 'json'")

    interval = _duration(engine, 'evaluation_interval', 'evaluation_interval')
    if interval < 1:
        warnings.warn(f"Evaluation interval is very aggressive: {interval}s")

    _duration(engine, 'grace_window', 'grace_window', allow_zero=True)

    if int(engine.get('workers', 0)) < 1:
        raise ConfigurationError(f"Invalid engine workers: {engine.get('workers')}. Must be >= 1")

    # Prometheus exporter
    port = config['prometheus']['port']
    if not (1 <= port <= 65535):
        raise ConfigurationError(f"Invalid Prometheus port: {port}. Must be between 1 and 65535")

    # Metric source
    source = config['metric_source']
    valid_sources = ['system', 'prometheus', 'registry']
    if source.get('type') not in valid_sources:
        raise ConfigurationError(f"Invalid metric_source type: {source.get('type')}. Must be one of {valid_sources}")
    if source['type'] == 'prometheus' and not source.get('url'):
        raise ConfigurationError("Prometheus metric source selected but url not set")
    _duration(source, 'timeout', 'metric_source timeout')

    # Action executor
    actions = config['actions']
    if int(actions.get('max_retries', 0)) < 0:
        raise ConfigurationError(f"Invalid max_retries: {actions['max_retries']}. Must be >= 0")
    if int(actions.get('workers', 0)) < 1:
        raise ConfigurationError(f"Invalid action workers: {actions.get('workers')}. Must be >= 1")
    _duration(actions, 'timeout', 'action timeout')
    _duration(actions, 'backoff_base', 'backoff_base', allow_zero=True)
    _duration(actions, 'backoff_max', 'backoff_max', allow_zero=True)

    # Escalation
    escalation = config['escalation']
    if escalation.get('enabled', True):
        _duration(escalation, 'check_interval', 'escalation check_interval')
        critical_window = _duration(escalation, 'critical_window', 'critical_window', allow_zero=True)
        warning_window = _duration(escalation, 'warning_window', 'warning_window', allow_zero=True)
        if warning_window < critical_window:
            warnings.warn("Warning escalation window is shorter than the critical window")
        if float(escalation.get('backoff_factor', 1.0)) < 1.0:
            raise ConfigurationError(f"Invalid backoff_factor: {escalation['backoff_factor']}. Must be >= 1")
        tiers = escalation.get('contact_tiers') or []
        if not tiers:
            raise ConfigurationError("Escalation enabled but no contact_tiers configured")
        for tier in tiers:
            if not isinstance(tier, dict) or not tier.get('name') or not tier.get('channels'):
                raise ConfigurationError(f"Invalid contact tier: {tier}. Needs name and channels")

    # Notifications
    notifications = config['notifications']
    channels = notifications['channels']
    enabled = [name for name, ch in channels.items() if ch.get('enabled', False)]
    if not enabled:
        warnings.warn("No notification channels enabled")

    for role in ('primary', 'fallback'):
        name = notifications.get(role)
        if name and name not in channels:
            raise ConfigurationError(f"Unknown {role} notification channel: {name}")

    if channels.get('slack', {}).get('enabled'):
        if not channels['slack'].get('webhook_url'):
            raise ConfigurationError("Slack channel enabled but webhook_url not set")

    if channels.get('webhook', {}).get('enabled'):
        if not channels['webhook'].get('url'):
            raise ConfigurationError("Webhook channel enabled but url not set")
        if channels['webhook'].get('method', 'POST').upper() not in ('POST', 'PUT'):
            raise ConfigurationError(f"Unsupported webhook method: {channels['webhook']['method']}")

    # Storage
    storage_type = config['storage'].get('type', 'sqlite')
    if storage_type != 'sqlite':
        raise ConfigurationError(f"Unsupported storage type: {storage_type}. Only 'sqlite' is currently supported")

    retention_days = config['storage'].get('retention_days', 30)
    if retention_days < 1:
        raise ConfigurationError(f"Invalid retention_days: {retention_days}. Must be >= 1")

    # Self-monitoring limits
    limits = config['resource_limits']
    if limits['max_cpu_percent'] <= 0:
        raise ConfigurationError(f"Invalid max_cpu_percent: {limits['max_cpu_percent']}. Must be > 0")
    if limits['max_memory_mb'] <= 0:
        raise ConfigurationError(f"Invalid max_memory_mb: {limits['max_memory_mb']}. Must be > 0")
