"""
Alert evaluation: rules, per-key state machines and deduplication.
"""

from runbookd.alerts.alert_rule import AlertKey, AlertRule, Severity, SeverityTier, load_alert_rules
from runbookd.alerts.deduplicator import AlertEvent, Deduplicator, EventType
from runbookd.alerts.rule_engine import RuleEngine
from runbookd.alerts.state_machine import AlertInstance, AlertState, AlertStateMachine, AlertStore

__all__ = [
    'AlertKey',
    'AlertRule',
    'Severity',
    'SeverityTier',
    'load_alert_rules',
    'AlertEvent',
    'Deduplicator',
    'EventType',
    'RuleEngine',
    'AlertInstance',
    'AlertState',
    'AlertStateMachine',
    'AlertStore',
]
