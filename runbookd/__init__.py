"""
Alert rule evaluation and runbook orchestration engine.
"""

__version__ = '1.0.0'
