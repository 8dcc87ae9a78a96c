"""
Runbooks: action templates, per-rule runbook entries and dispatch.
"""

from runbookd.runbooks.runbook import RunbookEntry, RunbookRegistry, load_runbooks
from runbookd.runbooks.templates import ActionTemplate, BoundAction

__all__ = ['RunbookEntry', 'RunbookRegistry', 'load_runbooks', 'ActionTemplate', 'BoundAction']
