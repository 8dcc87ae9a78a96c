"""
Action execution against shell and process backends.
"""

from runbookd.actions.executor import ActionExecutor, ActionOutcome, ActionResult

__all__ = ['ActionExecutor', 'ActionOutcome', 'ActionResult']
