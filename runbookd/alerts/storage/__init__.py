"""
Storage backends for alert, action and escalation history.
"""

from runbookd.alerts.storage.base_storage import BaseStorage, AlertRecord, HistoryState

__all__ = ['BaseStorage', 'AlertRecord', 'HistoryState']
