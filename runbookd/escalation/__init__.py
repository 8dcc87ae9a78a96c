"""
Escalation ladder for unresolved alerts.
"""

from runbookd.escalation.manager import ContactTier, EscalationManager, EscalationTicket

__all__ = ['ContactTier', 'EscalationManager', 'EscalationTicket']
