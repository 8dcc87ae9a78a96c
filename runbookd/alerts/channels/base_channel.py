"""
Base notification channel interface.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
import logging

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    'info': '#0066cc',
    'warning': '#ff9900',
    'critical': '#cc0000',
}


class BaseChannel(ABC):
    """Abstract base class for notification channels"""

    name = 'base'

    @abstractmethod
    def send(self, alert_key, severity, message: Dict[str, str],
             links: Optional[Dict[str, str]] = None) -> bool:
        """
        Deliver a notification.

        Args:
            alert_key: AlertKey the notification is about
            severity: Severity of the surfaced track
            message: Dict with 'status', 'summary' and 'description' keys
            links: Named URLs (runbook, dashboard)

        Returns:
            True if delivered, False otherwise
        """
        pass


def substitute_template(template: str, value: Optional[float],
                        threshold: Optional[float], labels: Dict[str, str]) -> str:
    """
    Substitute template variables.

    Supports:
        {{ value }} - Current metric value
        {{ threshold }} - Alert threshold
        {{ labels.key }} - Label values
    """
    result = template
    if value is not None:
        result = result.replace('{{ value }}', f'{value:.2f}')
    if threshold is not None:
        result = result.replace('{{ threshold }}', f'{threshold:.2f}')

    for key, val in labels.items():
        result = result.replace(f'{{{{ labels.{key} }}}}', str(val))

    return result
