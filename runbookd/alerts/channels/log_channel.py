"""
Notification channel that writes to the engine log.
"""

import logging
from typing import Dict, Optional

from runbookd.alerts.channels.base_channel import BaseChannel

logger = logging.getLogger(__name__)


class LogChannel(BaseChannel):
    """Last-resort channel: never fails unless logging itself does"""

    name = 'log'

    def __init__(self, config: Optional[Dict] = None):
        self.config = config or {}

    def send(self, alert_key, severity, message: Dict[str, str],
             links: Optional[Dict[str, str]] = None) -> bool:
        level = logging.WARNING if severity.is_critical_class else logging.INFO
        link_text = " ".join(f"{name}={url}" for name, url in (links or {}).items())
        logger.log(
            level,
            f"[{message.get('status', 'firing').upper()}] {alert_key}: {message['summary']}"
            f"{' - ' + message['description'] if message.get('description') else ''}"
            f"{' ' + link_text if link_text else ''}"
        )
        return True
