"""
Custom webhook notification channel.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

import requests

from runbookd.alerts.channels.base_channel import BaseChannel

logger = logging.getLogger(__name__)


class WebhookChannel(BaseChannel):
    """Custom webhook notification channel"""

    name = 'webhook'

    def __init__(self, config: Dict):
        """
        Initialize webhook channel.

        Args:
            config: Webhook configuration dict with url, method, headers
        """
        self.url = config['url']
        self.method = config.get('method', 'POST').upper()
        self.headers = dict(config.get('headers', {}))
        self.timeout = config.get('timeout', 10)

        if 'Content-Type' not in self.headers:
            self.headers['Content-Type'] = 'application/json'

        logger.info(f"Webhook channel initialized (url: {self.url}, method: {self.method})")

    def send(self, alert_key, severity, message: Dict[str, str],
             links: Optional[Dict[str, str]] = None) -> bool:
        """Send webhook notification"""
        if self.method not in ('POST', 'PUT'):
            logger.error(f"Unsupported HTTP method: {self.method}")
            return False

        payload = self._create_webhook_payload(alert_key, severity, message, links or {})

        try:
            response = requests.request(
                self.method,
                self.url,
                json=payload,
                headers=self.headers,
                timeout=self.timeout
            )
            response.raise_for_status()

            logger.info(f"Webhook notification sent for alert: {alert_key}")
            return True

        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send webhook notification for alert {alert_key}: {e}")
            return False

    def _create_webhook_payload(self, alert_key, severity, message: Dict[str, str],
                                links: Dict[str, str]) -> Dict:
        """Create webhook payload"""
        return {
            "alert": {
                "rule": alert_key.rule,
                "severity": severity.label,
                "status": message.get('status', 'firing'),
                "timestamp": datetime.now().isoformat(),
            },
            "labels": dict(alert_key.labels),
            "annotations": {
                "summary": message['summary'],
                "description": message.get('description', ''),
            },
            "links": links,
        }
