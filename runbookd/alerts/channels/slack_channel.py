"""
Slack notification channel using webhooks.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

import requests

from runbookd.alerts.channels.base_channel import BaseChannel, SEVERITY_COLORS

logger = logging.getLogger(__name__)


class SlackChannel(BaseChannel):
    """Slack notification channel via webhooks"""

    name = 'slack'

    def __init__(self, config: Dict):
        """
        Initialize Slack channel.

        Args:
            config: Slack configuration dict with webhook_url
        """
        self.webhook_url = config['webhook_url']
        self.channel = config.get('channel', '#alerts')
        self.username = config.get('username', 'runbookd')
        self.icon_emoji = config.get('icon_emoji', ':rotating_light:')
        self.timeout = config.get('timeout', 10)

        logger.info(f"Slack channel initialized (channel: {self.channel})")

    def send(self, alert_key, severity, message: Dict[str, str],
             links: Optional[Dict[str, str]] = None) -> bool:
        """Send Slack notification"""
        try:
            payload = self._create_slack_payload(alert_key, severity, message, links or {})

            response = requests.post(
                self.webhook_url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout
            )
            response.raise_for_status()

            logger.info(f"Slack notification sent for alert: {alert_key}")
            return True

        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send Slack notification for alert {alert_key}: {e}")
            return False

    def _create_slack_payload(self, alert_key, severity, message: Dict[str, str],
                              links: Dict[str, str]) -> Dict:
        """Create Slack webhook payload"""
        status = message.get('status', 'firing')
        color = '#2eb886' if status == 'resolved' else SEVERITY_COLORS.get(severity.label, '#666666')

        labels_text = ""
        if alert_key.labels:
            labels_text = "\n" + "\n".join(f"• *{k}:* {v}" for k, v in alert_key.labels)

        fields = [
            {
                "title": "Severity",
                "value": severity.label.upper(),
                "short": True
            },
            {
                "title": "Status",
                "value": status.upper(),
                "short": True
            },
        ]
        if message.get('value'):
            fields.append({"title": "Current Value", "value": message['value'], "short": True})
        for name, url in links.items():
            fields.append({"title": name.replace('_', ' ').title(), "value": f"<{url}|open>", "short": True})

        attachment = {
            "color": color,
            "title": message['summary'],
            "text": message.get('description', '') + labels_text,
            "fields": fields,
            "footer": "runbookd",
            "ts": int(datetime.now().timestamp()),
        }

        # Mention the channel for critical alerts that are not resolutions
        text = ""
        if severity.is_critical_class and status != 'resolved':
            text = "<!channel> Critical Alert"

        payload = {
            "channel": self.channel,
            "username": self.username,
            "icon_emoji": self.icon_emoji,
            "text": text,
            "attachments": [attachment]
        }

        return payload
