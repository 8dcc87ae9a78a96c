"""
Notification channels.
"""

from runbookd.alerts.channels.base_channel import BaseChannel
from runbookd.alerts.channels.log_channel import LogChannel
from runbookd.alerts.channels.slack_channel import SlackChannel
from runbookd.alerts.channels.webhook_channel import WebhookChannel

__all__ = ['BaseChannel', 'LogChannel', 'SlackChannel', 'WebhookChannel']
