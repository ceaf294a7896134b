"""
Notification Services

Email/SMS transport interface and the content the lifecycle engine sends.
"""

from .gateway import (
    NotificationGateway,
    LoggingNotificationGateway,
    DeliveryResult,
    get_notification_gateway,
    set_notification_gateway,
)
from . import templates

__all__ = [
    'NotificationGateway',
    'LoggingNotificationGateway',
    'DeliveryResult',
    'get_notification_gateway',
    'set_notification_gateway',
    'templates',
]
