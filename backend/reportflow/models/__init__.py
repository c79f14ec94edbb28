from .users import User
from .reports import ServiceReport
from .audit import AuditEntry, AuditImmutableError
from .notifications import Notification, NotificationRetry

__all__ = [
    'User',
    'ServiceReport',
    'AuditEntry', 'AuditImmutableError',
    'Notification', 'NotificationRetry',
]
