"""
SQLAlchemy Models for CryptoAlert

Usage:
    from cryptoalert.models import User, Alert, Notification
    # または
    from cryptoalert.models import Base
"""

from .base import Base
from .user import User
from .alert import Alert
from .notification_history import Notification

__all__ = [
    "Base",
    "User",
    "Alert",
    "Notification",
]
