"""
SQLAlchemy ORM models for database entities.
"""

from portal.models.checkout import CheckoutSession, PaymentEvent
from portal.models.lead import Lead
from portal.models.lock import ApplicationLock
from portal.models.purchase import DealerPurchase
from portal.models.settings import LockoutPeriod, SystemSettings

__all__ = [
    "ApplicationLock",
    "CheckoutSession",
    "DealerPurchase",
    "Lead",
    "LockoutPeriod",
    "PaymentEvent",
    "SystemSettings",
]
