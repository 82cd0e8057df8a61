"""Data Access Objects package"""

from billing_engine.dao.base import BaseDAO
from billing_engine.dao.invoice import InvoiceDAO
from billing_engine.dao.subscription import SubscriptionDAO
from billing_engine.dao.billing_schedule import BillingScheduleDAO
from billing_engine.dao.dunning_event import DunningEventDAO

__all__ = [
    "BaseDAO",
    "InvoiceDAO",
    "SubscriptionDAO",
    "BillingScheduleDAO",
    "DunningEventDAO",
]
