"""Database models for the QA access core."""

from .base import Base
from .instance import Instance, InstancePlan, InstanceStatus, BillingType, UNLIMITED
from .credit_transaction import CreditTransaction, CreditType, TransactionType

__all__ = [
    "Base",
    "Instance",
    "InstancePlan",
    "InstanceStatus",
    "BillingType",
    "UNLIMITED",
    "CreditTransaction",
    "CreditType",
    "TransactionType",
]
