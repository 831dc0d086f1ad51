"""Tenant instance model with its credit balance."""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

# Sentinel for ``total_audits`` / ``total_tokens``: no ceiling.
UNLIMITED = -1


class BillingType(str, enum.Enum):
    PREPAID = "prepaid"
    POSTPAID = "postpaid"


class InstancePlan(str, enum.Enum):
    TRIAL = "trial"
    STANDARD = "standard"
    ENTERPRISE = "enterprise"


class InstanceStatus(str, enum.Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


def _enum_column(enum_cls, name: str):
    return Enum(
        enum_cls,
        name=name,
        create_constraint=False,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x],
    )


class Instance(Base):
    """A client instance (tenant).

    Owns the credit balance. Counters are only ever changed through atomic
    ``UPDATE ... SET col = col + n`` statements issued by the credit ledger.
    """

    __tablename__ = "instances"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[str] = mapped_column(
        String(100), unique=True, index=True, nullable=False
    )
    organization_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, index=True
    )

    plan: Mapped[InstancePlan] = mapped_column(
        _enum_column(InstancePlan, "instanceplan"),
        nullable=False,
        default=InstancePlan.TRIAL,
    )
    status: Mapped[InstanceStatus] = mapped_column(
        _enum_column(InstanceStatus, "instancestatus"),
        nullable=False,
        default=InstanceStatus.PROVISIONING,
    )

    # Credit balance
    billing_type: Mapped[BillingType] = mapped_column(
        _enum_column(BillingType, "billingtype"),
        nullable=False,
        default=BillingType.PREPAID,
    )
    total_audits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_audits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_api_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Percentage of remaining credit at or below which the tenant is "low"
    low_credit_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    low_credit_alert_sent: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    block_on_exhausted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    last_reset_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def audits_unlimited(self) -> bool:
        return self.total_audits == UNLIMITED

    @property
    def remaining_audits(self) -> Optional[int]:
        """Remaining audit credits, ``None`` when unlimited."""
        if self.audits_unlimited:
            return None
        return max(0, self.total_audits - self.used_audits)

    def __repr__(self) -> str:
        return (
            f"<Instance(client_id='{self.client_id}', "
            f"audits={self.used_audits}/{self.total_audits})>"
        )
