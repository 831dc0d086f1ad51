"""Credit transaction log."""

import enum
import uuid
from typing import Optional

from sqlalchemy import Enum, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class TransactionType(str, enum.Enum):
    ADD = "add"
    USE = "use"
    ADJUST = "adjust"
    RESET = "reset"


class CreditType(str, enum.Enum):
    AUDIT = "audit"
    TOKEN = "token"


class CreditTransaction(Base):
    """Append-only record of every credit movement for an instance.

    ``amount`` is positive for additions and negative for usage.
    ``idempotency_key`` is unique per instance: a consumption retried with the
    same key is recognised and never counted twice.
    """

    __tablename__ = "credit_transactions"

    instance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("instances.id", ondelete="CASCADE"),
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(
            TransactionType,
            name="credittransactiontype",
            create_constraint=False,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    credit_type: Mapped[CreditType] = mapped_column(
        Enum(
            CreditType,
            name="credittype",
            create_constraint=False,
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    # Remaining balance after this movement; -1 when the allocation is unlimited
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Tokens billed alongside an audit consumption
    tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("instance_id", "idempotency_key", name="uq_credit_txn_idempotency"),
        Index("ix_credit_txn_instance_created", "instance_id", "created_at"),
        Index("ix_credit_txn_instance_type", "instance_id", "credit_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(instance={self.instance_id}, type='{self.type.value}', "
            f"credit_type='{self.credit_type.value}', amount={self.amount})>"
        )
