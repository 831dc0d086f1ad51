"""Per-instance credit ledger.

Counters live on the ``instances`` row and are only changed through single
atomic SQL statements, never read-modify-write in Python:

- ``consume_audit_credit`` inserts its ``use`` transaction row and then
  issues one conditional ``UPDATE ... SET used_audits = used_audits + 1``
  guarded by the audit and token ceilings, inside one database transaction. The
  conditional update serializes concurrent consumers on the row, so the
  ceiling cannot be overshot. The per-instance unique ``idempotency_key`` on
  the transaction row makes a retried logical call count once.
- ``record_api_call`` is best-effort and batched (see ``usage.py``).

Credit exhaustion is a recoverable, reported condition (``InsufficientCredit``,
HTTP 402). Storage failures on billing counters surface as
``LedgerWriteFailure``; they are never swallowed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..config import get_settings
from ..errors import (
    DuplicateInstance,
    InsufficientCredit,
    LedgerWriteFailure,
    TenantNotFound,
)
from ..models.credit_transaction import CreditTransaction, CreditType, TransactionType
from ..models.instance import (
    UNLIMITED,
    BillingType,
    Instance,
    InstancePlan,
    InstanceStatus,
)
from ..observability.metrics import (
    record_audit_credit_consumed,
    record_credit_denial,
    record_ledger_write_failure,
)
from .usage import ApiCallCounter, usage_counter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CreditBalance:
    """Snapshot of an instance's credit counters."""
    instance_id: str
    billing_type: str
    total_audits: int
    used_audits: int
    total_tokens: int
    used_tokens: int
    total_api_calls: int
    low_credit_threshold: int

    @property
    def audits_unlimited(self) -> bool:
        return self.total_audits == UNLIMITED

    @property
    def remaining_audits(self) -> Optional[int]:
        if self.audits_unlimited:
            return None
        return max(0, self.total_audits - self.used_audits)


@dataclass(frozen=True)
class CreditCheck:
    allowed: bool
    used: int
    total: int
    remaining: Optional[int]

    @property
    def unlimited(self) -> bool:
        return self.total == UNLIMITED


@dataclass(frozen=True)
class ConsumeResult:
    instance_id: str
    transaction_id: str
    used_audits: int
    used_tokens: int
    total_audits: int
    remaining: Optional[int]
    low_balance: bool
    duplicate: bool = False


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def is_low_balance(used: int, total: int, threshold_percent: int) -> bool:
    """True when ``used / total >= 1 - threshold``.

    Integer arithmetic; unlimited and empty allocations are never low.
    """
    if total == UNLIMITED or total <= 0:
        return False
    return used * 100 >= total * (100 - threshold_percent)


def has_audit_credit(used: int, total: int, block_on_exhausted: bool = True) -> bool:
    if total == UNLIMITED or not block_on_exhausted:
        return True
    return used < total


def has_token_credit(
    used: int, total: int, tokens: int, block_on_exhausted: bool = True
) -> bool:
    """True when *tokens* more fit under the token allocation."""
    if total == UNLIMITED or not block_on_exhausted:
        return True
    return used + tokens <= total


def _parse_instance_id(tenant_id: Any) -> uuid.UUID:
    if isinstance(tenant_id, uuid.UUID):
        return tenant_id
    try:
        return uuid.UUID(str(tenant_id))
    except ValueError:
        raise TenantNotFound(str(tenant_id)) from None


def _balance_of(instance: Instance) -> CreditBalance:
    return CreditBalance(
        instance_id=str(instance.id),
        billing_type=instance.billing_type.value,
        total_audits=instance.total_audits,
        used_audits=instance.used_audits,
        total_tokens=instance.total_tokens,
        used_tokens=instance.used_tokens,
        total_api_calls=instance.total_api_calls,
        low_credit_threshold=instance.low_credit_threshold,
    )


def _remaining(total: int, used: int) -> int:
    """Remaining balance for the transaction log (UNLIMITED passes through)."""
    if total == UNLIMITED:
        return UNLIMITED
    return max(0, total - used)


def _percentage(remaining: int, total: int) -> int:
    if total == UNLIMITED:
        return 100
    if total <= 0:
        return 0
    return round(remaining / total * 100)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class CreditLedger:
    """Credit accounting for tenant instances.

    Each operation runs in its own session from *session_factory* (an async
    context manager factory, ``get_db_context`` by default).
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        counter: Optional[ApiCallCounter] = None,
    ):
        if session_factory is None:
            from ..database.connection import get_db_context
            session_factory = get_db_context
        self._session = session_factory
        self._counter = counter if counter is not None else usage_counter

    # -- reads -------------------------------------------------------------

    async def _load(self, session, instance_id: uuid.UUID) -> Instance:
        result = await session.execute(
            select(Instance)
            .where(Instance.id == instance_id)
            .execution_options(populate_existing=True)
        )
        instance = result.scalar_one_or_none()
        if instance is None:
            raise TenantNotFound(str(instance_id))
        return instance

    async def get_balance(self, tenant_id: Any) -> CreditBalance:
        instance_id = _parse_instance_id(tenant_id)
        async with self._session() as session:
            return _balance_of(await self._load(session, instance_id))

    async def check_audit_credit(self, tenant_id: Any) -> CreditCheck:
        """Report whether one more audit is allowed for the instance."""
        instance_id = _parse_instance_id(tenant_id)
        async with self._session() as session:
            instance = await self._load(session, instance_id)
        return CreditCheck(
            allowed=has_audit_credit(
                instance.used_audits, instance.total_audits, instance.block_on_exhausted
            ),
            used=instance.used_audits,
            total=instance.total_audits,
            remaining=instance.remaining_audits,
        )

    async def ensure_audit_credit(self, tenant_id: Any) -> CreditCheck:
        """Like ``check_audit_credit`` but raise ``InsufficientCredit`` on deny."""
        check = await self.check_audit_credit(tenant_id)
        if not check.allowed:
            record_credit_denial()
            raise InsufficientCredit(str(tenant_id), check.used, check.total)
        return check

    async def check_token_credit(self, tenant_id: Any, tokens: int) -> CreditCheck:
        """Report whether *tokens* more AI tokens are allowed for the instance."""
        if tokens < 0:
            raise ValueError("tokens must be non-negative")
        instance_id = _parse_instance_id(tenant_id)
        async with self._session() as session:
            instance = await self._load(session, instance_id)
        total, used = instance.total_tokens, instance.used_tokens
        return CreditCheck(
            allowed=has_token_credit(used, total, tokens, instance.block_on_exhausted),
            used=used,
            total=total,
            remaining=None if total == UNLIMITED else max(0, total - used),
        )

    async def low_balance(self, tenant_id: Any) -> bool:
        """Advisory: remaining audit credit is at or below the instance threshold."""
        balance = await self.get_balance(tenant_id)
        return is_low_balance(
            balance.used_audits, balance.total_audits, balance.low_credit_threshold
        )

    # -- usage -------------------------------------------------------------

    def record_api_call(self, tenant_id: Optional[str]) -> None:
        """Count an API call. In-memory only; persisted by the periodic flush."""
        self._counter.record(str(tenant_id) if tenant_id else None)

    async def consume_audit_credit(
        self,
        tenant_id: Any,
        tokens: int = 0,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> ConsumeResult:
        """Atomically bill one audit and *tokens* AI tokens to the instance.

        Raises:
            InsufficientCredit: The audit ceiling is reached, or *tokens* would
                exceed the token allocation (nothing billed).
            TenantNotFound: No such instance.
            LedgerWriteFailure: The counters could not be written.
        """
        if tokens < 0:
            raise ValueError("tokens must be non-negative")
        instance_id = _parse_instance_id(tenant_id)

        try:
            async with self._session() as session:
                if idempotency_key:
                    previous = await self._find_consumption(session, instance_id, idempotency_key)
                    if previous is not None:
                        return await self._duplicate(session, instance_id, previous)

                txn = CreditTransaction(
                    id=uuid.uuid4(),
                    instance_id=instance_id,
                    type=TransactionType.USE,
                    credit_type=CreditType.AUDIT,
                    amount=-1,
                    tokens=tokens,
                    balance_after=0,
                    reason="Audit performed",
                    reference=reference,
                    idempotency_key=idempotency_key,
                )
                session.add(txn)
                try:
                    await session.flush()
                except IntegrityError:
                    await session.rollback()
                    if idempotency_key:
                        previous = await self._find_consumption(
                            session, instance_id, idempotency_key
                        )
                        if previous is not None:
                            return await self._duplicate(session, instance_id, previous)
                    await self._load(session, instance_id)
                    raise

                result = await session.execute(
                    update(Instance)
                    .where(Instance.id == instance_id)
                    .where(
                        or_(
                            Instance.block_on_exhausted.is_(False),
                            and_(
                                or_(
                                    Instance.total_audits == UNLIMITED,
                                    Instance.used_audits < Instance.total_audits,
                                ),
                                or_(
                                    Instance.total_tokens == UNLIMITED,
                                    Instance.used_tokens + tokens <= Instance.total_tokens,
                                ),
                            ),
                        )
                    )
                    .values(
                        used_audits=Instance.used_audits + 1,
                        used_tokens=Instance.used_tokens + tokens,
                    )
                    .execution_options(synchronize_session=False)
                )
                if (result.rowcount or 0) == 0:
                    await session.rollback()
                    instance = await self._load(session, instance_id)
                    record_credit_denial()
                    if has_audit_credit(
                        instance.used_audits, instance.total_audits, instance.block_on_exhausted
                    ):
                        logger.warning(
                            "Token credits exhausted for instance %s (%d + %d > %d)",
                            instance_id, instance.used_tokens, tokens, instance.total_tokens,
                        )
                        raise InsufficientCredit(
                            str(instance_id), instance.used_tokens, instance.total_tokens,
                            credit_type=CreditType.TOKEN.value,
                        )
                    logger.warning(
                        "Audit credits exhausted for instance %s (%d/%d)",
                        instance_id, instance.used_audits, instance.total_audits,
                    )
                    raise InsufficientCredit(
                        str(instance_id), instance.used_audits, instance.total_audits
                    )

                instance = await self._load(session, instance_id)
                txn.balance_after = _remaining(instance.total_audits, instance.used_audits)
                low = is_low_balance(
                    instance.used_audits, instance.total_audits, instance.low_credit_threshold
                )
                if low:
                    await self._raise_low_credit_alert(session, instance)

                await session.commit()
        except (InsufficientCredit, TenantNotFound):
            raise
        except SQLAlchemyError as e:
            logger.exception("Failed to consume audit credit for instance %s", instance_id)
            record_ledger_write_failure("audits")
            raise LedgerWriteFailure(
                f"Could not record audit usage for instance {instance_id}"
            ) from e

        record_audit_credit_consumed()
        return ConsumeResult(
            instance_id=str(instance_id),
            transaction_id=str(txn.id),
            used_audits=instance.used_audits,
            used_tokens=instance.used_tokens,
            total_audits=instance.total_audits,
            remaining=instance.remaining_audits,
            low_balance=low,
        )

    async def _find_consumption(
        self, session, instance_id: uuid.UUID, idempotency_key: str
    ) -> Optional[CreditTransaction]:
        result = await session.execute(
            select(CreditTransaction).where(
                CreditTransaction.instance_id == instance_id,
                CreditTransaction.idempotency_key == idempotency_key,
            )
        )
        return result.scalar_one_or_none()

    async def _duplicate(
        self, session, instance_id: uuid.UUID, previous: CreditTransaction
    ) -> ConsumeResult:
        instance = await self._load(session, instance_id)
        logger.info(
            "Ignoring repeated audit consumption %s for instance %s",
            previous.idempotency_key, instance_id,
        )
        return ConsumeResult(
            instance_id=str(instance_id),
            transaction_id=str(previous.id),
            used_audits=instance.used_audits,
            used_tokens=instance.used_tokens,
            total_audits=instance.total_audits,
            remaining=instance.remaining_audits,
            low_balance=is_low_balance(
                instance.used_audits, instance.total_audits, instance.low_credit_threshold
            ),
            duplicate=True,
        )

    async def _raise_low_credit_alert(self, session, instance: Instance) -> None:
        """Flag the instance once per top-up cycle and log the advisory alert."""
        result = await session.execute(
            update(Instance)
            .where(Instance.id == instance.id, Instance.low_credit_alert_sent.is_(False))
            .values(low_credit_alert_sent=True)
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) > 0:
            remaining = instance.remaining_audits or 0
            logger.warning(
                "Low credit alert for instance %s: %d of %d audit credits remaining",
                instance.id, remaining, instance.total_audits,
            )

    # -- administration ----------------------------------------------------

    async def provision(
        self,
        name: str,
        client_id: str,
        organization_id: Optional[str] = None,
        plan: InstancePlan = InstancePlan.TRIAL,
        billing_type: BillingType = BillingType.PREPAID,
        total_audits: Optional[int] = None,
        total_tokens: Optional[int] = None,
        created_by: Optional[str] = None,
    ) -> CreditBalance:
        """Create an instance with its initial credit allocation."""
        settings = get_settings()
        if total_audits is None:
            total_audits = settings.default_audit_credits
        if total_tokens is None:
            total_tokens = settings.default_token_credits
        _validate_total(total_audits)
        _validate_total(total_tokens)

        instance = Instance(
            id=uuid.uuid4(),
            name=name,
            client_id=client_id,
            organization_id=organization_id,
            plan=plan,
            status=InstanceStatus.ACTIVE,
            billing_type=billing_type,
            total_audits=total_audits,
            total_tokens=total_tokens,
            low_credit_threshold=settings.low_credit_threshold_percent,
        )
        async with self._session() as session:
            session.add(instance)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                raise DuplicateInstance(client_id) from None
            for credit_type, amount in (
                (CreditType.AUDIT, total_audits),
                (CreditType.TOKEN, total_tokens),
            ):
                session.add(CreditTransaction(
                    instance_id=instance.id,
                    type=TransactionType.ADD,
                    credit_type=credit_type,
                    amount=amount,
                    balance_after=amount,
                    reason="Initial allocation",
                    created_by=created_by,
                ))
            await self._commit(session, "provision")
            logger.info("Provisioned instance %s (%s)", instance.id, client_id)
            return _balance_of(instance)

    async def add_audit_credits(
        self, tenant_id: Any, amount: int, reason: str, added_by: Optional[str] = None
    ) -> CreditBalance:
        return await self._top_up(tenant_id, CreditType.AUDIT, amount, reason, added_by)

    async def add_token_credits(
        self, tenant_id: Any, amount: int, reason: str, added_by: Optional[str] = None
    ) -> CreditBalance:
        return await self._top_up(tenant_id, CreditType.TOKEN, amount, reason, added_by)

    async def _top_up(
        self,
        tenant_id: Any,
        credit_type: CreditType,
        amount: int,
        reason: str,
        added_by: Optional[str],
    ) -> CreditBalance:
        if amount <= 0:
            raise ValueError("Amount must be positive")
        instance_id = _parse_instance_id(tenant_id)
        total_col = Instance.total_audits if credit_type == CreditType.AUDIT else Instance.total_tokens

        async with self._session() as session:
            instance = await self._load(session, instance_id)
            result = await session.execute(
                update(Instance)
                .where(Instance.id == instance_id, total_col != UNLIMITED)
                .values({total_col: total_col + amount, Instance.low_credit_alert_sent: False})
                .execution_options(synchronize_session=False)
            )
            if (result.rowcount or 0) == 0:
                raise ValueError(f"{credit_type.value} allocation is unlimited")

            instance = await self._load(session, instance_id)
            if credit_type == CreditType.AUDIT:
                balance_after = _remaining(instance.total_audits, instance.used_audits)
            else:
                balance_after = _remaining(instance.total_tokens, instance.used_tokens)
            session.add(CreditTransaction(
                instance_id=instance_id,
                type=TransactionType.ADD,
                credit_type=credit_type,
                amount=amount,
                balance_after=balance_after,
                reason=reason,
                created_by=added_by,
            ))
            await self._commit(session, f"{credit_type.value}_top_up")
            logger.info(
                "Added %d %s credits to instance %s by %s", amount, credit_type.value,
                instance_id, added_by or "system",
            )
            return _balance_of(instance)

    async def set_limits(
        self,
        tenant_id: Any,
        total_audits: Optional[int] = None,
        total_tokens: Optional[int] = None,
        billing_type: Optional[BillingType] = None,
        block_on_exhausted: Optional[bool] = None,
        updated_by: Optional[str] = None,
    ) -> CreditBalance:
        """Set absolute allocations (``UNLIMITED`` allowed)."""
        instance_id = _parse_instance_id(tenant_id)
        values: Dict[Any, Any] = {}
        if total_audits is not None:
            _validate_total(total_audits)
            values[Instance.total_audits] = total_audits
        if total_tokens is not None:
            _validate_total(total_tokens)
            values[Instance.total_tokens] = total_tokens
        if billing_type is not None:
            values[Instance.billing_type] = billing_type
        if block_on_exhausted is not None:
            values[Instance.block_on_exhausted] = block_on_exhausted

        async with self._session() as session:
            instance = await self._load(session, instance_id)
            if not values:
                return _balance_of(instance)
            values[Instance.low_credit_alert_sent] = False
            await session.execute(
                update(Instance)
                .where(Instance.id == instance_id)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            instance = await self._load(session, instance_id)
            for credit_type, total, used, requested in (
                (CreditType.AUDIT, instance.total_audits, instance.used_audits, total_audits),
                (CreditType.TOKEN, instance.total_tokens, instance.used_tokens, total_tokens),
            ):
                if requested is None:
                    continue
                session.add(CreditTransaction(
                    instance_id=instance_id,
                    type=TransactionType.ADJUST,
                    credit_type=credit_type,
                    amount=total,
                    balance_after=_remaining(total, used),
                    reason="Allocation set",
                    created_by=updated_by,
                ))
            await self._commit(session, "set_limits")
            return _balance_of(instance)

    async def reset_usage(self, tenant_id: Any, reset_by: Optional[str] = None) -> CreditBalance:
        """Zero the used counters for a new billing cycle."""
        instance_id = _parse_instance_id(tenant_id)
        async with self._session() as session:
            # Write first: the row lock is held before the used counters are
            # read, so no consumption can commit between the read and the reset.
            result = await session.execute(
                update(Instance)
                .where(Instance.id == instance_id)
                .values(last_reset_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            if (result.rowcount or 0) == 0:
                raise TenantNotFound(str(instance_id))
            instance = await self._load(session, instance_id)
            previous_audits, previous_tokens = instance.used_audits, instance.used_tokens
            await session.execute(
                update(Instance)
                .where(Instance.id == instance_id)
                .values(used_audits=0, used_tokens=0, low_credit_alert_sent=False)
                .execution_options(synchronize_session=False)
            )
            instance = await self._load(session, instance_id)
            for credit_type, amount, total in (
                (CreditType.AUDIT, previous_audits, instance.total_audits),
                (CreditType.TOKEN, previous_tokens, instance.total_tokens),
            ):
                session.add(CreditTransaction(
                    instance_id=instance_id,
                    type=TransactionType.RESET,
                    credit_type=credit_type,
                    amount=amount,
                    balance_after=_remaining(total, 0),
                    reason="Usage reset",
                    created_by=reset_by,
                ))
            await self._commit(session, "reset_usage")
            logger.info("Reset usage for instance %s by %s", instance_id, reset_by or "system")
            return _balance_of(instance)

    async def usage_summary(self, tenant_id: Any) -> Dict[str, Any]:
        """Balance, usage and percentage remaining per credit type."""
        balance = await self.get_balance(tenant_id)

        def _section(total: int, used: int) -> Dict[str, Any]:
            remaining = _remaining(total, used)
            return {
                "balance": remaining,
                "used": used,
                "total": total,
                "unlimited": total == UNLIMITED,
                "percentage": _percentage(remaining, total),
            }

        return {
            "instance_id": balance.instance_id,
            "billing_type": balance.billing_type,
            "audit_credits": _section(balance.total_audits, balance.used_audits),
            "token_credits": _section(balance.total_tokens, balance.used_tokens),
            "api_calls": balance.total_api_calls + self._counter.pending(balance.instance_id),
            "low_balance": is_low_balance(
                balance.used_audits, balance.total_audits, balance.low_credit_threshold
            ),
        }

    async def list_transactions(
        self,
        tenant_id: Any,
        credit_type: Optional[CreditType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[CreditTransaction]:
        """Transaction history, newest first."""
        instance_id = _parse_instance_id(tenant_id)
        async with self._session() as session:
            await self._load(session, instance_id)
            query = select(CreditTransaction).where(CreditTransaction.instance_id == instance_id)
            if credit_type is not None:
                query = query.where(CreditTransaction.credit_type == credit_type)
            query = (
                query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
                .offset(offset)
                .limit(limit)
            )
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _commit(self, session, operation: str) -> None:
        try:
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.exception("Ledger write failed during %s", operation)
            record_ledger_write_failure(operation)
            raise LedgerWriteFailure(f"Could not persist {operation}") from e


def _validate_total(value: int) -> None:
    if value != UNLIMITED and value < 0:
        raise ValueError(f"Allocation must be >= 0 or {UNLIMITED} (unlimited)")


_ledger: Optional[CreditLedger] = None


def get_credit_ledger() -> CreditLedger:
    """Process-wide ledger (FastAPI dependency)."""
    global _ledger
    if _ledger is None:
        _ledger = CreditLedger()
    return _ledger
