from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.config import get_settings
from genstudio.core.errors import InsufficientCreditsError, PrincipalUnknownError
from genstudio.domain.models import CreditBalance
from genstudio.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CREDIT_GENERAL = "general"
CREDIT_AUX = "aux"

_COLUMNS = {
    CREDIT_GENERAL: CreditBalance.general_credits,
    CREDIT_AUX: CreditBalance.aux_credits,
}

REASON_INSUFFICIENT = "insufficient_credits"


@dataclass(frozen=True)
class BalanceSnapshot:
    principal_id: str
    general_credits: int
    aux_credits: int
    is_new: bool = False


@dataclass(frozen=True)
class CreditDecision:
    # Admission verdict returned before any provider cost is incurred.
    ok: bool
    required: int
    available: int
    credit_type: str = CREDIT_GENERAL
    reason: str | None = None

    def raise_for_denial(self) -> None:
        if not self.ok:
            raise InsufficientCreditsError(
                self.required, self.available, credit_type=self.credit_type
            )


@dataclass(frozen=True)
class DeductResult:
    ok: bool
    new_balance: int
    credit_type: str = CREDIT_GENERAL


def _snapshot(row: CreditBalance, *, is_new: bool = False) -> BalanceSnapshot:
    return BalanceSnapshot(
        principal_id=row.principal_id,
        general_credits=row.general_credits,
        aux_credits=row.aux_credits,
        is_new=is_new,
    )


async def _get_row(session: AsyncSession, principal_id: str) -> CreditBalance | None:
    result = await session.execute(
        select(CreditBalance)
        .where(CreditBalance.principal_id == principal_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ensure_balance(
    session: AsyncSession,
    principal_id: str,
    *,
    email: str | None = None,
) -> BalanceSnapshot:
    # Materialize the balance on first sight with the one-time welcome grant.
    existing = await _get_row(session, principal_id)
    if existing is not None:
        return _snapshot(existing)
    settings = get_settings()
    row = CreditBalance(
        principal_id=principal_id,
        email=email,
        general_credits=settings.welcome_general_credits,
        aux_credits=settings.welcome_aux_credits,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent request created the row first; the welcome grant is theirs.
        await session.rollback()
        existing = await _get_row(session, principal_id)
        if existing is None:
            raise
        return _snapshot(existing)
    increment_counter("credit_welcome_grants_total")
    logger.info(
        "credit_balance_created principal_id=%s general=%s aux=%s",
        principal_id,
        row.general_credits,
        row.aux_credits,
    )
    return _snapshot(row, is_new=True)


async def get_balance(
    session: AsyncSession,
    principal_id: str,
    *,
    create: bool = True,
) -> BalanceSnapshot:
    if create:
        return await ensure_balance(session, principal_id)
    row = await _get_row(session, principal_id)
    if row is None:
        raise PrincipalUnknownError(f"No credit balance for principal {principal_id}")
    return _snapshot(row)


async def _check(
    session: AsyncSession,
    principal_id: str,
    amount: int,
    *,
    credit_type: str,
    create: bool,
) -> CreditDecision:
    balance = await get_balance(session, principal_id, create=create)
    available = balance.general_credits if credit_type == CREDIT_GENERAL else balance.aux_credits
    if available < amount:
        return CreditDecision(
            ok=False,
            required=amount,
            available=available,
            credit_type=credit_type,
            reason=REASON_INSUFFICIENT,
        )
    return CreditDecision(ok=True, required=amount, available=available, credit_type=credit_type)


async def _deduct(
    session: AsyncSession,
    principal_id: str,
    amount: int,
    *,
    credit_type: str,
    commit: bool,
) -> DeductResult:
    if amount < 0:
        raise ValueError("amount must be non-negative")
    column = _COLUMNS[credit_type]
    # Conditional decrement: the balance is re-checked at write time so concurrent
    # callers serialize on the row without an explicit lock.
    result = await session.execute(
        update(CreditBalance)
        .where(CreditBalance.principal_id == principal_id, column >= amount)
        .values({column.key: column - amount})
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        row = await _get_row(session, principal_id)
        available = None
        if row is not None:
            available = row.general_credits if credit_type == CREDIT_GENERAL else row.aux_credits
        if commit:
            await session.rollback()
        if available is None:
            raise PrincipalUnknownError(f"No credit balance for principal {principal_id}")
        increment_counter(f"credit_deduct_denied_total.{credit_type}")
        raise InsufficientCreditsError(amount, available, credit_type=credit_type)
    row = await _get_row(session, principal_id)
    assert row is not None
    new_balance = row.general_credits if credit_type == CREDIT_GENERAL else row.aux_credits
    if commit:
        await session.commit()
    logger.info(
        "credit_deducted principal_id=%s type=%s amount=%s new_balance=%s",
        principal_id,
        credit_type,
        amount,
        new_balance,
    )
    return DeductResult(ok=True, new_balance=new_balance, credit_type=credit_type)


async def check(
    session: AsyncSession,
    principal_id: str,
    amount: int,
    *,
    create: bool = True,
) -> CreditDecision:
    return await _check(session, principal_id, amount, credit_type=CREDIT_GENERAL, create=create)


async def deduct(
    session: AsyncSession,
    principal_id: str,
    amount: int,
    *,
    commit: bool = True,
) -> DeductResult:
    return await _deduct(session, principal_id, amount, credit_type=CREDIT_GENERAL, commit=commit)


async def check_aux(
    session: AsyncSession,
    principal_id: str,
    amount: int,
    *,
    create: bool = True,
) -> CreditDecision:
    return await _check(session, principal_id, amount, credit_type=CREDIT_AUX, create=create)


async def deduct_aux(
    session: AsyncSession,
    principal_id: str,
    amount: int,
    *,
    commit: bool = True,
) -> DeductResult:
    return await _deduct(session, principal_id, amount, credit_type=CREDIT_AUX, commit=commit)


async def _increment(
    session: AsyncSession,
    principal_id: str,
    general_amount: int,
    aux_amount: int,
) -> bool:
    result = await session.execute(
        update(CreditBalance)
        .where(CreditBalance.principal_id == principal_id)
        .values(
            {
                CreditBalance.general_credits.key: CreditBalance.general_credits + general_amount,
                CreditBalance.aux_credits.key: CreditBalance.aux_credits + aux_amount,
            }
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def grant(
    session: AsyncSession,
    principal_id: str,
    general_amount: int,
    aux_amount: int = 0,
    *,
    commit: bool = True,
) -> BalanceSnapshot:
    # Callers guard payment-driven grants with a payment record before invoking this.
    if general_amount < 0 or aux_amount < 0:
        raise ValueError("grant amounts must be non-negative")
    if not await _increment(session, principal_id, general_amount, aux_amount):
        # Payments can land before the first balance inquiry; no welcome grant on this path.
        try:
            async with session.begin_nested():
                session.add(
                    CreditBalance(
                        principal_id=principal_id,
                        general_credits=general_amount,
                        aux_credits=aux_amount,
                    )
                )
        except IntegrityError:
            # ensure_balance created the row after our update; only the savepoint is lost.
            increment_counter("credit_grant_insert_races_total")
            if not await _increment(session, principal_id, general_amount, aux_amount):
                raise
    row = await _get_row(session, principal_id)
    assert row is not None
    snapshot = _snapshot(row)
    if commit:
        await session.commit()
    increment_counter("credit_grants_total")
    logger.info(
        "credit_granted principal_id=%s general=%s aux=%s balance_general=%s balance_aux=%s",
        principal_id,
        general_amount,
        aux_amount,
        snapshot.general_credits,
        snapshot.aux_credits,
    )
    return snapshot


async def update_email(session: AsyncSession, principal_id: str, email: str | None) -> None:
    await session.execute(
        update(CreditBalance)
        .where(CreditBalance.principal_id == principal_id)
        .values(email=email)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
