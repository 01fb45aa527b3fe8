from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.domain.models import Payment


async def get_payment(session: AsyncSession, *, session_id: str, purpose: str) -> Payment | None:
    result = await session.execute(
        select(Payment).where(Payment.session_id == session_id, Payment.purpose == purpose)
    )
    return result.scalar_one_or_none()


async def add_payment(
    session: AsyncSession,
    *,
    session_id: str,
    purpose: str,
    principal_id: str,
    workspace_id: str | None = None,
    general_credits: int = 0,
    aux_credits: int = 0,
) -> Payment:
    # Flush immediately so the (session_id, purpose) constraint fires before any grant.
    payment = Payment(
        session_id=session_id,
        purpose=purpose,
        principal_id=principal_id,
        workspace_id=workspace_id,
        status="paid",
        general_credits=general_credits,
        aux_credits=aux_credits,
    )
    session.add(payment)
    await session.flush()
    return payment


async def has_workspace_payment(session: AsyncSession, *, workspace_id: str, purpose: str) -> bool:
    result = await session.execute(
        select(Payment.id)
        .where(
            Payment.workspace_id == workspace_id,
            Payment.purpose == purpose,
            Payment.status == "paid",
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None
