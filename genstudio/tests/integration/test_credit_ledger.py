from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select

from genstudio.core.errors import InsufficientCreditsError, PrincipalUnknownError
from genstudio.domain.models import CreditBalance
from genstudio.persistence.db import SessionLocal
from genstudio.services import credits
from genstudio.tests.utils.factories import principal_id, seed_balance


async def _stored(principal: str) -> CreditBalance | None:
    async with SessionLocal() as session:
        result = await session.execute(select(CreditBalance).where(CreditBalance.principal_id == principal))
        return result.scalar_one_or_none()


@pytest.mark.asyncio
async def test_first_inquiry_applies_welcome_grant_once() -> None:
    principal = principal_id()
    async with SessionLocal() as session:
        first = await credits.ensure_balance(session, principal, email="a@example.com")
        second = await credits.ensure_balance(session, principal)
    assert first.is_new is True
    assert (first.general_credits, first.aux_credits) == (10, 10)
    assert second.is_new is False
    assert second.general_credits == 10
    stored = await _stored(principal)
    assert stored is not None and stored.email == "a@example.com"


@pytest.mark.asyncio
async def test_unknown_principal_without_creation() -> None:
    async with SessionLocal() as session:
        with pytest.raises(PrincipalUnknownError):
            await credits.get_balance(session, principal_id(), create=False)
        with pytest.raises(PrincipalUnknownError):
            await credits.deduct(session, principal_id(), 1)


@pytest.mark.asyncio
async def test_check_reports_shortfall_without_mutation() -> None:
    principal = principal_id()
    await seed_balance(principal, 1)
    async with SessionLocal() as session:
        decision = await credits.check(session, principal, 2)
    assert decision.ok is False
    assert (decision.required, decision.available) == (2, 1)
    with pytest.raises(InsufficientCreditsError):
        decision.raise_for_denial()
    stored = await _stored(principal)
    assert stored is not None and stored.general_credits == 1


@pytest.mark.asyncio
async def test_deduct_never_goes_negative() -> None:
    principal = principal_id()
    await seed_balance(principal, 2)
    async with SessionLocal() as session:
        result = await credits.deduct(session, principal, 2)
        assert result.ok and result.new_balance == 0
        with pytest.raises(InsufficientCreditsError) as excinfo:
            await credits.deduct(session, principal, 1)
    assert excinfo.value.available == 0
    stored = await _stored(principal)
    assert stored is not None and stored.general_credits == 0


@pytest.mark.asyncio
async def test_concurrent_deductions_of_last_credit() -> None:
    principal = principal_id()
    await seed_balance(principal, 1)

    async def _attempt() -> object:
        async with SessionLocal() as session:
            return await credits.deduct(session, principal, 1)

    outcomes = await asyncio.gather(_attempt(), _attempt(), return_exceptions=True)
    successes = [outcome for outcome in outcomes if isinstance(outcome, credits.DeductResult)]
    denials = [outcome for outcome in outcomes if isinstance(outcome, InsufficientCreditsError)]
    assert len(successes) == 1
    assert len(denials) == 1
    stored = await _stored(principal)
    assert stored is not None and stored.general_credits == 0


@pytest.mark.asyncio
async def test_aux_credits_are_independent() -> None:
    principal = principal_id()
    await seed_balance(principal, 3, 1)
    async with SessionLocal() as session:
        result = await credits.deduct_aux(session, principal, 1)
        assert result.new_balance == 0
        assert result.credit_type == credits.CREDIT_AUX
        decision = await credits.check_aux(session, principal, 1)
        assert decision.ok is False and decision.credit_type == credits.CREDIT_AUX
        balance = await credits.get_balance(session, principal)
    assert balance.general_credits == 3


@pytest.mark.asyncio
async def test_grant_adds_to_existing_balance() -> None:
    principal = principal_id()
    async with SessionLocal() as session:
        await credits.ensure_balance(session, principal)
        snapshot = await credits.grant(session, principal, 50, 5)
        with pytest.raises(ValueError):
            await credits.grant(session, principal, -1)
    assert (snapshot.general_credits, snapshot.aux_credits) == (60, 15)
