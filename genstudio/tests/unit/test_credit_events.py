from __future__ import annotations

import pytest

from genstudio.services.events import CreditEventBus, CreditsChanged


def _event() -> CreditsChanged:
    return CreditsChanged(principal_id="user_1", general_credits=60, aux_credits=5, reason="payment")


@pytest.mark.asyncio
async def test_publish_reaches_sync_and_async_listeners() -> None:
    bus = CreditEventBus()
    seen: list[str] = []

    def on_sync(event: CreditsChanged) -> None:
        seen.append(f"sync:{event.general_credits}")

    async def on_async(event: CreditsChanged) -> None:
        seen.append(f"async:{event.aux_credits}")

    bus.subscribe(on_sync)
    bus.subscribe(on_async)
    await bus.publish(_event())
    assert seen == ["sync:60", "async:5"]


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others() -> None:
    bus = CreditEventBus()
    seen: list[CreditsChanged] = []

    def broken(event: CreditsChanged) -> None:
        raise RuntimeError("listener down")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    await bus.publish(_event())
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery() -> None:
    bus = CreditEventBus()
    seen: list[CreditsChanged] = []
    unsubscribe = bus.subscribe(seen.append)
    unsubscribe()
    unsubscribe()
    await bus.publish(_event())
    assert seen == []
