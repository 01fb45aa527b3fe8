from __future__ import annotations

from dataclasses import dataclass
import inspect
import logging
from typing import Any, Awaitable, Callable, Union


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditsChanged:
    principal_id: str
    general_credits: int
    aux_credits: int
    reason: str


CreditsListener = Callable[[CreditsChanged], Union[None, Awaitable[None]]]


class CreditEventBus:
    """Explicit publish/subscribe hub for balance changes.

    Held on the application state and handed to the flows that change balances,
    so subscribers (e.g. a UI push channel) refresh after a confirmed payment.
    """

    def __init__(self) -> None:
        self._listeners: list[CreditsListener] = []

    def subscribe(self, listener: CreditsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def publish(self, event: CreditsChanged) -> None:
        for listener in list(self._listeners):
            try:
                result: Any = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - one listener must not block the rest
                logger.warning(
                    "credits_listener_failed principal_id=%s reason=%s",
                    event.principal_id,
                    event.reason,
                    exc_info=exc,
                )
