from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    payment_status: str
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def paid(self) -> bool:
        return self.payment_status == "paid"


class PaymentProvider(Protocol):
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        ...
