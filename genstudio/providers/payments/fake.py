from __future__ import annotations

from genstudio.core.errors import NotFoundError
from genstudio.providers.payments.base import CheckoutSession


class FakePaymentProvider:
    def __init__(self) -> None:
        self.sessions: dict[str, CheckoutSession] = {}
        self.retrievals = 0

    def add_session(
        self,
        session_id: str,
        *,
        payment_status: str = "paid",
        metadata: dict[str, str] | None = None,
    ) -> CheckoutSession:
        session = CheckoutSession(id=session_id, payment_status=payment_status, metadata=metadata or {})
        self.sessions[session_id] = session
        return session

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        self.retrievals += 1
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Checkout session {session_id} not found")
        return session
