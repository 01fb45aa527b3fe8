from __future__ import annotations

import argparse
import asyncio

from genstudio.persistence.db import SessionLocal
from genstudio.services import credits
from genstudio.services.audit import record_event


async def _grant(principal_id: str, general: int, aux: int, reason: str) -> None:
    # Operator top-up outside the checkout flow (support refunds, promotions).
    async with SessionLocal() as session:
        snapshot = await credits.grant(session, principal_id, general, aux)
    await record_event(
        principal_id=principal_id,
        event_type="credits.granted",
        outcome="success",
        resource_type="credits",
        resource_id=principal_id,
        metadata={"general_credits": general, "aux_credits": aux, "reason": reason, "source": "cli"},
    )
    print(f"principal_id={snapshot.principal_id}")
    print(f"general_credits={snapshot.general_credits}")
    print(f"aux_credits={snapshot.aux_credits}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Grant credits to a principal")
    parser.add_argument("principal_id")
    parser.add_argument("--general", type=int, default=0)
    parser.add_argument("--aux", type=int, default=0)
    parser.add_argument("--reason", default="manual")
    args = parser.parse_args()
    if args.general < 0 or args.aux < 0:
        parser.error("amounts must be non-negative")
    if args.general == 0 and args.aux == 0:
        parser.error("nothing to grant")
    asyncio.run(_grant(args.principal_id, args.general, args.aux, args.reason))


if __name__ == "__main__":
    main()
