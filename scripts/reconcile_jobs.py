from __future__ import annotations

import argparse
import asyncio

from genstudio.core.logging import configure_logging
from genstudio.persistence.db import SessionLocal
from genstudio.providers.inference.factory import get_inference_provider
from genstudio.providers.storage.factory import get_object_store
from genstudio.services.ingestor import reconcile_stale_jobs


async def _reconcile(limit: int | None) -> None:
    async with SessionLocal() as session:
        summary = await reconcile_stale_jobs(
            session, get_inference_provider(), get_object_store(), limit=limit
        )
    print(f"scanned={summary.scanned}")
    print(f"applied={summary.applied}")
    print(f"repaired={summary.repaired}")
    print(f"failed={summary.failed}")


def main() -> None:
    # One-shot run of the reconciliation cron for operators.
    parser = argparse.ArgumentParser(description="Reconcile stale provider jobs")
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_reconcile(args.limit))


if __name__ == "__main__":
    main()
