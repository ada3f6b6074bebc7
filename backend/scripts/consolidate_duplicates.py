"""Collapse duplicate subscriptions sharing a correlation key.

Usage:
    python -m scripts.consolidate_duplicates            # every duplicated key
    python -m scripts.consolidate_duplicates SUB-u1-p1-0a1b2c3d
"""

import asyncio
import sys

from app.core.logging import configure_structlog

configure_structlog(log_level="INFO", json_logs=False)

from app.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis
from app.services.consolidator import Consolidator
from app.services.ledger_store import LedgerStore


async def main(keys: list[str]) -> None:
    await init_db()
    await init_redis()
    consolidator = Consolidator(LedgerStore(get_session_factory()), get_redis())

    try:
        if keys:
            reports = [await consolidator.consolidate(key) for key in keys]
        else:
            reports = await consolidator.consolidate_all()

        print(f"Checked {len(reports)} correlation key(s):")
        for r in reports:
            if r.aborted or r.skipped_reason:
                print(f"  {r.correlation_key} | skipped={r.skipped_reason}")
                continue
            print(
                f"  {r.correlation_key} | kept={r.canonical_id} | removed={r.removed_ids} "
                f"| filled={r.filled_fields} | scores={r.scores}"
            )
    finally:
        await close_redis()
        await close_db()

    print("\nALL DONE")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
