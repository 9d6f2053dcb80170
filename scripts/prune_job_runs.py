from __future__ import annotations

import asyncio
from datetime import timedelta

from contentsync.core.config import get_settings
from contentsync.persistence.db import SessionLocal
from contentsync.services.job_ledger import prune_job_runs


async def prune() -> None:
    # Drop terminal runs past the idempotency retention window to keep the ledger bounded.
    retention = timedelta(hours=get_settings().job_idempotency_retention_hours)
    async with SessionLocal() as session:
        deleted = await prune_job_runs(session, older_than=retention)
    print(f"pruned_job_runs={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
