#!/usr/bin/env python3
"""Apply the analysis-ops schema to DATABASE_URL."""
import asyncio
import os
from pathlib import Path

import asyncpg

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "analysis_ops" / "db" / "schema.sql"

TABLES = (
    "analysis_operations",
    "operation_events",
    "retry_queue",
    "admin_notifications",
    "analysis_metrics",
    "hourly_metrics",
)


async def main():
    conn = await asyncpg.connect(os.environ["DATABASE_URL"], statement_cache_size=0)
    try:
        await conn.execute(SCHEMA_PATH.read_text())
        print(f"Schema applied from {SCHEMA_PATH.name}")

        # Verify
        for table in TABLES:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM information_schema.columns WHERE table_name = $1",
                table,
            )
            print(f"{table}: {count} columns")
    finally:
        await conn.close()

if __name__ == "__main__":
    asyncio.run(main())
