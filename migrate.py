"""
Migration: ensure the unique indexes that conversion safety relies on.

The idempotency guard depends on a unique conversion_attempts.idempotency_key,
and student code generation depends on a unique students.student_id. Tables
created by an older build may lack them. Run this against an existing database:
    python migrate.py

It is safe to run multiple times, every statement uses IF NOT EXISTS.
"""

import asyncio
import os
from dotenv import load_dotenv

load_dotenv()

import asyncpg

MIGRATIONS = [
    (
        "conversion_attempts.idempotency_key unique",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_conversion_attempts_idempotency_key
        ON conversion_attempts (idempotency_key);
        """,
    ),
    (
        "students.student_id unique",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_students_student_id
        ON students (student_id);
        """,
    ),
    (
        "batches.batch_code unique",
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_batches_batch_code
        ON batches (batch_code);
        """,
    ),
    (
        "conversion_attempts.updated_at",
        """
        ALTER TABLE conversion_attempts
        ADD COLUMN IF NOT EXISTS updated_at TIMESTAMPTZ DEFAULT now();
        """,
    ),
]


async def apply_migrations(conn) -> list[str]:
    """Run every statement on an open connection; returns the applied labels."""
    applied = []
    for label, statement in MIGRATIONS:
        await conn.execute(statement)
        print(f"  ✓ {label} ensured.")
        applied.append(label)
    return applied


async def _connect() -> asyncpg.Connection:
    # Same variables the service reads through pydantic-settings
    return await asyncpg.connect(
        host=os.environ.get("DB_HOST", "localhost"),
        port=int(os.environ.get("DB_PORT", 5432)),
        database=os.environ.get("DB_NAME", "school_ops"),
        user=os.environ.get("DB_USER", "postgres"),
        password=os.environ.get("DB_PASSWORD", "postgres"),
    )


async def migrate():
    conn = await _connect()
    print(f"Connected. Applying {len(MIGRATIONS)} migrations...")
    try:
        async with conn.transaction():
            applied = await apply_migrations(conn)
    finally:
        await conn.close()
    print(f"\nDone: {len(applied)} statements applied. Restart the API to pick up the schema.")


if __name__ == "__main__":
    asyncio.run(migrate())
