"""
Apply the Serenata schema (idempotent).
Run: python -m scripts.init_db
"""

import asyncio
import os
import sys
from pathlib import Path

import asyncpg
from dotenv import load_dotenv

load_dotenv()

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "serenata" / "db" / "schema.sql"


async def init_db():
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL not set in .env")
        sys.exit(1)

    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        print(f"Schema applied from {SCHEMA_PATH}")
    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(init_db())
