"""Script to initialize the database."""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.database import engine  # noqa: E402
from app.models import metadata  # noqa: E402


async def init_db(drop_existing: bool = False) -> None:
    """Create the profile tables, optionally dropping them first."""
    async with engine.begin() as conn:
        if drop_existing:
            await conn.run_sync(metadata.drop_all)
            print("✓ Existing tables dropped")

        await conn.run_sync(metadata.create_all)

    await engine.dispose()
    print("✓ Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(init_db(drop_existing="--drop" in sys.argv[1:]))
