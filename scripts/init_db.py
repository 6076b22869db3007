"""Create all tables."""

import asyncio

from funnel_brain.db.connection import engine
from funnel_brain.db.models import Base


async def init() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("[init_db] Tables created successfully.")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init())
