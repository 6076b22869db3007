"""Seed the default lead pipeline stages."""

import asyncio

from funnel_brain.db.connection import async_session, engine
from funnel_brain.pipeline import stage_store

DEFAULT_STAGES = [
    {"slug": "new_lead", "name": "New Lead", "color": "#3b82f6",
     "description": "Captured from a form, import or chatbot; not yet contacted."},
    {"slug": "contacted", "name": "Contacted", "color": "#8b5cf6",
     "description": "First outreach made by email, SMS or phone."},
    {"slug": "qualified", "name": "Qualified", "color": "#f59e0b",
     "description": "Confirmed fit for a program, donation or volunteer role."},
    {"slug": "nurturing", "name": "Nurturing", "color": "#06b6d4",
     "description": "In a follow-up sequence while the lead decides."},
    {"slug": "converted", "name": "Converted", "color": "#22c55e",
     "description": "Enrolled, donated or signed up."},
    {"slug": "lost", "name": "Lost", "color": "#ef4444",
     "description": "Opted out or went cold."},
]


async def seed() -> None:
    async with async_session() as session:
        for position, stage in enumerate(DEFAULT_STAGES):
            await stage_store.upsert_stage(
                session,
                slug=stage["slug"],
                name=stage["name"],
                position=position,
                description=stage["description"],
                color=stage["color"],
            )
            print(f"[seed] Upserted stage: {stage['slug']} (position {position})")
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed())
