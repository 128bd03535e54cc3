"""Delete execution logs past each plan's retention window.

Run daily from the backend directory (cron or a scheduled job):
    python -m app.billing.scripts.purge_executions
"""

import asyncio
import logging

from app.database import async_session_factory, engine
from app.services.usage_service import purge_expired_executions


async def main() -> None:
    async with async_session_factory() as session:
        deleted = await purge_expired_executions(session)
        await session.commit()
    await engine.dispose()

    for plan, count in sorted(deleted.items()):
        print(f"{plan}: {count} executions deleted")
    print(f"Total: {sum(deleted.values())}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main())
