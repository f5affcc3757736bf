"""Install (or reinstall) the change-notification triggers on an existing database.

Idempotent: replaces the trigger function and drops/recreates both triggers.

Run from repo root:
    python -m scripts.install_realtime_triggers
"""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import create_async_engine

from metering.core.config import get_settings
from metering.db.triggers import TRIGGERS, install_change_triggers

logger = structlog.get_logger(__name__)


async def main() -> None:
    engine = create_async_engine(get_settings().database_url)
    try:
        async with engine.begin() as conn:
            await install_change_triggers(conn)
    finally:
        await engine.dispose()
    logger.info("realtime_triggers_installed", tables=sorted(TRIGGERS))


if __name__ == "__main__":
    asyncio.run(main())
