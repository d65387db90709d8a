"""Standalone runner for scheduled progression jobs.

Triggered by an external scheduler; each invocation does one pass and exits.

Usage:
    python -m questlog.workers.period_runner leagues
    python -m questlog.workers.period_runner streak-warnings
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from questlog.config import get_settings
from questlog.database import close_db, init_db, session_scope
from questlog.gamification.engine import ProgressionEngine
from questlog.gamification.streak_service import send_streak_warnings
from questlog.logging_config import setup_logging
from questlog.redis_client import close_redis, get_redis, init_redis

logger = logging.getLogger(__name__)

JOBS = ("leagues", "streak-warnings")


async def finalize_leagues() -> int:
    """Finalize every league whose week has ended."""
    async with session_scope() as db:
        engine = ProgressionEngine(db, get_redis())
        results = await engine.finalize_due_leagues()
    return len(results)


async def streak_warnings() -> int:
    """Warn users whose streak ends at their local midnight."""
    async with session_scope() as db:
        return await send_streak_warnings(db, get_redis())


async def main(job: str) -> int:
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    logger.info("Starting %s job", job)
    try:
        if job == "leagues":
            count = await finalize_leagues()
        else:
            count = await streak_warnings()
    finally:
        await close_redis()
        await close_db()
    logger.info("Finished %s job: %d processed", job, count)
    return count


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="questlog.workers.period_runner")
    parser.add_argument("job", choices=JOBS)
    return parser.parse_args(argv)


if __name__ == "__main__":
    asyncio.run(main(parse_args().job))
