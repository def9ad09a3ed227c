"""Settings, logging and database plumbing shared by the CLI commands"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from jobqueue.config.logging import setup_logging
from jobqueue.config.settings import Environment, Settings
from jobqueue.core.registries import type_registry
from jobqueue.infra.database import Database
from jobqueue.jobs.service import JobService

T = TypeVar("T")


def load_settings() -> Settings:
    """Read settings from the environment and configure logging."""
    settings = Settings()
    setup_logging(settings)
    if settings.environment == Environment.PRODUCTION and not type_registry.is_frozen():
        type_registry.freeze()
    return settings


def run_with_service(
    settings: Settings,
    operation: Callable[[JobService, Database], Awaitable[T]],
) -> T:
    """Run ``operation`` on a fresh event loop and dispose of the engine afterwards."""

    async def runner() -> T:
        database = Database(settings)
        try:
            return await operation(JobService(settings), database)
        finally:
            await database.close()

    return asyncio.run(runner())
