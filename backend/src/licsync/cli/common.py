"""Helpers shared by CLI commands."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from ..cache import close_cache
from ..db import close_all_connections
from ..reconciliation import SyncCoordinator, close_coordinator, get_coordinator

T = TypeVar("T")


def run_with_coordinator(func: Callable[[SyncCoordinator], Awaitable[T]]) -> T:
    """Run ``func`` against the process coordinator, then close connections."""

    async def _run() -> T:
        coordinator = await get_coordinator()
        try:
            return await func(coordinator)
        finally:
            await close_coordinator()
            await close_cache()
            await close_all_connections()

    return asyncio.run(_run())
