"""Shared FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends

from ..reconciliation import SyncCoordinator, get_coordinator


async def get_sync_coordinator() -> SyncCoordinator:
    """Dependency returning the process-wide sync coordinator."""
    return await get_coordinator()


# Type alias for dependency injection
Coordinator = Annotated[SyncCoordinator, Depends(get_sync_coordinator)]
