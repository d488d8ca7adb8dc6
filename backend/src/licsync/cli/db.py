"""Database setup commands."""

import asyncio

import click

from ..config import get_settings
from ..db import close_all_connections, create_tables


@click.group(name="db")
def cli():
    """Database commands."""
    pass


@cli.command(name="init")
def init_db():
    """Create the license-sync tables if they do not exist."""

    async def _init():
        try:
            await create_tables()
        finally:
            await close_all_connections()

    asyncio.run(_init())
    click.echo(f"Tables ready on {get_settings().database_url.split('@')[-1]}")
