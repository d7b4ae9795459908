#!/usr/bin/env python
"""Rebuild the search index from the live pages in the database."""
import asyncio
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from settings import settings
from squirrel.src.modules.logging_helpers import configure_logging
from squirrel.src.modules.plugin_service import PluginService
from squirrel.src.modules.search_service import SearchService
from squirrel.src.modules.wiki_db import AsyncSessionLocal


async def rebuild() -> int:
    async with AsyncSessionLocal() as session:
        plugins = PluginService(session)
        await plugins.initialize(settings.plugin_modules)
        try:
            return await SearchService(session).rebuild_index()
        finally:
            await plugins.shutdown_all()


if __name__ == "__main__":
    configure_logging(settings.log_level)
    count = asyncio.run(rebuild())
    print(f"indexed {count} page(s)")
