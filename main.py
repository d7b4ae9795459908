import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from settings import settings
from squirrel.src.modules import (
    admin_api,
    auth_api,
    categories_api,
    files_api,
    menus_api,
    search_api,
    tags_api,
    wiki_api,
)
from squirrel.src.modules.admin_bootstrap import ensure_admin_exists, seed_default_content
from squirrel.src.modules.error_handlers import register_exception_handlers
from squirrel.src.modules.event_handlers import register_default_handlers
from squirrel.src.modules.logging_helpers import configure_logging
from squirrel.src.modules.plugin_service import PluginService
from squirrel.src.modules.wiki_auth import purge_expired_sessions
from squirrel.src.modules.wiki_config import ConfigurationService, strict_startup, validate_wiki_environment
from squirrel.src.modules.wiki_db import AsyncSessionLocal, create_all

configure_logging(settings.log_level, settings.log_file)
logger = logging.getLogger("squirrel")


def check_environment() -> None:
    result = validate_wiki_environment()
    for warning in result.warnings:
        logger.warning("Wiki config: %s", warning)
    for error in result.errors:
        logger.error("Wiki config: %s", error)
    if result.errors and strict_startup():
        raise RuntimeError("Invalid wiki configuration: " + "; ".join(result.errors))


async def startup() -> None:
    check_environment()
    register_default_handlers()
    # the settings table may not exist yet, so only environment and defaults apply here
    if await ConfigurationService().get_value("SQUIRREL_DATABASE_AUTO_MIGRATE"):
        await create_all()
    async with AsyncSessionLocal() as session:
        config = ConfigurationService(session)
        await config.apply_cache_settings()
        await ensure_admin_exists(session, config)
        if await config.get_value("SQUIRREL_DATABASE_SEED_DATA"):
            await seed_default_content(session)
        await PluginService(session).initialize(settings.plugin_modules)
    logger.info("Squirrel Wiki started")


async def shutdown() -> None:
    async with AsyncSessionLocal() as session:
        await PluginService(session).shutdown_all()
    purge_expired_sessions()
    logger.info("Squirrel Wiki stopped")


# ---------- Lifespan (startup/shutdown) ----------
@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup()
    yield
    await shutdown()


app = FastAPI(title="Squirrel Wiki", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

for module in (auth_api, wiki_api, categories_api, tags_api, menus_api, files_api, search_api, admin_api):
    app.include_router(module.router)
app.include_router(files_api.folders_router)


@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.squirrel_debug)
