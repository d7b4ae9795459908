from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from settings import settings
from squirrel.src.modules.errors import SquirrelWikiException

logger = logging.getLogger(__name__)


def db_error_detail(exc: Exception, operation: str) -> str:
    raw = str(getattr(exc, "orig", exc) or "")
    msg = raw.lower()
    if "does not exist" in msg or "no such table" in msg:
        return "Wiki tables are missing. Run database migrations (alembic upgrade head)."
    if "permission denied" in msg:
        return "Wiki database permission error."
    if "read-only" in msg or "readonly" in msg:
        return "Wiki database is read-only."
    return f"Wiki database error during {operation}."


def _error_body(error_code: str, message: str, details: str | None = None) -> dict:
    return {
        "error_code": error_code,
        "message": message,
        "details": details,
        "context": None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _operation(request: Request) -> str:
    return f"{request.method} {request.url.path}"


async def handle_wiki_exception(request: Request, exc: SquirrelWikiException) -> JSONResponse:
    if exc.should_log:
        logger.error(
            "%s on %s: %s", exc.error_code, _operation(request), exc.message, exc_info=exc
        )
    else:
        logger.warning("%s on %s: %s", exc.error_code, _operation(request), exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(include_details=settings.squirrel_debug))


async def handle_integrity_error(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity failure on %s: %s", _operation(request), getattr(exc, "orig", exc))
    return JSONResponse(
        status_code=409,
        content=_error_body("CONFLICT", "The change conflicts with existing data."),
    )


async def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database failure on %s", _operation(request), exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=_error_body("DATABASE_ERROR", db_error_detail(exc, _operation(request))),
    )


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s", _operation(request), exc_info=exc)
    details = f"{type(exc).__name__}: {exc}" if settings.squirrel_debug else None
    return JSONResponse(
        status_code=500,
        content=_error_body("INTERNAL_ERROR", "An unexpected error occurred.", details),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SquirrelWikiException, handle_wiki_exception)
    app.add_exception_handler(IntegrityError, handle_integrity_error)
    app.add_exception_handler(SQLAlchemyError, handle_database_error)
    app.add_exception_handler(Exception, handle_unexpected)
