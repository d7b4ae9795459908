from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Awaitable, Callable

from squirrel.src.modules.wiki_db import utc_now

logger = logging.getLogger(__name__)


@dataclass(kw_only=True)
class DomainEvent:
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(kw_only=True)
class PageEvent(DomainEvent):
    page_id: int
    title: str
    slug: str = ""
    category_id: int | None = None
    category_name: str | None = None
    tags: list[str] = field(default_factory=list)
    content: str = ""
    author: str = ""
    created_on: datetime | None = None
    modified_on: datetime | None = None


@dataclass(kw_only=True)
class PageCreatedEvent(PageEvent):
    pass


@dataclass(kw_only=True)
class PageUpdatedEvent(PageEvent):
    previous_title: str | None = None


@dataclass(kw_only=True)
class PageDeletedEvent(PageEvent):
    pass


@dataclass(kw_only=True)
class CategoryChangedEvent(DomainEvent):
    category_id: int
    change: str
    parent_category_id: int | None = None


@dataclass(kw_only=True)
class TagChangedEvent(DomainEvent):
    tag_name: str
    change: str


@dataclass(kw_only=True)
class MenuChangedEvent(DomainEvent):
    menu_id: int
    menu_name: str
    change: str


@dataclass(kw_only=True)
class FileEvent(DomainEvent):
    file_id: str
    file_name: str
    folder_id: int | None = None
    content_type: str = ""
    description: str | None = None
    uploaded_by: str = ""
    file_size: int = 0


@dataclass(kw_only=True)
class FileUploadedEvent(FileEvent):
    file_hash: str = ""


@dataclass(kw_only=True)
class FileUpdatedEvent(FileEvent):
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass(kw_only=True)
class FileMovedEvent(FileEvent):
    old_folder_id: int | None = None


@dataclass(kw_only=True)
class FileDeletedEvent(FileEvent):
    pass


@dataclass(kw_only=True)
class FolderChangedEvent(DomainEvent):
    folder_id: int
    change: str
    parent_folder_id: int | None = None


EventHandler = Callable[[Any], Awaitable[None]]


class EventPublisher:
    """In-process dispatcher; handlers run one after another in subscription order."""

    def __init__(self) -> None:
        self._subscriptions: list[tuple[type, EventHandler]] = []

    def subscribe(self, event_type: type, handler: EventHandler) -> None:
        self._subscriptions.append((event_type, handler))

    def handlers_for(self, event: DomainEvent) -> list[EventHandler]:
        return [handler for event_type, handler in self._subscriptions if isinstance(event, event_type)]

    async def publish(self, event: DomainEvent) -> None:
        handlers = self.handlers_for(event)
        name = type(event).__name__
        if not handlers:
            logger.debug("No handlers registered for %s", name)
            return
        logger.debug("Publishing %s (%s) to %d handler(s)", name, event.event_id, len(handlers))
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Event handler %s failed for %s",
                    getattr(handler, "__qualname__", repr(handler)),
                    name,
                )

    def clear(self) -> None:
        self._subscriptions.clear()


@lru_cache
def get_event_publisher() -> EventPublisher:
    return EventPublisher()
