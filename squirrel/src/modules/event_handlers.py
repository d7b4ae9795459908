from __future__ import annotations

import logging

from squirrel.src.modules.cache import CacheKeys, TTLCache, get_cache
from squirrel.src.modules.events import (
    CategoryChangedEvent,
    EventPublisher,
    FileDeletedEvent,
    FileEvent,
    FolderChangedEvent,
    MenuChangedEvent,
    PageDeletedEvent,
    PageEvent,
    TagChangedEvent,
    get_event_publisher,
)
from squirrel.src.modules.plugin_contracts import SearchPlugin
from squirrel.src.modules.plugin_loader import PluginRegistry, get_plugin_registry
from squirrel.src.modules.search_contracts import FILE_ID_PREFIX, SearchDocument, file_document

logger = logging.getLogger(__name__)


def _page_document(event: PageEvent) -> SearchDocument:
    return SearchDocument(
        id=str(event.page_id),
        title=event.title,
        slug=event.slug,
        content=event.content,
        tags=list(event.tags),
        category_id=event.category_id,
        category_name=event.category_name,
        author=event.author,
        created_on=event.created_on,
        modified_on=event.modified_on,
    )


def register_default_handlers(
    publisher: EventPublisher | None = None,
    cache: TTLCache | None = None,
    registry: PluginRegistry | None = None,
) -> EventPublisher:
    """Wire cache invalidation and search indexing onto the publisher."""
    publisher = publisher or get_event_publisher()
    cache = cache or get_cache()
    registry = registry or get_plugin_registry()

    async def invalidate_pages(event: PageEvent) -> None:
        cache.remove_by_pattern(CacheKeys.PAGE_PREFIX + "*")
        cache.remove(CacheKeys.TAGS_ALL, CacheKeys.CATEGORY_TREE)
        logger.debug("Invalidated page caches after %s for page %s", type(event).__name__, event.page_id)

    async def index_page(event: PageEvent) -> None:
        for plugin in registry.enabled_of_type(SearchPlugin):
            strategy = plugin.search_strategy
            if isinstance(event, PageDeletedEvent):
                await strategy.remove_document(str(event.page_id))
            else:
                await strategy.index_document(_page_document(event))

    async def invalidate_categories(event: CategoryChangedEvent) -> None:
        cache.remove_by_pattern(CacheKeys.CATEGORY_PREFIX + "*")
        cache.remove_by_pattern(CacheKeys.PAGE_PREFIX + "*")
        logger.debug("Invalidated category caches after %s on %s", event.change, event.category_id)

    async def invalidate_tags(event: TagChangedEvent) -> None:
        cache.remove(CacheKeys.TAGS_ALL)
        cache.remove_by_pattern(CacheKeys.PAGE_PREFIX + "*")
        logger.debug("Invalidated tag caches after %s on %s", event.change, event.tag_name)

    async def invalidate_menus(event: MenuChangedEvent) -> None:
        cache.remove_by_pattern(CacheKeys.MENU_PREFIX + "*")
        logger.debug("Invalidated menu caches after %s on %s", event.change, event.menu_name)

    async def invalidate_files(event: FileEvent) -> None:
        cache.remove(CacheKeys.file(event.file_id))
        cache.remove_by_pattern(CacheKeys.FOLDER_PREFIX + "*")

    async def index_file(event: FileEvent) -> None:
        for plugin in registry.enabled_of_type(SearchPlugin):
            strategy = plugin.search_strategy
            if isinstance(event, FileDeletedEvent):
                await strategy.remove_document(f"{FILE_ID_PREFIX}{event.file_id}")
            else:
                await strategy.index_document(
                    file_document(event.file_id, event.file_name, event.description, event.uploaded_by, event.occurred_at)
                )

    async def invalidate_folders(event: FolderChangedEvent) -> None:
        cache.remove_by_pattern(CacheKeys.FOLDER_PREFIX + "*")

    publisher.subscribe(PageEvent, invalidate_pages)
    publisher.subscribe(PageEvent, index_page)
    publisher.subscribe(CategoryChangedEvent, invalidate_categories)
    publisher.subscribe(TagChangedEvent, invalidate_tags)
    publisher.subscribe(MenuChangedEvent, invalidate_menus)
    publisher.subscribe(FileEvent, invalidate_files)
    publisher.subscribe(FileEvent, index_file)
    publisher.subscribe(FolderChangedEvent, invalidate_folders)
    return publisher
