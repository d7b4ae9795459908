"""Menus: markup parsing, navbar rendering and the one-active-menu-per-type rule.

Markup is one item per line. Leading ``*`` characters give the nesting
level, ``[Text](url)`` is a link and ``[Text]`` alone is a header whose
children render as a dropdown::

    * [Home](%HOME%)
    * [Docs]
    ** [Install](installation)
    * [Search](%EMBEDDED_SEARCH%)
"""
from __future__ import annotations

import html
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.cache import CacheKeys, TTLCache, get_cache
from squirrel.src.modules.errors import BusinessRuleException, EntityNotFoundException, ValidationException
from squirrel.src.modules.events import EventPublisher, MenuChangedEvent, get_event_publisher
from squirrel.src.modules.url_tokens import STANDARD_TOKENS, UrlTokenResolver
from squirrel.src.modules.wiki_db import Menu, utc_now

logger = logging.getLogger(__name__)

MAIN_NAVIGATION_MENU = "main-navigation"
EMBEDDED_SEARCH_TOKEN = "%EMBEDDED_SEARCH%"
MAX_MARKUP_SIZE = 10 * 1024

_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_HEADER_RE = re.compile(r"\[([^\]]+)\]")


class MenuType(IntEnum):
    MAIN_NAVIGATION = 1
    FOOTER = 2
    SIDEBAR = 3


@dataclass
class MenuItem:
    text: str
    url: str | None
    level: int
    children: list["MenuItem"] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "url": self.url,
            "level": self.level,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass
class MenuValidationResult:
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class MenuDto:
    id: int
    name: str
    menu_type: int
    description: str | None
    markup: str
    footer_left_zone: str | None
    footer_right_zone: str | None
    display_order: int
    is_enabled: bool
    modified_by: str
    modified_on: datetime


def _menu_dto(menu: Menu) -> MenuDto:
    return MenuDto(
        id=menu.id,
        name=menu.name,
        menu_type=menu.menu_type,
        description=menu.description,
        markup=menu.markup,
        footer_left_zone=menu.footer_left_zone,
        footer_right_zone=menu.footer_right_zone,
        display_order=menu.display_order,
        is_enabled=menu.is_enabled,
        modified_by=menu.modified_by,
        modified_on=menu.modified_on,
    )


def _leading_stars(line: str) -> int:
    count = 0
    while count < len(line) and line[count] == "*":
        count += 1
    return count


def _text_and_url(content: str) -> tuple[str | None, str | None]:
    link = _LINK_RE.search(content)
    if link:
        return link.group(1), link.group(2).strip()
    header = _HEADER_RE.search(content)
    if header:
        return header.group(1), None
    return None, None


def parse_markup(markup: str | None) -> list[MenuItem]:
    items: list[MenuItem] = []
    stack: list[MenuItem] = []
    for raw_line in (markup or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        level = _leading_stars(line)
        if level == 0:
            continue
        text, url = _text_and_url(line[level:].strip())
        if text is None:
            continue
        item = MenuItem(text=text, url=url, level=level)
        while stack and stack[-1].level >= level:
            stack.pop()
        (stack[-1].children if stack else items).append(item)
        stack.append(item)
    return items


def _e(value: str) -> str:
    return html.escape(value, quote=True)


def render_navbar(items: list[MenuItem]) -> str:
    lines: list[str] = []
    for item in items:
        if item.url is not None and item.url.upper() == EMBEDDED_SEARCH_TOKEN:
            lines.append('<li class="nav-item">')
            lines.append('    <form action="/Search" method="get" class="d-flex ms-2">')
            lines.append(
                '        <input type="text" name="query" class="form-control form-control-sm me-2" '
                f'placeholder="{_e(item.text)}" aria-label="Search">'
            )
            lines.append('        <button class="btn btn-outline-secondary btn-sm" type="submit">Search</button>')
            lines.append("    </form>")
            lines.append("</li>")
        elif item.url is None and item.children:
            dropdown_id = f"dropdown-{uuid.uuid4().hex}"
            lines.append('<li class="nav-item dropdown">')
            lines.append(
                f'    <a class="nav-link dropdown-toggle" href="#" id="{dropdown_id}" role="button" '
                'data-bs-toggle="dropdown" aria-expanded="false">'
            )
            lines.append(f"        {_e(item.text)}")
            lines.append("    </a>")
            lines.append(f'    <ul class="dropdown-menu" aria-labelledby="{dropdown_id}">')
            for child in item.children:
                if child.url is not None:
                    lines.append(
                        f'        <li><a class="dropdown-item" href="{_e(child.url)}">{_e(child.text)}</a></li>'
                    )
            lines.append("    </ul>")
            lines.append("</li>")
        elif item.url is not None:
            lines.append('<li class="nav-item">')
            lines.append(f'    <a class="nav-link" href="{_e(item.url)}">{_e(item.text)}</a>')
            lines.append("</li>")
    return "\n".join(lines)


def validate_markup(markup: str | None) -> MenuValidationResult:
    result = MenuValidationResult()
    if not markup or not markup.strip():
        result.warnings.append("Menu markup is empty.")
        return result
    parse_markup(markup)
    if len(markup.encode("utf-8")) > MAX_MARKUP_SIZE:
        result.warnings.append("Menu markup is very large (>10KB). Consider simplifying.")
    for token in list(STANDARD_TOKENS) + [EMBEDDED_SEARCH_TOKEN]:
        if token.lower() in markup.lower() and token not in markup:
            result.warnings.append(
                f"Token '{token}' has incorrect casing. Tokens are case-insensitive but use uppercase for consistency."
            )
    return result


class MenuService:
    def __init__(
        self,
        session: AsyncSession,
        resolver: UrlTokenResolver | None = None,
        cache: TTLCache | None = None,
        publisher: EventPublisher | None = None,
    ):
        self.session = session
        self.resolver = resolver or UrlTokenResolver()
        self.cache = cache or get_cache()
        self.publisher = publisher or get_event_publisher()

    async def _get(self, menu_id: int) -> Menu:
        menu = await self.session.get(Menu, menu_id)
        if menu is None:
            raise EntityNotFoundException("Menu", menu_id)
        return menu

    async def _has_active(self, menu_type: int, exclude_id: int | None = None) -> bool:
        stmt = select(Menu.id).where(Menu.menu_type == menu_type, Menu.is_enabled.is_(True))
        if exclude_id is not None:
            stmt = stmt.where(Menu.id != exclude_id)
        return (await self.session.execute(stmt)).first() is not None

    async def _ensure_name_free(self, name: str, exclude_id: int | None = None) -> None:
        stmt = select(Menu.id).where(Menu.name == name)
        if exclude_id is not None:
            stmt = stmt.where(Menu.id != exclude_id)
        if (await self.session.execute(stmt)).first() is not None:
            raise BusinessRuleException(f"A menu named '{name}' already exists.", "MENU_NAME_EXISTS")

    @staticmethod
    def _check_type(menu_type: int) -> int:
        try:
            return int(MenuType(int(menu_type)))
        except ValueError as exc:
            raise ValidationException(f"Unknown menu type '{menu_type}'", field="menu_type") from exc

    async def get_by_id(self, menu_id: int) -> MenuDto:
        return _menu_dto(await self._get(menu_id))

    async def get_all(self) -> list[MenuDto]:
        rows = await self.session.execute(select(Menu).order_by(Menu.menu_type, Menu.display_order, Menu.name))
        return [_menu_dto(m) for m in rows.scalars().all()]

    async def get_by_name(self, name: str) -> MenuDto | None:
        async def load() -> MenuDto | None:
            rows = await self.session.execute(select(Menu).where(Menu.name == name))
            menu = rows.scalars().first()
            return _menu_dto(menu) if menu else None

        return await self.cache.get_or_create(CacheKeys.menu_by_name(name), load)

    async def get_active_by_type(self, menu_type: int) -> MenuDto | None:
        async def load() -> MenuDto | None:
            rows = await self.session.execute(
                select(Menu)
                .where(Menu.menu_type == int(menu_type), Menu.is_enabled.is_(True))
                .order_by(Menu.display_order)
            )
            menu = rows.scalars().first()
            return _menu_dto(menu) if menu else None

        return await self.cache.get_or_create(CacheKeys.menu_by_type(int(menu_type)), load)

    async def create(
        self,
        name: str,
        menu_type: int = MenuType.MAIN_NAVIGATION,
        markup: str = "",
        description: str | None = None,
        footer_left_zone: str | None = None,
        footer_right_zone: str | None = None,
        display_order: int = 0,
        is_enabled: bool = True,
        modified_by: str = "system",
    ) -> MenuDto:
        name = (name or "").strip()
        if not name:
            raise ValidationException("Menu name is required", field="name")
        menu_type = self._check_type(menu_type)
        await self._ensure_name_free(name)
        if is_enabled and await self._has_active(menu_type):
            logger.info("Another menu of type %s is active; creating '%s' as inactive", menu_type, name)
            is_enabled = False
        menu = Menu(
            name=name,
            menu_type=menu_type,
            markup=markup or "",
            description=description,
            footer_left_zone=footer_left_zone,
            footer_right_zone=footer_right_zone,
            display_order=display_order,
            is_enabled=is_enabled,
            modified_by=modified_by,
            modified_on=utc_now(),
        )
        self.session.add(menu)
        await self.session.commit()
        logger.info("Created menu %s (type %s, id %s, active %s)", menu.name, menu.menu_type, menu.id, menu.is_enabled)
        await self.publisher.publish(MenuChangedEvent(menu_id=menu.id, menu_name=menu.name, change="Created"))
        return _menu_dto(menu)

    async def update(
        self,
        menu_id: int,
        name: str,
        menu_type: int,
        markup: str,
        description: str | None = None,
        footer_left_zone: str | None = None,
        footer_right_zone: str | None = None,
        display_order: int = 0,
        is_enabled: bool = True,
        modified_by: str = "system",
    ) -> MenuDto:
        menu = await self._get(menu_id)
        name = (name or "").strip()
        if not name:
            raise ValidationException("Menu name is required", field="name")
        menu_type = self._check_type(menu_type)
        await self._ensure_name_free(name, exclude_id=menu_id)
        if is_enabled and await self._has_active(menu_type, exclude_id=menu_id):
            logger.info("Another menu of type %s is active; keeping '%s' inactive", menu_type, name)
            is_enabled = False
        old_name = menu.name
        menu.name = name
        menu.menu_type = menu_type
        menu.markup = markup or ""
        menu.description = description
        menu.footer_left_zone = footer_left_zone
        menu.footer_right_zone = footer_right_zone
        menu.display_order = display_order
        menu.is_enabled = is_enabled
        menu.modified_by = modified_by
        menu.modified_on = utc_now()
        await self.session.commit()
        await self.publisher.publish(MenuChangedEvent(menu_id=menu.id, menu_name=old_name, change="Updated"))
        return _menu_dto(menu)

    async def delete(self, menu_id: int) -> None:
        menu = await self._get(menu_id)
        name = menu.name
        await self.session.delete(menu)
        await self.session.commit()
        logger.info("Deleted menu %s (%s)", name, menu_id)
        await self.publisher.publish(MenuChangedEvent(menu_id=menu_id, menu_name=name, change="Deleted"))

    async def activate(self, menu_id: int, modified_by: str = "system") -> MenuDto:
        menu = await self._get(menu_id)
        rows = await self.session.execute(
            select(Menu).where(Menu.menu_type == menu.menu_type, Menu.is_enabled.is_(True), Menu.id != menu_id)
        )
        now = utc_now()
        for other in rows.scalars().all():
            other.is_enabled = False
            other.modified_by = modified_by
            other.modified_on = now
            logger.info("Auto-deactivated menu %s (%s) to activate %s", other.name, other.id, menu.name)
        menu.is_enabled = True
        menu.modified_by = modified_by
        menu.modified_on = now
        await self.session.commit()
        await self.publisher.publish(MenuChangedEvent(menu_id=menu.id, menu_name=menu.name, change="Activated"))
        return _menu_dto(menu)

    async def deactivate(self, menu_id: int, modified_by: str = "system") -> MenuDto:
        menu = await self._get(menu_id)
        menu.is_enabled = False
        menu.modified_by = modified_by
        menu.modified_on = utc_now()
        await self.session.commit()
        await self.publisher.publish(MenuChangedEvent(menu_id=menu.id, menu_name=menu.name, change="Deactivated"))
        return _menu_dto(menu)

    async def _resolve_items(self, items: list[MenuItem]) -> None:
        for item in items:
            if item.url is not None:
                item.url = await self.resolver.resolve(item.url) or item.url
            await self._resolve_items(item.children)

    async def parse(self, markup: str | None, resolve: bool = True) -> list[MenuItem]:
        items = parse_markup(markup)
        if resolve:
            await self._resolve_items(items)
        return items

    async def render(self, markup: str | None) -> str:
        return render_navbar(await self.parse(markup))

    async def render_menu(self, menu_id: int) -> str:
        return await self.render((await self._get(menu_id)).markup)

    def validate(self, markup: str | None) -> MenuValidationResult:
        return validate_markup(markup)
