from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.menus_service import MAIN_NAVIGATION_MENU, MenuService, MenuType
from squirrel.src.modules.pages_service import HOMEPAGE_TAG, PageService
from squirrel.src.modules.users_service import UserDto, UserService
from squirrel.src.modules.wiki_config import ConfigurationService
from squirrel.src.modules.wiki_db import Menu, Page

logger = logging.getLogger(__name__)

DEFAULT_HOME_CONTENT = """# Welcome to Squirrel Wiki

This is the home page of your new wiki. Edit it to describe what lives here.

- Browse [all pages](/Pages/AllPages)
- Look through the [tags](/Pages/AllTags)
- [Search](/Search) the wiki
"""

DEFAULT_NAVIGATION_MARKUP = """* [Home](%HOME%)
* [All Pages](%ALLPAGES%)
* [Tags](%ALLTAGS%)
* [Categories](%ALLCATEGORIES%)
* %EMBEDDED_SEARCH%
"""


async def _update_default_admin(users: UserService, config: ConfigurationService) -> None:
    username = await config.get_value("SQUIRREL_ADMIN_USERNAME")
    email = await config.get_value("SQUIRREL_ADMIN_EMAIL")
    admin = await users.get_by_username(username) or await users.get_by_email(email)
    if admin is None:
        logger.debug("Default admin user not found; environment values apply only to a new admin")
        return

    updates: dict[str, str] = {}
    if await config.is_from_environment("SQUIRREL_ADMIN_EMAIL") and admin.email != email:
        updates["email"] = email
    display_name = await config.get_value("SQUIRREL_ADMIN_DISPLAYNAME")
    if await config.is_from_environment("SQUIRREL_ADMIN_DISPLAYNAME") and admin.display_name != display_name:
        updates["display_name"] = display_name
    if updates:
        await users.update(admin.id, **updates)
    if await config.is_from_environment("SQUIRREL_ADMIN_PASSWORD"):
        await users.set_password(admin.id, await config.get_value("SQUIRREL_ADMIN_PASSWORD"))
        updates["password"] = "[from environment]"
    if updates:
        logger.warning("Updated default admin %s from environment: %s", admin.username, ", ".join(updates))


async def ensure_admin_exists(session: AsyncSession, config: ConfigurationService | None = None) -> UserDto | None:
    """Create the configured admin when no admin exists.

    When admins already exist, environment-provided email, display name and
    password are applied to the default admin instead. Returns the created
    admin, or None when nothing was created.
    """
    config = config or ConfigurationService(session)
    users = UserService(session, config=config)
    if await users.get_admins():
        env_keys = ("SQUIRREL_ADMIN_EMAIL", "SQUIRREL_ADMIN_DISPLAYNAME", "SQUIRREL_ADMIN_PASSWORD")
        if any([await config.is_from_environment(k) for k in env_keys]):
            await _update_default_admin(users, config)
        return None

    logger.warning("No admin users found. Creating default admin user...")
    admin = await users.create_local_user(
        username=await config.get_value("SQUIRREL_ADMIN_USERNAME"),
        email=await config.get_value("SQUIRREL_ADMIN_EMAIL"),
        password=await config.get_value("SQUIRREL_ADMIN_PASSWORD"),
        display_name=await config.get_value("SQUIRREL_ADMIN_DISPLAYNAME"),
        is_admin=True,
        is_editor=True,
    )
    if not await config.is_from_environment("SQUIRREL_ADMIN_PASSWORD"):
        logger.warning("Default admin '%s' uses the built-in password; change it after first login", admin.username)
    return admin


async def seed_default_content(session: AsyncSession) -> bool:
    """Seed a home page and main navigation into an empty wiki. Returns True when seeded."""
    page_count = (await session.execute(select(func.count(Page.id)))).scalar_one()
    menu_count = (await session.execute(select(func.count(Menu.id)))).scalar_one()
    if page_count or menu_count:
        logger.debug("Content already present (%d pages, %d menus); skipping seed", page_count, menu_count)
        return False

    pages = PageService(session)
    await pages.create(
        title="Home",
        content=DEFAULT_HOME_CONTENT,
        tags=[HOMEPAGE_TAG],
        slug="home",
        author="system",
    )
    menus = MenuService(session)
    await menus.create(
        name=MAIN_NAVIGATION_MENU,
        menu_type=MenuType.MAIN_NAVIGATION,
        markup=DEFAULT_NAVIGATION_MARKUP,
        description="Primary site navigation",
    )
    logger.info("Seeded default home page and navigation menu")
    return True
