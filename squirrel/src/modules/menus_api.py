from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.authorization import Principal
from squirrel.src.modules.categories_service import CategoryService
from squirrel.src.modules.menus_service import MenuService, MenuType
from squirrel.src.modules.menus_service import validate_markup as check_markup
from squirrel.src.modules.pages_service import PageService
from squirrel.src.modules.url_tokens import UrlTokenResolver
from squirrel.src.modules.wiki_auth import require_admin
from squirrel.src.modules.wiki_db import get_session

router = APIRouter(
    prefix="/api/menus",
    tags=["menus"],
)


class MenuPayload(BaseModel):
    name: str
    menu_type: int = int(MenuType.MAIN_NAVIGATION)
    markup: str = ""
    description: str | None = None
    footer_left_zone: str | None = None
    footer_right_zone: str | None = None
    display_order: int = 0
    is_enabled: bool = True


class MarkupPayload(BaseModel):
    markup: str = ""


class MenuOut(BaseModel):
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


class MenuValidationOut(BaseModel):
    is_valid: bool
    errors: list[str]
    warnings: list[str]


def menu_service(session: AsyncSession) -> MenuService:
    resolver = UrlTokenResolver(
        category_lookup=CategoryService(session).get_id_by_path,
        page_lookup=PageService(session).lookup_by_slug,
    )
    return MenuService(session, resolver)


@router.get("", response_model=list[MenuOut])
async def list_menus(session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return [MenuOut(**asdict(m)) for m in await menu_service(session).get_all()]


@router.get("/active/{menu_type}", response_model=MenuOut)
async def active_menu(menu_type: int, session: AsyncSession = Depends(get_session)):
    menu = await menu_service(session).get_active_by_type(menu_type)
    if menu is None:
        raise HTTPException(status_code=404, detail="No active menu of this type")
    return MenuOut(**asdict(menu))


@router.get("/active/{menu_type}/render")
async def render_active_menu(menu_type: int, session: AsyncSession = Depends(get_session)):
    service = menu_service(session)
    menu = await service.get_active_by_type(menu_type)
    if menu is None:
        return {"html": ""}
    return {"html": await service.render(menu.markup)}


@router.post("/validate", response_model=MenuValidationOut)
async def validate_menu_markup(payload: MarkupPayload, _auth: Principal = Depends(require_admin)):
    return MenuValidationOut(**asdict(check_markup(payload.markup)))


@router.post("/parse")
async def parse_menu_markup(
    payload: MarkupPayload,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    items = await menu_service(session).parse(payload.markup)
    return {"items": [item.to_dict() for item in items]}


@router.post("/render")
async def render_menu_markup(
    payload: MarkupPayload,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    return {"html": await menu_service(session).render(payload.markup)}


@router.post("", response_model=MenuOut, status_code=201)
async def create_menu(
    payload: MenuPayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    menu = await menu_service(session).create(**payload.model_dump(), modified_by=principal.username)
    return MenuOut(**asdict(menu))


@router.get("/{menu_id}", response_model=MenuOut)
async def get_menu(menu_id: int, session: AsyncSession = Depends(get_session), _auth: Principal = Depends(require_admin)):
    return MenuOut(**asdict(await menu_service(session).get_by_id(menu_id)))


@router.get("/{menu_id}/render")
async def render_menu(menu_id: int, session: AsyncSession = Depends(get_session)):
    return {"html": await menu_service(session).render_menu(menu_id)}


@router.put("/{menu_id}", response_model=MenuOut)
async def update_menu(
    menu_id: int,
    payload: MenuPayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    menu = await menu_service(session).update(menu_id, **payload.model_dump(), modified_by=principal.username)
    return MenuOut(**asdict(menu))


@router.post("/{menu_id}/activate", response_model=MenuOut)
async def activate_menu(
    menu_id: int,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    return MenuOut(**asdict(await menu_service(session).activate(menu_id, modified_by=principal.username)))


@router.post("/{menu_id}/deactivate", response_model=MenuOut)
async def deactivate_menu(
    menu_id: int,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_admin),
):
    return MenuOut(**asdict(await menu_service(session).deactivate(menu_id, modified_by=principal.username)))


@router.delete("/{menu_id}", status_code=204)
async def delete_menu(
    menu_id: int,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    await menu_service(session).delete(menu_id)
