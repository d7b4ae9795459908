from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from squirrel.src.modules.authorization import Principal
from squirrel.src.modules.categories_service import DELETE_MOVE_TO_PARENT, CategoryService
from squirrel.src.modules.wiki_auth import require_admin, require_editor
from squirrel.src.modules.wiki_db import get_session

router = APIRouter(
    prefix="/api/categories",
    tags=["categories"],
)


class CategoryPayload(BaseModel):
    name: str
    description: str | None = None
    parent_id: int | None = None
    display_order: int = 0


class CategoryMovePayload(BaseModel):
    new_parent_id: int | None = None


class CategoryReorderPayload(BaseModel):
    display_order: int


class CategoryOut(BaseModel):
    id: int
    name: str
    slug: str
    description: str | None
    parent_id: int | None
    parent_name: str | None
    page_count: int
    level: int
    full_path: str
    display_order: int
    created_by: str
    created_on: datetime
    modified_by: str | None
    modified_on: datetime | None


class CategoryTreeOut(BaseModel):
    id: int
    name: str
    slug: str
    description: str | None
    display_order: int
    page_count: int
    children: list["CategoryTreeOut"] = []


@router.get("", response_model=list[CategoryOut])
async def list_categories(session: AsyncSession = Depends(get_session)):
    return [CategoryOut(**asdict(c)) for c in await CategoryService(session).get_all()]


@router.get("/tree", response_model=list[CategoryTreeOut])
async def category_tree(session: AsyncSession = Depends(get_session)):
    return [CategoryTreeOut(**asdict(node)) for node in await CategoryService(session).get_tree()]


@router.get("/by-path", response_model=CategoryOut)
async def category_by_path(path: str = Query(..., min_length=1), session: AsyncSession = Depends(get_session)):
    category = await CategoryService(session).get_by_path(path)
    if category is None:
        raise HTTPException(status_code=404, detail="Category not found")
    return CategoryOut(**asdict(category))


@router.post("", response_model=CategoryOut, status_code=201)
async def create_category(
    payload: CategoryPayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_editor),
):
    category = await CategoryService(session).create(
        name=payload.name,
        description=payload.description,
        parent_id=payload.parent_id,
        display_order=payload.display_order,
        created_by=principal.username,
    )
    return CategoryOut(**asdict(category))


@router.get("/{category_id}", response_model=CategoryOut)
async def get_category(category_id: int, session: AsyncSession = Depends(get_session)):
    return CategoryOut(**asdict(await CategoryService(session).get_by_id(category_id)))


@router.get("/{category_id}/children", response_model=list[CategoryOut])
async def category_children(category_id: int, session: AsyncSession = Depends(get_session)):
    return [CategoryOut(**asdict(c)) for c in await CategoryService(session).get_children(category_id)]


@router.get("/{category_id}/path", response_model=list[CategoryOut])
async def category_path(category_id: int, session: AsyncSession = Depends(get_session)):
    return [CategoryOut(**asdict(c)) for c in await CategoryService(session).get_path(category_id)]


@router.get("/{category_id}/page-count")
async def category_page_count(
    category_id: int,
    include_subcategories: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
):
    service = CategoryService(session)
    await service.get_by_id(category_id)
    count = await service.get_page_count(category_id, include_subcategories)
    return {"category_id": category_id, "page_count": count, "include_subcategories": include_subcategories}


@router.put("/{category_id}", response_model=CategoryOut)
async def update_category(
    category_id: int,
    payload: CategoryPayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_editor),
):
    service = CategoryService(session)
    current = await service.get_by_id(category_id)
    category = await service.update(
        category_id,
        name=payload.name,
        description=payload.description,
        parent_id=payload.parent_id,
        display_order=payload.display_order,
        modified_by=principal.username,
        move=payload.parent_id != current.parent_id,
    )
    return CategoryOut(**asdict(category))


@router.post("/{category_id}/move", response_model=CategoryOut)
async def move_category(
    category_id: int,
    payload: CategoryMovePayload,
    session: AsyncSession = Depends(get_session),
    principal: Principal = Depends(require_editor),
):
    category = await CategoryService(session).move(category_id, payload.new_parent_id, modified_by=principal.username)
    return CategoryOut(**asdict(category))


@router.post("/{category_id}/reorder", response_model=CategoryOut)
async def reorder_category(
    category_id: int,
    payload: CategoryReorderPayload,
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_editor),
):
    return CategoryOut(**asdict(await CategoryService(session).reorder(category_id, payload.display_order)))


@router.delete("/{category_id}", status_code=204)
async def delete_category(
    category_id: int,
    action: str = Query(default=DELETE_MOVE_TO_PARENT),
    target_category_id: int | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
    _auth: Principal = Depends(require_admin),
):
    await CategoryService(session).delete(category_id, action=action, target_category_id=target_category_id)
