from __future__ import annotations

from dataclasses import dataclass
from typing import Any

VISIBILITY_INHERIT = 0
VISIBILITY_PUBLIC = 1
VISIBILITY_PRIVATE = 2

VISIBILITY_NAMES = {
    VISIBILITY_INHERIT: "Inherit",
    VISIBILITY_PUBLIC: "Public",
    VISIBILITY_PRIVATE: "Private",
}


def parse_visibility(value: Any) -> int:
    if value is None or value == "":
        return VISIBILITY_INHERIT
    if isinstance(value, int):
        if value not in VISIBILITY_NAMES:
            raise ValueError(f"Unknown visibility {value}")
        return value
    raw = str(value).strip().lower()
    for number, name in VISIBILITY_NAMES.items():
        if raw == name.lower() or raw == str(number):
            return number
    raise ValueError(f"Unknown visibility '{value}'")


@dataclass(frozen=True)
class Principal:
    """The caller as seen by the authorization rules; anonymous when username is None."""

    username: str | None = None
    user_id: str | None = None
    is_admin: bool = False
    is_editor: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.username is not None


ANONYMOUS = Principal()


def _can_view(visibility: int, is_deleted: bool, principal: Principal, allow_anonymous_reading: bool) -> bool:
    if is_deleted:
        return False
    if visibility == VISIBILITY_PUBLIC:
        return True
    if visibility == VISIBILITY_PRIVATE:
        return principal.is_authenticated
    return allow_anonymous_reading or principal.is_authenticated


def can_view_page(page: Any, principal: Principal, allow_anonymous_reading: bool) -> bool:
    return _can_view(page.visibility, page.is_deleted, principal, allow_anonymous_reading)


def can_view_file(file: Any, principal: Principal, allow_anonymous_reading: bool) -> bool:
    return _can_view(file.visibility, getattr(file, "is_deleted", False), principal, allow_anonymous_reading)


def can_edit_page(page: Any, principal: Principal) -> bool:
    if not principal.is_authenticated or page.is_deleted:
        return False
    if page.is_locked:
        return principal.is_admin
    return principal.is_admin or principal.is_editor


def can_delete_page(page: Any, principal: Principal) -> bool:
    return can_edit_page(page, principal)


def can_edit_file(file: Any, principal: Principal) -> bool:
    if not principal.is_authenticated or getattr(file, "is_deleted", False):
        return False
    return principal.is_admin or principal.is_editor
