from __future__ import annotations

import re
from typing import Awaitable, Callable

from squirrel.src.modules.errors import BusinessRuleException

SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
MAX_UNIQUE_ATTEMPTS = 1000


def generate(text: str) -> str:
    slug = (text or "").strip().lower()
    if not slug:
        return ""
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def is_valid(slug: str) -> bool:
    return bool(slug) and bool(SLUG_RE.match(slug))


async def generate_unique(text: str, exists: Callable[[str], Awaitable[bool]]) -> str:
    base = generate(text) or "page"
    if not await exists(base):
        return base
    for counter in range(1, MAX_UNIQUE_ATTEMPTS + 1):
        candidate = f"{base}-{counter}"
        if not await exists(candidate):
            return candidate
    raise BusinessRuleException(
        f"Unable to generate a unique slug for '{text}' after {MAX_UNIQUE_ATTEMPTS} attempts.",
        "SLUG_GENERATION_FAILED",
    ).with_context("BaseSlug", base)
