"""Listing queries behind the public pet and donation-campaign routes."""

from __future__ import annotations

import re
from typing import Any, Optional

from .collection import Collection
from .models import PageResult
from .pagination import paginate

_CATEGORY_SEPARATORS = re.compile(r"[\s_]+")


def normalize_category(value: Any) -> str:
    """Lowercase a category and drop spaces and underscores."""
    return _CATEGORY_SEPARATORS.sub("", str(value or "")).lower().strip()


def category_pattern(value: Any) -> str:
    """Regex matching a category regardless of case, spaces and underscores.

    ``"Small Dog"`` and ``"small_dog"`` both produce a pattern that matches
    ``"smalldog"``, ``"Small Dog"`` and ``"SMALL_DOG"``.
    """
    letters = normalize_category(value)
    gap = "[ _]*"
    return "^" + gap + gap.join(re.escape(ch) for ch in letters) + gap + "$"


def available_pets_filter(
    category: Optional[str] = None, search: Optional[str] = None
) -> dict[str, Any]:
    query: dict[str, Any] = {"adopted": False}
    if category and normalize_category(category):
        query["category"] = {"$regex": category_pattern(category), "$options": "i"}
    if search and search.strip():
        query["pet_name"] = {"$regex": re.escape(search.strip()), "$options": "i"}
    return query


def list_available_pets(
    pets: Collection,
    category: Optional[str] = None,
    search: Optional[str] = None,
    limit: Any = None,
    cursor: Any = None,
) -> PageResult:
    """Page through pets that are still up for adoption."""
    return paginate(pets, available_pets_filter(category, search), limit, cursor)


def list_category_pets(
    pets: Collection,
    category: Optional[str],
    limit: Any = None,
    cursor: Any = None,
) -> PageResult:
    """Page through non-adopted pets whose category equals ``category`` ignoring case.

    Raises:
        ValueError: If ``category`` is empty.
    """
    cleaned = (category or "").strip()
    if not cleaned:
        raise ValueError("Category is required")
    query = {
        "category": {"$regex": f"^{re.escape(cleaned)}$", "$options": "i"},
        "adopted": False,
    }
    return paginate(pets, query, limit, cursor)


def list_donation_campaigns(
    donations: Collection, limit: Any = None, cursor: Any = None
) -> PageResult:
    return paginate(donations, None, limit, cursor)


def get_document(collection: Collection, doc_id: str) -> Optional[dict]:
    found = collection.find({"_id": doc_id}, limit=1)
    return found[0] if found else None
