from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from .config import DEFAULT_PAGE_LIMIT, DEFAULT_RECOMMENDATION_LIMIT

Document = dict[str, Any]


@dataclass(frozen=True)
class PageRequest:
    limit: int = DEFAULT_PAGE_LIMIT
    cursor: int = 0


@dataclass(frozen=True)
class PageResult:
    items: list[Document] = field(default_factory=list)
    next_id: Optional[int] = None
    previous_id: Optional[int] = None
    total: int = 0

    def to_dict(self, items_key: str = "items") -> dict[str, Any]:
        """Return the wire shape used by the listing routes.

        Args:
            items_key: Envelope key for the page items (``pets``, ``donations``).

        Returns:
            JSON-ready mapping with ``nextId``/``previousId`` cursor fields.
        """
        return {
            items_key: list(self.items),
            "nextId": self.next_id,
            "previousId": self.previous_id,
            "total": self.total,
        }


@dataclass(frozen=True)
class RecommendationRequest:
    categories: frozenset[str] = field(default_factory=frozenset)
    location_hint: str = ""
    limit: int = DEFAULT_RECOMMENDATION_LIMIT

    def __post_init__(self) -> None:
        """Normalize categories to a frozenset of non-empty strings."""
        cleaned = frozenset(
            str(item).strip() for item in (self.categories or ()) if str(item).strip()
        )
        object.__setattr__(self, "categories", cleaned)
        object.__setattr__(self, "location_hint", str(self.location_hint or "").strip())
