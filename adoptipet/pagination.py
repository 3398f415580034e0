"""Offset-based pagination over a filtered, countable collection."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from .collection import Collection
from .config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from .models import PageRequest, PageResult

logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _parse_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else None


def parse_page_request(
    limit: Any = None,
    cursor: Any = None,
    *,
    default_limit: int = DEFAULT_PAGE_LIMIT,
    max_limit: int = MAX_PAGE_LIMIT,
) -> PageRequest:
    """Parse client paging parameters, substituting defaults for bad input.

    Args:
        limit: Requested page size; non-numeric, zero or negative values
            fall back to ``default_limit``.
        cursor: Requested offset; non-numeric values fall back to 0 and
            negative values are raised to 0.
        default_limit: Page size used when ``limit`` is unusable.
        max_limit: Hard ceiling on the page size.

    Returns:
        A normalized ``PageRequest``.
    """
    parsed_limit = _parse_int(limit)
    if not parsed_limit or parsed_limit < 0:
        parsed_limit = default_limit
    parsed_limit = min(parsed_limit, max_limit)

    parsed_cursor = _parse_int(cursor)
    if parsed_cursor is None:
        parsed_cursor = 0
    return PageRequest(limit=parsed_limit, cursor=max(0, parsed_cursor))


def clamp_cursor(cursor: int, total: int, limit: int) -> int:
    """Snap an out-of-range cursor back onto the last page."""
    if cursor >= total:
        return max(total - limit, 0)
    return cursor


def paginate(
    collection: Collection,
    query: Optional[dict[str, Any]] = None,
    limit: Any = None,
    cursor: Any = None,
    projection: Optional[dict[str, Any]] = None,
    sort: Any = None,
) -> PageResult:
    """Return one page of ``collection`` documents matching ``query``.

    The count and the fetch are separate reads, so under concurrent writes
    ``total`` can disagree with the returned items.
    """
    page = parse_page_request(limit, cursor)
    total = collection.count(query)
    effective = clamp_cursor(page.cursor, total, page.limit)
    if effective != page.cursor:
        logger.debug(
            f"Clamped cursor {page.cursor} to {effective} for {collection.name} (total={total})"
        )

    items = collection.find(
        query,
        projection=projection,
        sort=sort,
        skip=effective,
        limit=page.limit,
    )

    next_id = effective + page.limit
    previous_id = effective - page.limit
    return PageResult(
        items=items,
        next_id=next_id if next_id < total else None,
        previous_id=previous_id if previous_id >= 0 else None,
        total=total,
    )
