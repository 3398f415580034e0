"""Pet recommendations for a set of categories and a district.

Two modes share the same filtering base:

- basic: exact location substring match, newest listings first.
- advanced: listings without a location are kept, and results are ranked by
  ``locationScore + freshnessScore`` where freshness decays one point per day
  since listing (it goes negative after ten days; it is not floored).

The lister's profile is joined through an allow-list of public fields, so
credentials and contact data never leave through this path.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .collection import Collection
from .config import (
    DEFAULT_RECOMMENDATION_LIMIT,
    DEFAULT_USERS_COLLECTION,
    FRESHNESS_BASE_SCORE,
    LOCATION_MATCH_SCORE,
    LOCATION_MISS_SCORE,
    MAX_RECOMMENDATION_LIMIT,
    MS_PER_DAY,
    PRIVATE_LISTER_FIELDS,
    PUBLIC_LISTER_FIELDS,
    SCORE_FIELDS,
)
from .models import RecommendationRequest
from .pagination import parse_page_request

logger = logging.getLogger(__name__)

LISTER_KEY_FIELD = "_lister_id"


class RecommendationError(RuntimeError):
    """Raised when the underlying store fails while building recommendations."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Failed to fetch recommendations: {message}")
        self.message = message


def parse_categories(value: Any) -> frozenset[str]:
    """Accept a single category, a comma-separated string, or an iterable."""
    if value is None:
        return frozenset()
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    else:
        items = value
    return frozenset(str(item).strip() for item in items if str(item).strip())


def build_request(
    categories: Any,
    location_hint: Optional[str],
    limit: Any = None,
) -> RecommendationRequest:
    page = parse_page_request(
        limit,
        default_limit=DEFAULT_RECOMMENDATION_LIMIT,
        max_limit=MAX_RECOMMENDATION_LIMIT,
    )
    return RecommendationRequest(
        categories=parse_categories(categories),
        location_hint=location_hint or "",
        limit=page.limit,
    )


def _location_pattern(location_hint: str) -> str:
    return re.escape(location_hint)


def _lister_join(users_collection: str) -> list[dict[str, Any]]:
    return [
        {"$addFields": {LISTER_KEY_FIELD: {"$ifNull": ["$added_by._id", "$added_by"]}}},
        {
            "$lookup": {
                "from": users_collection,
                "localField": LISTER_KEY_FIELD,
                "foreignField": "_id",
                "as": "added_by",
                "pipeline": [{"$project": {field: 1 for field in PUBLIC_LISTER_FIELDS}}],
            }
        },
        {"$unwind": {"path": "$added_by", "preserveNullAndEmptyArrays": True}},
    ]


def _cleanup_projection(*extra: str) -> dict[str, int]:
    fields = [LISTER_KEY_FIELD, *extra]
    fields.extend(f"added_by.{name}" for name in PRIVATE_LISTER_FIELDS)
    return {field: 0 for field in fields}


def build_basic_pipeline(
    request: RecommendationRequest,
    users_collection: str = DEFAULT_USERS_COLLECTION,
) -> list[dict[str, Any]]:
    """Return the aggregation pipeline for recency-ordered recommendations."""
    match = {
        "category": {"$in": sorted(request.categories)},
        "location": {"$regex": _location_pattern(request.location_hint), "$options": "i"},
        "adopted": False,
    }
    return [
        {"$match": match},
        *_lister_join(users_collection),
        {"$project": _cleanup_projection()},
        {"$sort": {"created_at": -1}},
        {"$limit": request.limit},
    ]


def build_advanced_pipeline(
    request: RecommendationRequest,
    users_collection: str = DEFAULT_USERS_COLLECTION,
    now: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """Return the aggregation pipeline for score-ranked recommendations.

    Args:
        request: Normalized recommendation request.
        users_collection: Collection holding lister profiles.
        now: Reference time for freshness decay; defaults to the current UTC time.

    Returns:
        Pipeline stages ready for ``Collection.aggregate``.
    """
    reference = now or datetime.now(timezone.utc)
    pattern = _location_pattern(request.location_hint)
    match = {
        "category": {"$in": sorted(request.categories)},
        "adopted": False,
        "$or": [
            {"location": {"$regex": pattern, "$options": "i"}},
            {"location": {"$exists": False}},
        ],
    }
    scores = {
        "locationScore": {
            "$cond": [
                {"$regexMatch": {"input": "$location", "regex": pattern, "options": "i"}},
                LOCATION_MATCH_SCORE,
                LOCATION_MISS_SCORE,
            ]
        },
        "freshnessScore": {
            "$subtract": [
                FRESHNESS_BASE_SCORE,
                {"$divide": [{"$subtract": [reference, "$created_at"]}, MS_PER_DAY]},
            ]
        },
    }
    return [
        {"$match": match},
        *_lister_join(users_collection),
        {"$addFields": scores},
        {"$addFields": {"totalScore": {"$add": ["$locationScore", "$freshnessScore"]}}},
        {"$sort": {"totalScore": -1, "created_at": -1}},
        {"$limit": request.limit},
        {"$project": _cleanup_projection(*SCORE_FIELDS)},
    ]


def _run(collection: Collection, pipeline: list[dict[str, Any]], mode: str) -> list[dict]:
    try:
        return collection.aggregate(pipeline)
    except Exception as exc:
        logger.exception(f"Error fetching {mode} pet recommendations.")
        raise RecommendationError(str(exc)) from exc


def recommend(
    collection: Collection,
    categories: Any,
    location_hint: Optional[str],
    limit: Any = DEFAULT_RECOMMENDATION_LIMIT,
    *,
    users_collection: str = DEFAULT_USERS_COLLECTION,
) -> list[dict]:
    """Return available pets in ``categories`` near ``location_hint``, newest first."""
    request = build_request(categories, location_hint, limit)
    return _run(collection, build_basic_pipeline(request, users_collection), "basic")


def recommend_advanced(
    collection: Collection,
    categories: Any,
    location_hint: Optional[str],
    limit: Any = DEFAULT_RECOMMENDATION_LIMIT,
    *,
    users_collection: str = DEFAULT_USERS_COLLECTION,
    now: Optional[datetime] = None,
) -> list[dict]:
    """Return available pets ranked by location match and listing freshness."""
    request = build_request(categories, location_hint, limit)
    pipeline = build_advanced_pipeline(request, users_collection, now=now)
    return _run(collection, pipeline, "advanced")
