"""Configuration constants and environment helpers for AdoptiPet."""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

DEFAULT_PAGE_LIMIT = 6
MAX_PAGE_LIMIT = 100
DEFAULT_RECOMMENDATION_LIMIT = 12
MAX_RECOMMENDATION_LIMIT = 50

MS_PER_DAY = 86_400_000
LOCATION_MATCH_SCORE = 10
LOCATION_MISS_SCORE = 5
FRESHNESS_BASE_SCORE = 10

SCORE_FIELDS = ("locationScore", "freshnessScore", "totalScore")
PRIVATE_LISTER_FIELDS = ("password", "email")
# Only these user fields are ever joined onto a listing.
PUBLIC_LISTER_FIELDS = ("_id", "name", "photo", "image", "role")

DEFAULT_PETS_COLLECTION = "allPets"
DEFAULT_USERS_COLLECTION = "users"
DEFAULT_DONATIONS_COLLECTION = "donationsCollection"
STORAGE_BACKENDS = ("memory", "postgres")


def get_collection_names() -> dict[str, str]:
    """Return collection names keyed by role, honoring env overrides."""
    return {
        "pets": os.environ.get("ADOPTIPET_PETS_COLLECTION", "").strip()
        or DEFAULT_PETS_COLLECTION,
        "users": os.environ.get("ADOPTIPET_USERS_COLLECTION", "").strip()
        or DEFAULT_USERS_COLLECTION,
        "donations": os.environ.get("ADOPTIPET_DONATIONS_COLLECTION", "").strip()
        or DEFAULT_DONATIONS_COLLECTION,
    }


def get_storage_backend() -> str:
    """Return the configured storage backend, falling back to memory."""
    value = (os.environ.get("ADOPTIPET_STORAGE") or "").strip().lower()
    if value in STORAGE_BACKENDS:
        return value
    return "memory"
