"""Load pet, user and donation fixtures into a storage backend."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Mapping

from tqdm import tqdm

from .collection import Collection
from .db import decode_document

logger = logging.getLogger(__name__)

BATCH_SIZE = 200


def read_fixture(path: str | Path) -> dict[str, list[dict[str, Any]]]:
    """Read a ``{collection: [documents]}`` JSON fixture.

    Timestamps stored as ISO-8601 strings in ``*_at`` fields are decoded to
    timezone-aware datetimes.
    """
    with open(path, "r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError(f"Fixture {path} must be a JSON object of collections.")
    fixture: dict[str, list[dict[str, Any]]] = {}
    for name, documents in payload.items():
        if not isinstance(documents, list):
            raise ValueError(f"Collection '{name}' in {path} must be a list.")
        fixture[name] = [decode_document(doc) for doc in documents]
    return fixture


def load_fixture(
    fixture: Mapping[str, list[dict[str, Any]]],
    collection_for: Callable[[str], Collection],
) -> dict[str, int]:
    """Insert every fixture collection in batches and return counts by name."""
    counts: dict[str, int] = {}
    for name, documents in fixture.items():
        collection = collection_for(name)
        inserted = 0
        batches = range(0, len(documents), BATCH_SIZE)
        for start in tqdm(batches, desc=f"Loading {name}"):
            inserted += collection.insert_many(documents[start : start + BATCH_SIZE])
        counts[name] = inserted
        logger.info(f"[{name}] loaded={inserted}")
    return counts


def main() -> None:
    """CLI entrypoint for loading a fixture into the configured storage."""
    log_level = (os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    parser = argparse.ArgumentParser(description="Load AdoptiPet fixtures")
    parser.add_argument("fixture", help="Path to a JSON fixture file")
    parser.add_argument(
        "--storage",
        choices=("memory", "postgres"),
        default="postgres",
        help="Storage backend to load into",
    )
    args = parser.parse_args()

    from .server import build_context

    context = build_context(args.storage)
    counts = load_fixture(read_fixture(args.fixture), context.collection)
    print(", ".join(f"{name}={count}" for name, count in counts.items()) or "Nothing loaded.")


if __name__ == "__main__":
    main()
