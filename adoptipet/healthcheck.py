from __future__ import annotations

from .config import get_collection_names
from .db import PostgresCollection, ensure_schema, get_connection


def check(connection_factory=get_connection) -> dict[str, int]:
    """Ensure the documents schema exists and count each configured collection."""
    with connection_factory() as conn:
        ensure_schema(conn)
    counts = {}
    for name in get_collection_names().values():
        collection = PostgresCollection(
            name,
            connection_factory=connection_factory,
            ensure_schema_fn=lambda _conn: None,
        )
        counts[name] = collection.count()
    return counts


def main() -> None:
    counts = check()
    print("OK " + " ".join(f"{name}={count}" for name, count in counts.items()))


if __name__ == "__main__":
    main()
