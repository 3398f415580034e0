"""JSON HTTP API for AdoptiPet listings and recommendations.

Collections are carried by an ``AppContext`` handed to the request handler,
so the same routes run against the in-memory store in tests and Postgres in
deployment.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, unquote, urlparse

from .catalog import (
    get_document,
    list_available_pets,
    list_category_pets,
    list_donation_campaigns,
)
from .collection import Collection, MemoryDatabase
from .config import get_collection_names, get_storage_backend
from .query import UnsupportedQueryError
from .recommendations import RecommendationError, recommend, recommend_advanced
from .seed import load_fixture, read_fixture

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    collection: Callable[[str], Collection]
    names: dict[str, str] = field(default_factory=get_collection_names)

    @property
    def pets(self) -> Collection:
        return self.collection(self.names["pets"])

    @property
    def donations(self) -> Collection:
        return self.collection(self.names["donations"])

    @property
    def users_name(self) -> str:
        return self.names["users"]


def build_context(storage: Optional[str] = None) -> AppContext:
    """Create an ``AppContext`` for the ``memory`` or ``postgres`` backend."""
    backend = storage or get_storage_backend()
    if backend == "postgres":
        from .db import PostgresCollection

        cache: dict[str, PostgresCollection] = {}

        def collection(name: str) -> PostgresCollection:
            if name not in cache:
                cache[name] = PostgresCollection(name)
            return cache[name]

        return AppContext(collection=collection)
    if backend != "memory":
        raise ValueError(f"Unknown storage='{backend}'. Options: ['memory', 'postgres']")
    return AppContext(collection=MemoryDatabase().collection)


def _coerce_json(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _jsonify(obj):
    if isinstance(obj, dict):
        return {k: _jsonify(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonify(v) for v in obj]
    return _coerce_json(obj)


def _first(query: dict[str, list[str]], key: str) -> Optional[str]:
    values = query.get(key)
    return values[0] if values else None


def _categories_param(query: dict[str, list[str]]) -> list[str]:
    raw = [*query.get("categories", []), *query.get("categories[]", [])]
    return [part for value in raw for part in value.split(",")]


class AppHandler(BaseHTTPRequestHandler):
    """HTTP handler for the AdoptiPet JSON API."""

    context: AppContext

    def _send_json(self, status: int, payload: Any) -> None:
        """Write a JSON response.

        Args:
            status: HTTP status code.
            payload: JSON-serializable response payload.

        Returns:
            None.
        """
        data = json.dumps(_jsonify(payload)).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _send_page(self, fetch: Callable, items_key: str, failure: str) -> None:
        try:
            page = fetch()
        except Exception as exc:
            # ValueError is bad input unless the store rejected the query.
            if isinstance(exc, ValueError) and not isinstance(exc, UnsupportedQueryError):
                return self._send_json(400, {"success": False, "message": str(exc)})
            logger.exception(f"{failure}.")
            return self._send_json(
                500, {"success": False, "message": failure, "error": str(exc)}
            )
        return self._send_json(200, page.to_dict(items_key))

    def _send_document(self, collection: Collection, doc_id: str, label: str) -> None:
        try:
            document = get_document(collection, doc_id)
        except Exception as exc:
            logger.exception(f"Failed to fetch {label.lower()} {doc_id}.")
            return self._send_json(
                500,
                {"success": False, "message": f"Failed to fetch {label.lower()}", "error": str(exc)},
            )
        if document is None:
            return self._send_json(404, {"success": False, "message": f"{label} not found"})
        return self._send_json(200, document)

    def _send_recommendations(self, query: dict[str, list[str]], advanced: bool) -> None:
        ranker = recommend_advanced if advanced else recommend
        try:
            results = ranker(
                self.context.pets,
                _categories_param(query),
                _first(query, "district") or "",
                _first(query, "limit"),
                users_collection=self.context.users_name,
            )
        except RecommendationError as exc:
            return self._send_json(
                500,
                {"error": "Failed to fetch recommendations", "message": exc.message},
            )
        return self._send_json(200, results)

    def do_GET(self):
        """Route GET requests to listing, detail, recommendation and health handlers.

        Returns:
            None.
        """
        parsed = urlparse(self.path)
        query = parse_qs(parsed.query)
        path = parsed.path.rstrip("/") or "/"
        limit = _first(query, "limit")
        cursor = _first(query, "cursor")

        if path == "/all-pets":
            return self._send_page(
                lambda: list_available_pets(
                    self.context.pets,
                    category=_first(query, "category"),
                    search=_first(query, "search"),
                    limit=limit,
                    cursor=cursor,
                ),
                "pets",
                "Failed to fetch pets",
            )
        if path == "/category-pets":
            return self._send_page(
                lambda: list_category_pets(
                    self.context.pets, _first(query, "category"), limit, cursor
                ),
                "pets",
                "Failed to fetch pets",
            )
        if path == "/donation-campaigns":
            return self._send_page(
                lambda: list_donation_campaigns(self.context.donations, limit, cursor),
                "donations",
                "Failed to fetch donation campaigns",
            )
        if path.startswith("/pet-detail/"):
            doc_id = unquote(path[len("/pet-detail/"):])
            return self._send_document(self.context.pets, doc_id, "Pet")
        if path.startswith("/donation-detail/"):
            doc_id = unquote(path[len("/donation-detail/"):])
            return self._send_document(self.context.donations, doc_id, "Donation Campaign")
        if path == "/api/pet-recommendations":
            return self._send_recommendations(query, advanced=False)
        if path == "/api/pet-recommendations/advanced":
            return self._send_recommendations(query, advanced=True)
        if path == "/api/health":
            try:
                self.context.pets.count({})
                return self._send_json(200, {"ok": True})
            except Exception as exc:
                logger.warning(f"Health check failed: {exc}")
                return self._send_json(500, {"ok": False, "error": str(exc)})
        if path == "/":
            return self._send_json(200, {"message": "AdoptiPet server is running"})
        return self._send_json(404, {"error": "not found"})

    def log_message(self, fmt, *args):
        """Send request logs to the module logger at debug level.

        Args:
            fmt: Log format string.
            *args: Format arguments.

        Returns:
            None.
        """
        logger.debug(fmt % args)


def make_handler(context: AppContext) -> type[AppHandler]:
    """Return an ``AppHandler`` subclass bound to ``context``."""
    return type("BoundAppHandler", (AppHandler,), {"context": context})


def main() -> None:
    """Run the AdoptiPet HTTP server from CLI arguments.

    Returns:
        None.
    """
    log_level = (os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    parser = argparse.ArgumentParser(description="Serve the AdoptiPet API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "5000")))
    parser.add_argument("--storage", choices=("memory", "postgres"), default=None)
    parser.add_argument("--seed", default=None, help="JSON fixture to load at startup")
    args = parser.parse_args()

    context = build_context(args.storage)
    if args.seed:
        load_fixture(read_fixture(args.seed), context.collection)

    server = ThreadingHTTPServer((args.host, args.port), make_handler(context))
    print(f"AdoptiPet running at http://{args.host}:{args.port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
