from __future__ import annotations

import json
import os
import re
from datetime import datetime, timezone
from logging import Logger
from typing import Any, Callable, Iterable, Optional

try:
    import psycopg
    from psycopg.types.json import Json
except ModuleNotFoundError as exc:  # Optional dependency for DB features
    psycopg = None
    Json = None
    _PSYCOPG_IMPORT_ERROR = exc
else:
    _PSYCOPG_IMPORT_ERROR = None

from .collection import new_document_id
from .query import UnsupportedQueryError, project, run_pipeline

Document = dict[str, Any]


def _require_psycopg() -> None:
    if psycopg is None:
        raise ModuleNotFoundError(
            "psycopg is required for database operations. Install it to enable storage."
        ) from _PSYCOPG_IMPORT_ERROR


def _get_pg_config() -> dict[str, str | int]:
    return {
        "host": os.environ.get("PGHOST", "localhost"),
        "port": int(os.environ.get("PGPORT", "5432")),
        "user": os.environ.get("PGUSER", "postgres"),
        "password": os.environ.get("PGPASSWORD", "postgres"),
        "dbname": os.environ.get("PGDATABASE", "adoptipet"),
    }


def get_connection() -> psycopg.Connection:
    _require_psycopg()
    cfg = _get_pg_config()
    try:
        return psycopg.connect(**cfg)
    except psycopg.OperationalError as exc:
        message = str(exc).lower()
        fallback_hosts: list[str] = []

        if cfg["host"] == "postgres" and (
            "resolve host" in message
            or "getaddrinfo" in message
            or "name or service not known" in message
        ):
            fallback_hosts = ["localhost", "127.0.0.1"]

        candidates: list[dict[str, str | int]] = []
        for host in fallback_hosts:
            if host != cfg["host"]:
                candidates.append({**cfg, "host": host})

        if cfg["port"] == 5432:
            for host in [cfg["host"], *fallback_hosts]:
                if host in ("localhost", "127.0.0.1"):
                    candidates.append({**cfg, "host": host, "port": 5433})

        seen: set[tuple[str, int, str, str]] = set()
        for candidate in candidates:
            key = (
                str(candidate["host"]),
                int(candidate["port"]),
                str(candidate["user"]),
                str(candidate["dbname"]),
            )
            if key in seen:
                continue
            seen.add(key)
            try:
                return psycopg.connect(**candidate)
            except psycopg.OperationalError:
                continue

        raise


def ensure_schema(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        cur.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                body JSONB NOT NULL,
                inserted_at_utc TIMESTAMPTZ NOT NULL,
                seq BIGSERIAL,
                PRIMARY KEY (collection, doc_id)
            );
            """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_collection_seq
            ON documents (collection, seq);
            """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_documents_body
            ON documents USING GIN (body jsonb_path_ops);
            """)
    conn.commit()


def _is_timestamp_field(key: str) -> bool:
    return key.endswith("_at") or key.endswith("_at_utc")


def encode_document(value: Any) -> Any:
    """Convert a document into JSON-compatible values (timestamps as ISO-8601)."""
    if isinstance(value, dict):
        return {str(k): encode_document(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_document(v) for v in value]
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value


def parse_timestamp(value: str) -> datetime | str:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def decode_document(value: Any) -> Any:
    """Inverse of ``encode_document`` for fields named ``*_at``/``*_at_utc``."""
    if isinstance(value, dict):
        decoded = {}
        for key, item in value.items():
            if isinstance(item, str) and _is_timestamp_field(key):
                decoded[key] = parse_timestamp(item)
            else:
                decoded[key] = decode_document(item)
        return decoded
    if isinstance(value, list):
        return [decode_document(v) for v in value]
    return value


def _path(field: str) -> list[str]:
    return field.split(".")


def _nested(field: str, value: Any) -> dict[str, Any]:
    """Build ``{"a": {"b": value}}`` for ``a.b`` containment checks."""
    result: Any = encode_document(value)
    for part in reversed(_path(field)):
        result = {part: result}
    return result


def _containment(field: str, value: Any) -> tuple[str, list[Any]]:
    return "body @> %s", [Json(_nested(field, value))]


def _regex_clause(field: str, pattern: str, options: str) -> tuple[str, list[Any]]:
    unknown = set(options or "") - {"i"}
    if unknown:
        raise UnsupportedQueryError(f"Unsupported regex option(s): {sorted(unknown)}")
    operator = "~*" if "i" in (options or "") else "~"
    return f"(body #>> %s) {operator} %s", [_path(field), pattern]


_COMPARISONS = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}


def _field_clause(field: str, condition: Any) -> tuple[str, list[Any]]:
    if isinstance(condition, re.Pattern):
        options = "i" if condition.flags & re.IGNORECASE else ""
        return _regex_clause(field, condition.pattern, options)
    if not (isinstance(condition, dict) and any(k.startswith("$") for k in condition)):
        return _containment(field, condition)

    clauses: list[str] = []
    params: list[Any] = []
    for op, arg in condition.items():
        if op == "$options":
            continue
        if op == "$eq":
            sql, args = _containment(field, arg)
        elif op == "$ne":
            sql, args = _containment(field, arg)
            sql = f"NOT ({sql})"
        elif op == "$in":
            parts = [_containment(field, item) for item in arg]
            if parts:
                sql = "(" + " OR ".join(p[0] for p in parts) + ")"
                args = [a for p in parts for a in p[1]]
            else:
                sql, args = "FALSE", []
        elif op == "$exists":
            sql = "(body #> %s) IS NOT NULL" if arg else "(body #> %s) IS NULL"
            args = [_path(field)]
        elif op == "$regex":
            sql, args = _regex_clause(field, str(arg), condition.get("$options", ""))
        elif op in _COMPARISONS:
            sql = f"(body #> %s) {_COMPARISONS[op]} %s"
            args = [_path(field), Json(encode_document(arg))]
        else:
            raise UnsupportedQueryError(f"Unsupported filter operator: {op}")
        clauses.append(sql)
        params.extend(args)
    return " AND ".join(clauses) or "TRUE", params


def compile_filter(query: Optional[dict[str, Any]]) -> tuple[str, list[Any]]:
    """Translate a filter document into a SQL condition over ``body``.

    Args:
        query: Filter document using equality, ``$in``, ``$ne``,
            ``$exists``, ``$regex``, comparisons, ``$and`` and ``$or``.

    Returns:
        A ``(sql, params)`` pair for use inside a ``WHERE`` clause.
    """
    clauses: list[str] = []
    params: list[Any] = []
    for key, condition in (query or {}).items():
        if key in ("$and", "$or"):
            parts = [compile_filter(sub) for sub in condition]
            if not parts:
                sql = "TRUE" if key == "$and" else "FALSE"
            else:
                joiner = " AND " if key == "$and" else " OR "
                sql = "(" + joiner.join(f"({p[0]})" for p in parts) + ")"
            clauses.append(sql)
            for _sql, args in parts:
                params.extend(args)
            continue
        if key.startswith("$"):
            raise UnsupportedQueryError(f"Unsupported top-level operator: {key}")
        sql, args = _field_clause(key, condition)
        clauses.append(sql)
        params.extend(args)
    if not clauses:
        return "TRUE", []
    return " AND ".join(clauses), params


def compile_sort(sort: Any) -> tuple[str, list[Any]]:
    """Translate a sort spec into an ``ORDER BY`` list ending with insertion order."""
    items = list(sort.items()) if isinstance(sort, dict) else list(sort or [])
    terms: list[str] = []
    params: list[Any] = []
    for field, direction in items:
        if int(direction) < 0:
            terms.append("(body #> %s) DESC NULLS LAST")
        else:
            terms.append("(body #> %s) ASC NULLS FIRST")
        params.append(_path(field))
    terms.append("seq ASC")
    return ", ".join(terms), params


class PostgresCollection:
    """A named document collection stored as JSONB rows in ``documents``."""

    def __init__(
        self,
        name: str,
        *,
        connection_factory: Callable = get_connection,
        ensure_schema_fn: Callable = ensure_schema,
    ) -> None:
        self.name = name
        self.connection_factory = connection_factory
        self.ensure_schema_fn = ensure_schema_fn
        self._schema_ready = False

    def _connect(self):
        conn = self.connection_factory()
        if not self._schema_ready:
            self.ensure_schema_fn(conn)
            self._schema_ready = True
        return conn

    def count(self, query: Optional[dict[str, Any]] = None) -> int:
        where, params = compile_filter(query)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT count(*)
                    FROM documents
                    WHERE collection = %s
                      AND ({where});
                    """,
                    (self.name, *params),
                )
                row = cur.fetchone()
        return int(row[0]) if row else 0

    def find(
        self,
        query: Optional[dict[str, Any]] = None,
        projection: Optional[dict[str, Any]] = None,
        sort: Any = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[Document]:
        if skip < 0:
            raise ValueError("skip must be non-negative")
        where, params = compile_filter(query)
        order_by, order_params = compile_sort(sort)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT body
                    FROM documents
                    WHERE collection = %s
                      AND ({where})
                    ORDER BY {order_by}
                    OFFSET %s
                    LIMIT %s;
                    """,
                    (self.name, *params, *order_params, skip, limit or None),
                )
                rows = cur.fetchall()
        return [project(_row_body(row), projection) for row in rows]

    def find_one(self, query: Optional[dict[str, Any]] = None) -> Optional[Document]:
        found = self.find(query, limit=1)
        return found[0] if found else None

    def aggregate(self, pipeline: list[dict[str, Any]]) -> list[Document]:
        """Run a pipeline with its leading ``$match`` pushed down to SQL."""
        stages = list(pipeline)
        query: dict[str, Any] = {}
        if stages and "$match" in stages[0]:
            query = stages.pop(0)["$match"]
        source = self.find(query)

        def resolve(name: str, foreign_field: str, keys: list[Any]) -> list[Document]:
            return PostgresCollection(
                name,
                connection_factory=self.connection_factory,
                ensure_schema_fn=self.ensure_schema_fn,
            ).find({foreign_field: {"$in": keys}})

        return run_pipeline(source, stages, resolve=resolve)

    def insert_many(
        self, documents: Iterable[Document], logger: Logger | None = None
    ) -> int:
        now = datetime.now(timezone.utc)
        rows = []
        for doc in documents:
            body = encode_document(dict(doc))
            body.setdefault("_id", new_document_id())
            rows.append((self.name, str(body["_id"]), Json(body), now))
        if not rows:
            return 0
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO documents (collection, doc_id, body, inserted_at_utc)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (collection, doc_id) DO UPDATE
                        SET body = EXCLUDED.body;
                    """,
                    rows,
                )
            conn.commit()
        if logger:
            logger.info(f"Stored {len(rows)} documents in {self.name}.")
        return len(rows)


def _row_body(row) -> Document:
    body = row[0]
    if isinstance(body, str):
        body = json.loads(body)
    return decode_document(body)
