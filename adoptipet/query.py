"""Pure-Python evaluation of document filters and aggregation pipelines.

The in-memory collection evaluates everything here; the Postgres collection
pushes filters down to SQL and uses this module for the remaining pipeline
stages.
"""

from __future__ import annotations

import copy
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

Document = dict[str, Any]
# (collection name, foreign field, local keys) -> candidate foreign documents
Resolver = Callable[[str, str, list[Any]], list[Document]]

_MISSING = object()


class UnsupportedQueryError(ValueError):
    """Raised for filter operators or pipeline stages this engine cannot run."""


def get_path(doc: Any, path: str) -> Any:
    """Return the value at a dotted path, or ``_MISSING`` when absent."""
    current = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def set_path(doc: Document, path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def unset_path(doc: Document, path: str) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _type_rank(value: Any) -> int:
    if value is None or value is _MISSING:
        return 1
    if isinstance(value, bool):
        return 8
    if isinstance(value, (int, float)):
        return 2
    if isinstance(value, str):
        return 3
    if isinstance(value, dict):
        return 4
    if isinstance(value, (list, tuple)):
        return 5
    if isinstance(value, datetime):
        return 9
    return 10


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def sort_key(value: Any) -> tuple:
    """Return a key ordering mixed values the way a document store does."""
    rank = _type_rank(value)
    if rank == 1:
        return (rank, 0)
    if rank == 9:
        return (rank, _as_utc(value))
    if rank in (2, 3, 8):
        return (rank, value)
    return (rank, repr(value))


def _equals(left: Any, right: Any) -> bool:
    if left is _MISSING:
        left = None
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _compare(left: Any, right: Any, op: str) -> bool:
    if left is _MISSING or left is None or right is None:
        return False
    if _type_rank(left) != _type_rank(right):
        return False
    if isinstance(left, datetime):
        left, right = _as_utc(left), _as_utc(right)
    if op == "$gt":
        return left > right
    if op == "$gte":
        return left >= right
    if op == "$lt":
        return left < right
    return left <= right


def compile_regex(pattern: Any, options: str = "") -> re.Pattern:
    if isinstance(pattern, re.Pattern):
        return pattern
    unknown = set(options or "") - {"i"}
    if unknown:
        raise UnsupportedQueryError(f"Unsupported regex option(s): {sorted(unknown)}")
    flags = re.IGNORECASE if "i" in (options or "") else 0
    return re.compile(str(pattern), flags)


def _regex_match(value: Any, pattern: re.Pattern) -> bool:
    return isinstance(value, str) and pattern.search(value) is not None


def _candidates(value: Any) -> list[Any]:
    """Array fields match when any element matches."""
    if isinstance(value, list):
        return [value, *value]
    return [value]


def _match_operators(value: Any, spec: dict[str, Any]) -> bool:
    for op, arg in spec.items():
        if op == "$options":
            continue
        if op == "$eq":
            ok = any(_equals(v, arg) for v in _candidates(value))
        elif op == "$ne":
            ok = not any(_equals(v, arg) for v in _candidates(value))
        elif op == "$in":
            ok = any(_equals(v, item) for v in _candidates(value) for item in arg)
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            ok = any(_compare(v, arg, op) for v in _candidates(value))
        elif op == "$exists":
            ok = (value is not _MISSING) == bool(arg)
        elif op == "$regex":
            pattern = compile_regex(arg, spec.get("$options", ""))
            ok = any(_regex_match(v, pattern) for v in _candidates(value))
        else:
            raise UnsupportedQueryError(f"Unsupported filter operator: {op}")
        if not ok:
            return False
    return True


def matches(doc: Document, query: Optional[dict[str, Any]]) -> bool:
    """Return True when ``doc`` satisfies the filter document ``query``."""
    for key, condition in (query or {}).items():
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
            continue
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        if key.startswith("$"):
            raise UnsupportedQueryError(f"Unsupported top-level operator: {key}")

        value = get_path(doc, key)
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            if not _match_operators(value, condition):
                return False
        elif isinstance(condition, re.Pattern):
            if not any(_regex_match(v, condition) for v in _candidates(value)):
                return False
        elif not any(_equals(v, condition) for v in _candidates(value)):
            return False
    return True


def project(doc: Document, projection: Optional[dict[str, Any]]) -> Document:
    """Apply an inclusion or exclusion projection to a copy of ``doc``."""
    if not projection:
        return copy.deepcopy(doc)
    spec = dict(projection)
    include_id = bool(spec.pop("_id", True))
    modes = {bool(v) for v in spec.values()}
    if len(modes) > 1:
        raise UnsupportedQueryError("Projection cannot mix inclusion and exclusion.")

    if modes == {True} or (not modes and include_id and "_id" in projection):
        projected: Document = {}
        if include_id and "_id" in doc:
            projected["_id"] = copy.deepcopy(doc["_id"])
        for path in spec:
            value = get_path(doc, path)
            if value is not _MISSING:
                set_path(projected, path, copy.deepcopy(value))
        return projected

    projected = copy.deepcopy(doc)
    for path in spec:
        unset_path(projected, path)
    if not include_id:
        projected.pop("_id", None)
    return projected


def _sort_items(sort: Any) -> list[tuple[str, int]]:
    if not sort:
        return []
    if isinstance(sort, dict):
        return [(key, int(direction)) for key, direction in sort.items()]
    return [(key, int(direction)) for key, direction in sort]


def sort_documents(docs: Iterable[Document], sort: Any) -> list[Document]:
    """Stable multi-key sort; ``sort`` is a mapping or list of (field, 1|-1)."""
    ordered = list(docs)
    for key, direction in reversed(_sort_items(sort)):
        ordered.sort(key=lambda d: sort_key(get_path(d, key)), reverse=direction < 0)
    return ordered


def _numeric(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def evaluate(expr: Any, doc: Document) -> Any:
    """Evaluate an aggregation expression against ``doc``."""
    if isinstance(expr, str) and expr.startswith("$"):
        value = get_path(doc, expr[1:])
        return None if value is _MISSING else value
    if isinstance(expr, list):
        return [evaluate(item, doc) for item in expr]
    if not isinstance(expr, dict):
        return expr
    if len(expr) == 1:
        op, arg = next(iter(expr.items()))
        if op.startswith("$"):
            return _evaluate_operator(op, arg, doc)
    return {key: evaluate(value, doc) for key, value in expr.items()}


def _evaluate_operator(op: str, arg: Any, doc: Document) -> Any:
    if op == "$cond":
        if isinstance(arg, dict):
            branches = (arg["if"], arg["then"], arg["else"])
        else:
            branches = tuple(arg)
        condition, then, otherwise = branches
        return evaluate(then if evaluate(condition, doc) else otherwise, doc)
    if op == "$ifNull":
        first, fallback = arg
        value = evaluate(first, doc)
        return evaluate(fallback, doc) if value is None else value
    if op == "$regexMatch":
        value = evaluate(arg.get("input"), doc)
        pattern = compile_regex(evaluate(arg.get("regex"), doc), arg.get("options", ""))
        return _regex_match(value, pattern)

    values = [evaluate(item, doc) for item in arg]
    if any(value is None for value in values):
        return None
    if op == "$add":
        dates = [v for v in values if isinstance(v, datetime)]
        millis = sum(v for v in values if not isinstance(v, datetime))
        if len(dates) > 1:
            raise UnsupportedQueryError("$add accepts at most one date.")
        if dates:
            return dates[0] + timedelta(milliseconds=millis)
        return millis
    if op == "$subtract":
        left, right = values
        if isinstance(left, datetime) and isinstance(right, datetime):
            return (_as_utc(left) - _as_utc(right)).total_seconds() * 1000
        if isinstance(left, datetime) and _numeric(right):
            return left - timedelta(milliseconds=right)
        return left - right
    if op == "$divide":
        left, right = values
        return left / right
    raise UnsupportedQueryError(f"Unsupported expression operator: {op}")


def _lookup(docs: list[Document], spec: dict[str, Any], resolve: Optional[Resolver]) -> list[Document]:
    if resolve is None:
        raise UnsupportedQueryError("$lookup needs a collection resolver.")
    local_field = spec["localField"]
    foreign_field = spec["foreignField"]
    sub_pipeline = spec.get("pipeline") or []

    local_by_doc = []
    keys: list[Any] = []
    for doc in docs:
        local = get_path(doc, local_field)
        local_values = local if isinstance(local, list) else [local]
        local_by_doc.append(local_values)
        for value in local_values:
            if value is not _MISSING and value is not None and value not in keys:
                keys.append(value)
    foreign = resolve(spec["from"], foreign_field, keys) if keys else []

    output: list[Document] = []
    for doc, local_values in zip(docs, local_by_doc):
        joined = [
            copy.deepcopy(candidate)
            for candidate in foreign
            if any(_equals(get_path(candidate, foreign_field), value) for value in local_values)
        ]
        if sub_pipeline:
            joined = run_pipeline(joined, sub_pipeline, resolve=resolve)
        enriched = dict(doc)
        set_path(enriched, spec["as"], joined)
        output.append(enriched)
    return output


def _unwind(docs: list[Document], spec: Any) -> list[Document]:
    if isinstance(spec, str):
        spec = {"path": spec}
    path = spec["path"].lstrip("$")
    preserve = bool(spec.get("preserveNullAndEmptyArrays", False))
    output: list[Document] = []
    for doc in docs:
        value = get_path(doc, path)
        if isinstance(value, list) and value:
            for element in value:
                unwound = copy.deepcopy(doc)
                set_path(unwound, path, element)
                output.append(unwound)
        elif value is _MISSING or value is None or value == []:
            if preserve:
                kept = dict(doc)
                if value == []:
                    unset_path(kept, path)
                output.append(kept)
        else:
            output.append(doc)
    return output


def run_pipeline(
    docs: Iterable[Document],
    pipeline: Iterable[dict[str, Any]],
    resolve: Optional[Resolver] = None,
) -> list[Document]:
    """Run aggregation stages over ``docs`` and return the resulting documents.

    Args:
        docs: Source documents; they are copied, never mutated.
        pipeline: Stages such as ``$match``, ``$lookup``, ``$unwind``,
            ``$addFields``, ``$sort``, ``$skip``, ``$limit`` and ``$project``.
        resolve: Returns the documents of a named collection whose foreign
            field equals one of the given keys, for ``$lookup``.

    Returns:
        The documents produced by the last stage.
    """
    current = [copy.deepcopy(doc) for doc in docs]
    for stage in pipeline:
        if len(stage) != 1:
            raise UnsupportedQueryError(f"Pipeline stage must have one operator: {stage}")
        name, spec = next(iter(stage.items()))
        if name == "$match":
            current = [doc for doc in current if matches(doc, spec)]
        elif name == "$lookup":
            current = _lookup(current, spec, resolve)
        elif name == "$unwind":
            current = _unwind(current, spec)
        elif name in ("$addFields", "$set"):
            for doc in current:
                computed = {key: evaluate(expr, doc) for key, expr in spec.items()}
                for key, value in computed.items():
                    set_path(doc, key, value)
        elif name == "$sort":
            current = sort_documents(current, spec)
        elif name == "$skip":
            current = current[max(0, int(spec)):]
        elif name == "$limit":
            if int(spec) <= 0:
                raise UnsupportedQueryError("$limit must be a positive integer.")
            current = current[: int(spec)]
        elif name == "$project":
            current = [project(doc, spec) for doc in current]
        else:
            raise UnsupportedQueryError(f"Unsupported pipeline stage: {name}")
    return current
