"""Partial-update language understood by the document stores.

Filters are flat mappings of dotted paths to expected values. A path that
crosses an array (``"subTasks._id"``) matches when any element matches, and
the index of that element is what a positional ``$`` segment in the delta
refers to::

    doc = {"_id": "c1", "subTasks": [{"_id": "s1", "completed": False}]}
    matched, pos = match(doc, {"_id": "c1", "subTasks._id": "s1"})
    apply_delta(doc, {"$set": {"subTasks.$.completed": True}}, pos)

Supported operators: ``$set``, ``$inc``, ``$push`` and ``$pull`` (a
predicate mapping matched against array elements, or a plain value).
"""

import copy
from typing import Any

Filter = dict[str, Any]
Delta = dict[str, dict[str, Any]]

OPERATORS = ("$set", "$inc", "$push", "$pull")

_MISSING = object()


class DeltaError(ValueError):
    pass


def match(document: dict[str, Any], filter: Filter | None) -> tuple[bool, int | None]:
    """Return whether ``document`` matches and the positional index, if any."""
    position: int | None = None
    for path, expected in (filter or {}).items():
        head, _, rest = path.partition(".")
        container = document.get(head, _MISSING)
        if rest and isinstance(container, list):
            index = next(
                (
                    i
                    for i, element in enumerate(container)
                    if isinstance(element, dict) and _get(element, rest) == expected
                ),
                None,
            )
            if index is None:
                return False, None
            position = index
        elif _get(document, path) != expected:
            return False, None
    return True, position


def apply_delta(
    document: dict[str, Any], delta: Delta, position: int | None = None
) -> dict[str, Any]:
    """Return a copy of ``document`` with ``delta`` applied."""
    unknown = set(delta) - set(OPERATORS)
    if unknown:
        raise DeltaError(f"Unsupported operators: {sorted(unknown)}")

    doc = copy.deepcopy(document)
    for path, value in delta.get("$set", {}).items():
        _assign(doc, _resolve(path, position), copy.deepcopy(value))

    for path, amount in delta.get("$inc", {}).items():
        segments = _resolve(path, position)
        current = _get(doc, ".".join(segments))
        if current is _MISSING or current is None:
            current = 0
        if not _is_number(current) or not _is_number(amount):
            raise DeltaError(f"Cannot increment non-numeric field '{path}'")
        _assign(doc, segments, current + amount)

    for path, value in delta.get("$push", {}).items():
        segments = _resolve(path, position)
        current = _get(doc, ".".join(segments))
        if current is _MISSING or current is None:
            current = []
        if not isinstance(current, list):
            raise DeltaError(f"Cannot push to non-array field '{path}'")
        _assign(doc, segments, current + [copy.deepcopy(value)])

    for path, predicate in delta.get("$pull", {}).items():
        segments = _resolve(path, position)
        current = _get(doc, ".".join(segments))
        if current is _MISSING or current is None:
            continue
        if not isinstance(current, list):
            raise DeltaError(f"Cannot pull from non-array field '{path}'")
        _assign(
            doc,
            segments,
            [element for element in current if not _pulls(element, predicate)],
        )
    return doc


def _pulls(element: Any, predicate: Any) -> bool:
    if isinstance(predicate, dict):
        return isinstance(element, dict) and all(
            _get(element, k) == v for k, v in predicate.items()
        )
    return element == predicate


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _resolve(path: str, position: int | None) -> list[str]:
    segments = path.split(".")
    if "$" in segments:
        if position is None:
            raise DeltaError(f"Positional path '{path}' without an array match in the filter")
        segments = [str(position) if s == "$" else s for s in segments]
    return segments


def _get(document: Any, path: str) -> Any:
    current = document
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else _MISSING
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def _assign(document: dict[str, Any], segments: list[str], value: Any) -> None:
    current: Any = document
    for segment in segments[:-1]:
        if isinstance(current, list):
            current = current[_index(current, segment)]
        else:
            nxt = current.get(segment)
            if nxt is None:
                nxt = {}
                current[segment] = nxt
            current = nxt
        if not isinstance(current, (dict, list)):
            raise DeltaError(f"Cannot traverse into '{segment}' of {'.'.join(segments)}")

    last = segments[-1]
    if isinstance(current, list):
        current[_index(current, last)] = value
    else:
        current[last] = value


def _index(array: list, segment: str) -> int:
    if not segment.isdigit() or int(segment) >= len(array):
        raise DeltaError(f"Array index '{segment}' out of range")
    return int(segment)
