"""Plain projection — decoded object graph → JSON-safe tree.

Decoded values are native Python objects, possibly shared and possibly
cyclic.  The projection turns one into something json.dumps accepts, for
the CLI and for comparing against the expected values in the conformance
vectors.  Non-JSON values are wrapped in single-key marker objects:

    {"$bytes": "<hex>"}        bytes, bytearray, memoryview
    {"$global": "ns.name"}     an uncalled class / function reference
    {"$float": "nan"}          non-finite floats
    {"$items": [[k, v], ...]}  dicts with any non-str key
    {"$cycle": true}           a container already on the current path
    {"$repr": "..."}           anything else (datetime, Decimal, array, ...)

Tuples and lists both become lists; sets become lists in a stable order.
Shared (but acyclic) substructures are expanded at every occurrence.
"""

from __future__ import annotations

import json
import math
from typing import Any, List, Set

from ._objects import GlobalRef

_CONTAINERS = (list, tuple, set, frozenset, dict)


def to_plain(value: Any) -> Any:
    """Project a decoded value to a JSON-serialisable tree."""
    return _plain(value, set())


def _sort_key(item: Any) -> str:
    return json.dumps(item, sort_keys=True)


def _plain(val: Any, path: Set[int]) -> Any:
    if val is None or isinstance(val, (bool, int, str)):
        return val

    if isinstance(val, float):
        if math.isfinite(val):
            return val
        return {"$float": repr(val)}

    if isinstance(val, (bytes, bytearray, memoryview)):
        return {"$bytes": bytes(val).hex()}

    if isinstance(val, GlobalRef):
        return {"$global": val.qualname}

    if not isinstance(val, _CONTAINERS):
        return {"$repr": repr(val)}

    # ── Containers: guard against cycles along the current path ──
    if id(val) in path:
        return {"$cycle": True}
    path.add(id(val))
    try:
        if isinstance(val, dict):
            if all(isinstance(k, str) for k in val):
                return {k: _plain(v, path) for k, v in val.items()}
            return {"$items": [[_plain(k, path), _plain(v, path)] for k, v in val.items()]}
        if isinstance(val, (set, frozenset)):
            items: List[Any] = [_plain(x, path) for x in val]
            return sorted(items, key=_sort_key)
        return [_plain(x, path) for x in val]
    finally:
        path.discard(id(val))
