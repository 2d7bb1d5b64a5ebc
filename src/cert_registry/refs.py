"""Reference normalization for position links.

Stored employees (and legacy certificates) reference positions in several
shapes: a bare id string, an integer, an embedded document such as
``{"_id": "...", "title": "Welder"}``, Mongo-style ``{"$oid": "..."}``, or a
``Position`` object. Every ingress point runs values through
:func:`resolve_ref`, which returns either the plain id (``str``) or an
:class:`Unresolvable` marker that says why extraction failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

_ID_KEYS = ("id", "_id", "$oid")
_MAX_DEPTH = 3


@dataclass(frozen=True)
class Unresolvable:
    raw: Any
    reason: str

    def __bool__(self) -> bool:
        return False


Ref = Union[str, Unresolvable]


def resolve_ref(value: Any, _depth: int = 0) -> Ref:
    if _depth > _MAX_DEPTH:
        return Unresolvable(value, "reference nested too deeply")
    if value is None:
        return Unresolvable(value, "empty reference")
    if isinstance(value, bool):
        return Unresolvable(value, "boolean is not a reference")
    if isinstance(value, str):
        s = value.strip()
        if not s or s.lower() in {"none", "null", "undefined", "nan"}:
            return Unresolvable(value, "empty reference")
        return s
    if isinstance(value, int):
        return str(value)
    if isinstance(value, Mapping):
        for key in _ID_KEYS:
            if key in value:
                return resolve_ref(value[key], _depth + 1)
        return Unresolvable(value, "object has no id field")
    inner = getattr(value, "id", None)
    if inner is not None:
        return resolve_ref(inner, _depth + 1)
    return Unresolvable(value, f"unsupported reference type {type(value).__name__}")


def ref_id(value: Any) -> Optional[str]:
    """Shortcut: the id, or None when the value cannot be resolved."""
    ref = resolve_ref(value)
    return ref if isinstance(ref, str) else None


__all__ = ["Unresolvable", "Ref", "resolve_ref", "ref_id"]
