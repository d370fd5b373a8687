"""Shape fingerprints and cache signatures for pipeline values.

A fingerprint summarizes the *shape* of a value: mapping keys survive, scalar
leaves become type tags, sequences become tuples of element fingerprints and
everything else collapses to ``OPAQUE``. Fingerprints are hashable and are used
for node equivalence and compiled-plan lookup, never to compare values.

A signature is a digest of the full value and is what result caches key on.
"""

from __future__ import annotations

import hashlib
from typing import Any, Callable, Hashable, Mapping, Tuple

from emberjit.errors import CacheError

_SCALAR_TAGS: Tuple[Tuple[type, str], ...] = (
    (bool, "bool"),
    (int, "int"),
    (float, "float"),
    (str, "str"),
    (bytes, "bytes"),
)


class _Opaque:
    """Marker for values whose structure is not inspected."""

    _instance = None

    def __new__(cls) -> "_Opaque":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "Opaque"


OPAQUE = _Opaque()

Fingerprint = Hashable


def _scalar_tag(value: Any) -> str | None:
    if value is None:
        return "none"
    for kind, tag in _SCALAR_TAGS:
        if isinstance(value, kind):
            return tag
    return None


def fingerprint(value: Any) -> Fingerprint:
    """Return the shape fingerprint of ``value``.

    Examples:
        >>> fingerprint({"value": 5, "tags": ["a", 1]})
        ('map', (('tags', ('seq', ('str', 'int'))), ('value', 'int')))
        >>> fingerprint(object())
        Opaque
    """
    tag = _scalar_tag(value)
    if tag is not None:
        return tag
    if isinstance(value, Mapping):
        items = sorted(
            ((key, fingerprint(item)) for key, item in value.items()),
            key=lambda pair: repr(pair[0]),
        )
        return ("map", tuple(items))
    if isinstance(value, (list, tuple)):
        return ("seq", tuple(fingerprint(item) for item in value))
    return OPAQUE


def _canonical(value: Any) -> Any:
    tag = _scalar_tag(value)
    if tag is not None:
        return (tag, value)
    if isinstance(value, Mapping):
        return (
            "map",
            tuple(
                sorted(
                    ((_canonical(key), _canonical(item)) for key, item in value.items()),
                    key=repr,
                )
            ),
        )
    if isinstance(value, (list, tuple)):
        return (type(value).__name__, tuple(_canonical(item) for item in value))
    if isinstance(value, (set, frozenset)):
        return ("set", tuple(sorted((_canonical(item) for item in value), key=repr)))
    if hasattr(value, "model_dump"):
        return (type(value).__qualname__, _canonical(value.model_dump()))
    raise CacheError(f"Cannot derive a cache signature for {type(value).__name__} values")


def _digest(payload: Any) -> str:
    return hashlib.blake2b(repr(payload).encode("utf-8"), digest_size=16).hexdigest()


def signature(value: Any) -> str:
    """Return a digest of the full value of ``value``.

    Raises:
        CacheError: If the value contains objects without a canonical form.
    """
    return _digest(_canonical(value))


def structure_key(value: Any) -> str:
    """Content-insensitive key: equal for all values with the same shape."""
    return _digest(fingerprint(value))


def _limited_digest(value: Any) -> Any:
    if isinstance(value, str):
        if len(value) <= 16:
            return ("str", hashlib.sha256(value.encode("utf-8")).hexdigest())
        edges = value[:8] + value[-8:]
        return ("str", len(value), hashlib.sha256(edges.encode("utf-8")).hexdigest())
    if isinstance(value, (list, tuple)):
        return ("seq", len(value), tuple(fingerprint(item) for item in value[:5]))
    return _canonical(value)


def signature_key(value: Any) -> str:
    """Signature-based partial key.

    Long strings are keyed by their length and edge slices and sequences by
    their length and leading element shapes, so similar inputs share a key.
    """
    if isinstance(value, Mapping):
        payload = tuple(
            sorted(((str(key), _limited_digest(item)) for key, item in value.items()), key=repr)
        )
    else:
        payload = _limited_digest(value)
    return _digest(payload)


def fields_key(*fields: str) -> Callable[[Mapping[str, Any]], str]:
    """Build a key function that signs only the named fields of a mapping."""

    def key_fn(inputs: Mapping[str, Any]) -> str:
        return signature({name: inputs.get(name) for name in fields})

    key_fn.__name__ = f"fields_key_{'_'.join(fields)}"
    return key_fn


__all__ = [
    "OPAQUE",
    "Fingerprint",
    "fingerprint",
    "signature",
    "structure_key",
    "signature_key",
    "fields_key",
]
