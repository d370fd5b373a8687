"""Tests for shape fingerprints and cache signatures."""

import pytest

from emberjit.errors import CacheError
from emberjit.fingerprint import (
    OPAQUE,
    fields_key,
    fingerprint,
    signature,
    signature_key,
    structure_key,
)


def test_fingerprint_ignores_values_but_keeps_shape() -> None:
    assert fingerprint({"value": 1}) == fingerprint({"value": 99})
    assert fingerprint({"value": 1}) != fingerprint({"value": 1.0})
    assert fingerprint({"value": 1}) != fingerprint({"other": 1})
    assert fingerprint([1, "a"]) == ("seq", ("int", "str"))


def test_fingerprint_is_independent_of_key_order() -> None:
    assert fingerprint({"a": 1, "b": "x"}) == fingerprint({"b": "y", "a": 2})


def test_unknown_objects_are_opaque() -> None:
    assert fingerprint(object()) is OPAQUE
    assert hash(fingerprint({"handle": object()}))


def test_signature_distinguishes_values() -> None:
    assert signature({"a": 1, "b": [1, 2]}) == signature({"b": [1, 2], "a": 1})
    assert signature({"a": 1}) != signature({"a": 2})
    assert signature([1, 2]) != signature((1, 2))
    assert signature(True) != signature(1)


def test_signature_rejects_values_without_canonical_form() -> None:
    with pytest.raises(CacheError):
        signature({"handle": object()})


def test_structure_key_is_content_insensitive() -> None:
    assert structure_key({"prompt": "a"}) == structure_key({"prompt": "b"})


def test_signature_key_shares_keys_for_similar_long_text() -> None:
    first = "prefix--" + "x" * 50 + "--suffix"
    second = "prefix--" + "y" * 50 + "--suffix"

    assert signature_key({"text": first}) == signature_key({"text": second})
    assert signature_key({"text": "short"}) != signature_key({"text": "other"})


def test_fields_key_signs_selected_fields() -> None:
    key_fn = fields_key("a")

    assert key_fn({"a": 1, "b": 1}) == key_fn({"a": 1, "b": 2})
    assert key_fn({"a": 1}) != key_fn({"a": 2})
