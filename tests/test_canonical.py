"""Tests for canonical serialization."""

import json

import pytest

from common.exceptions import CanonicalizationError
from modules.websrm.canonical import canonicalize, payload_hash


class TestCanonicalize:
    """Deterministic text for structurally equal payloads."""

    def test_sorts_keys(self) -> None:
        assert canonicalize({"b": 1, "a": 2}) == '{"a":2,"b":1}'

    def test_sorts_nested_keys(self) -> None:
        payload = {"z": {"y": 1, "x": [{"d": 1, "c": 2}]}, "a": None}
        assert canonicalize(payload) == '{"a":null,"z":{"x":[{"c":2,"d":1}],"y":1}}'

    def test_lists_keep_order(self) -> None:
        assert canonicalize([3, 1, 2]) == "[3,1,2]"

    def test_insertion_order_irrelevant(self) -> None:
        a = {"idTrans": "1", "montTot": 2300, "desc": [{"qte": 1, "desc": "x"}]}
        b = {"desc": [{"desc": "x", "qte": 1}], "montTot": 2300, "idTrans": "1"}
        assert canonicalize(a) == canonicalize(b)

    def test_round_trips_as_json(self) -> None:
        payload = {"eCommerce": True, "montST": 2000, "desc": []}
        assert json.loads(canonicalize(payload)) == payload

    def test_non_ascii_kept_verbatim(self) -> None:
        assert canonicalize({"n": "é"}) == '{"n":"é"}'

    def test_cycle_raises(self) -> None:
        payload = {"a": 1}
        payload["self"] = payload
        with pytest.raises(CanonicalizationError):
            canonicalize(payload)

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), object(), {1, 2}])
    def test_unsupported_values_raise(self, value) -> None:
        with pytest.raises(CanonicalizationError):
            canonicalize({"v": value})


class TestPayloadHash:
    """SHA-256 over canonical text."""

    def test_hex_digest(self) -> None:
        digest = payload_hash('{"a":1}')
        assert len(digest) == 64
        assert digest == payload_hash('{"a":1}')
        assert digest != payload_hash('{"a":2}')
