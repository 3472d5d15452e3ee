"""Tests for canonical JSON and stable hashing."""

import math
from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal
from enum import StrEnum
from pathlib import PurePosixPath

import pytest

from gantry.core.canonical import canonical_json, stable_hash


class Color(StrEnum):
    RED = "red"


class TestCanonicalJson:
    def test_keys_sorted_without_whitespace(self) -> None:
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_normalizes_stdlib_types(self) -> None:
        result = canonical_json(
            {
                "path": PurePosixPath("reports/junit.xml"),
                "color": Color.RED,
                "amount": Decimal("1.50"),
                "raw": b"\x00\x01",
            }
        )

        assert '"path":"reports/junit.xml"' in result
        assert '"color":"red"' in result
        assert '"amount":"1.50"' in result
        assert '"__bytes__":"AAE="' in result

    def test_datetimes_normalized_to_utc(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        local = datetime(2024, 1, 1, 14, 0, tzinfo=plus_two)
        utc = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

        assert canonical_json(local) == canonical_json(utc)

    def test_sets_are_order_independent(self) -> None:
        assert canonical_json({"codes": {2, 0, 1}}) == '{"codes":[0,1,2]}'

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf, Decimal("NaN")])
    def test_non_finite_rejected(self, value: object) -> None:
        with pytest.raises(ValueError, match="non-finite"):
            canonical_json({"value": value})


class TestStableHash:
    def test_key_order_does_not_matter(self) -> None:
        assert stable_hash({"a": 1, "b": 2}) == stable_hash({"b": 2, "a": 1})

    def test_different_content_different_hash(self) -> None:
        assert stable_hash({"timeout": 60}) != stable_hash({"timeout": 61})

    def test_is_sha256_hex(self) -> None:
        digest = stable_hash({"pipeline": "ci"})

        assert len(digest) == 64
        int(digest, 16)
