"""
Tests for the shared Stripe/money helpers.
"""

from decimal import Decimal

import pytest

from payments import (cents_to_dollars, idempotency_key, iso_from_unix, num_or_none, quantize_cents, res_id_of,
                      round2, short_hash, stripe_id, to_cents)


class TestMoney:

    @pytest.mark.parametrize("value, expected", [
        ("12.5", 12.5), (7, 7.0), ("", None), ("  ", None), (None, None), ("abc", None), (True, None), ("nan", None),
    ])
    def test_num_or_none(self, value, expected):
        assert num_or_none(value) == expected

    def test_half_up_rounding(self):
        assert round2(2.675) == 2.68
        assert to_cents(1.005) == 101
        assert to_cents(129.1) == 12910

    def test_quantize_cents_returns_decimal(self):
        assert quantize_cents(0.125) == Decimal("0.13")
        assert quantize_cents("10") == Decimal("10.00")

    def test_cents_to_dollars(self):
        assert cents_to_dollars(2500) == 25.0
        assert cents_to_dollars(None) is None


class TestKeys:

    def test_short_hash_is_stable_hex(self):
        assert short_hash("a") == "61"
        assert short_hash("ab") == format(97 * 31 + 98, "x")
        assert short_hash(None) == "0"

    def test_idempotency_key_is_capped(self):
        assert idempotency_key("RES", "K1", 2500) == "RES_K1_2500"
        assert len(idempotency_key("x" * 300)) == 255

    def test_iso_from_unix(self):
        assert iso_from_unix(0) != ""
        assert iso_from_unix(1717200000) == "2024-06-01T00:00:00+00:00"


class TestFields:

    def test_stripe_id_handles_expanded_objects(self):
        assert stripe_id("ch_1") == "ch_1"
        assert stripe_id({"id": "ch_2"}) == "ch_2"
        assert stripe_id("") is None
        assert stripe_id(None) is None

    def test_res_id_alternate_spellings(self):
        assert res_id_of({"Res_ID": " 12 "}) == "12"
        assert res_id_of({}) == ""
