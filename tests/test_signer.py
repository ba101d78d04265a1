"""Tests for request signing and timestamp encoding."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from aliprice.ingest.signer import (
    SignMethod,
    TimestampFormat,
    build_base_string,
    encode_timestamp,
    format_param,
    sign,
)

PARAMS = {
    "method": "aliexpress.affiliate.product.query",
    "app_key": "12345",
    "timestamp": "1700000000000",
    "a": "1",
    "sign": "STALE",
    "tracking_id": None,
}


def test_base_string_sorts_and_drops_sign_and_absent():
    assert build_base_string(PARAMS) == (
        "a1app_key12345methodaliexpress.affiliate.product.querytimestamp1700000000000"
    )


def test_hmac_sha256_known_vector():
    assert sign(PARAMS, "secret", SignMethod.HMAC_SHA256) == (
        "4C6E2C989ADCF3F5A35D5B251E004B3708726168705FFF8E03CCEA5502E11C69"
    )


def test_sha256_alias_matches_hmac():
    assert sign(PARAMS, "secret", "sha256") == sign(PARAMS, "secret", "hmac-sha256")


def test_md5_wraps_base_in_secret():
    assert sign(PARAMS, "secret", SignMethod.MD5) == "9BC14FE95467D4A2C0658EBFDAF6700D"


def test_unknown_algorithm_rejected():
    with pytest.raises(ValueError):
        sign(PARAMS, "secret", "sha1")


@pytest.mark.parametrize("method", ["hmac-sha256", "md5"])
def test_signature_invariant_to_insertion_order(method):
    rng = random.Random(7)
    for _ in range(50):
        params = {
            f"k{rng.randint(0, 999)}": str(rng.randint(0, 10**6)) for _ in range(rng.randint(1, 12))
        }
        params["absent"] = None
        items = list(params.items())
        rng.shuffle(items)
        shuffled = dict(items)
        shuffled["sign"] = "whatever"

        assert sign(params, "s3cr3t", method) == sign(shuffled, "s3cr3t", method)


def test_signature_changes_with_value():
    changed = dict(PARAMS, a="2")
    assert sign(changed, "secret", "md5") != sign(PARAMS, "secret", "md5")


def test_signature_is_uppercase_hex():
    sig = sign({"x": "y"}, "k", "hmac-sha256")
    assert sig == sig.upper()
    int(sig, 16)


def test_encode_timestamp_epoch_ms():
    now = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert encode_timestamp(TimestampFormat.EPOCH_MS, now) == "1700000000000"
    assert encode_timestamp(TimestampFormat.EPOCH_SECONDS, now) == "1700000000"


def test_encode_timestamp_formatted_is_utc():
    kst = timezone(timedelta(hours=9))
    now = datetime(2023, 11, 15, 7, 13, 20, tzinfo=kst)
    assert encode_timestamp("formatted_utc", now) == "2023-11-14 22:13:20"


def test_encode_timestamp_wall_clock_shapes():
    assert encode_timestamp(TimestampFormat.EPOCH_MS).isdigit()
    assert len(encode_timestamp(TimestampFormat.EPOCH_MS)) == 13
    assert len(encode_timestamp(TimestampFormat.FORMATTED_UTC)) == 19


def test_format_param_booleans():
    assert format_param(True) == "true"
    assert format_param(False) == "false"
    assert format_param(50) == "50"
