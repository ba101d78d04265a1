"""Tests for protocol negotiation across candidates."""

from urllib.parse import parse_qs, urlsplit

import pytest

from aliprice.config import Settings
from aliprice.ingest.http_client import FetchFailure
from aliprice.ingest.negotiator import (
    Candidate,
    ProtocolNegotiator,
    UpstreamAPIError,
    default_candidates,
    sku_detail_candidates,
)
from aliprice.ingest.normalizer import normalize_products
from aliprice.ingest.signer import SignMethod, TimestampFormat, sign

CONFIG = Settings(ae_app_key="key", ae_app_secret="secret", ae_tracking_id="track", _env_file=None)
PRODUCTS = {"resp_result": {"result": {"products": {"product": [{"product_id": 1}, {"product_id": 2}]}}}}
EMPTY = {"resp_result": {"resp_code": 200, "result": {"products": {"product": []}}}}
REJECTED = {"error_response": {"code": "IncompleteSignature", "msg": "bad sign", "sub_code": "isv.sign"}}


class FakeExecutor:
    """Returns (or raises) one scripted response per call, recording URLs."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.urls = []

    async def get_json(self, url, policy=None, method_label=""):
        self.urls.append(url)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def test_default_candidate_order():
    candidates = default_candidates(CONFIG)
    assert [(c.label, c.sign_method, c.timestamp_format) for c in candidates] == [
        ("rest", SignMethod.HMAC_SHA256, TimestampFormat.EPOCH_MS),
        ("rest", SignMethod.MD5, TimestampFormat.EPOCH_MS),
        ("rest", SignMethod.HMAC_SHA256, TimestampFormat.FORMATTED_UTC),
        ("rest", SignMethod.MD5, TimestampFormat.FORMATTED_UTC),
        ("sync", SignMethod.MD5, TimestampFormat.FORMATTED_UTC),
    ]


def test_sku_detail_candidates_start_with_sync():
    first = sku_detail_candidates(CONFIG)[0]
    assert first.label == "sync"
    assert first.sign_method is SignMethod.SHA256


def test_built_params_are_signed():
    negotiator = ProtocolNegotiator(FakeExecutor(), config=CONFIG)
    candidate = Candidate(CONFIG.api_rest_endpoint, SignMethod.MD5, TimestampFormat.EPOCH_MS)
    params = negotiator.build_params("m", {"page_no": 1, "keywords": None}, candidate)

    assert params["app_key"] == "key"
    assert params["sign_method"] == "md5"
    assert "keywords" not in params
    assert params["sign"] == sign(params, "secret", SignMethod.MD5)


def test_build_url_carries_every_param():
    negotiator = ProtocolNegotiator(FakeExecutor(), config=CONFIG)
    candidate = default_candidates(CONFIG)[0]
    url = negotiator.build_url("m", {"page_no": 3}, candidate)
    query = query_of(url)

    assert url.startswith(CONFIG.api_rest_endpoint + "?")
    assert query["page_no"] == "3"
    assert query["method"] == "m"
    assert len(query["sign"]) == 64


@pytest.mark.asyncio
async def test_first_non_empty_candidate_wins():
    executor = FakeExecutor(REJECTED, EMPTY, PRODUCTS, PRODUCTS)
    negotiator = ProtocolNegotiator(executor, config=CONFIG)

    result = await negotiator.negotiate("m", {}, normalize_products)

    assert [p.id for p in result.items] == ["1", "2"]
    assert result.candidate == default_candidates(CONFIG)[2]
    assert len(executor.urls) == 3
    assert [query_of(u)["sign_method"] for u in executor.urls] == ["hmac-sha256", "md5", "hmac-sha256"]


@pytest.mark.asyncio
async def test_all_empty_returns_last_envelope():
    executor = FakeExecutor(*[EMPTY] * 5)
    negotiator = ProtocolNegotiator(executor, config=CONFIG)

    result = await negotiator.negotiate("m", {}, normalize_products)

    assert result.empty
    assert result.envelope == EMPTY
    assert len(executor.urls) == 5


@pytest.mark.asyncio
async def test_fetch_failure_moves_to_next_candidate():
    executor = FakeExecutor(FetchFailure("HTTP 404", status_code=404), PRODUCTS)
    negotiator = ProtocolNegotiator(executor, config=CONFIG)

    result = await negotiator.negotiate("m", {}, normalize_products)
    assert len(result.items) == 2


@pytest.mark.asyncio
async def test_all_fetch_failures_raise_last():
    failures = [FetchFailure(f"HTTP 50{i}", status_code=500 + i, transient=True) for i in range(5)]
    negotiator = ProtocolNegotiator(FakeExecutor(*failures), config=CONFIG)

    with pytest.raises(FetchFailure) as exc_info:
        await negotiator.negotiate("m", {}, normalize_products)
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_all_rejected_raises_upstream_error():
    negotiator = ProtocolNegotiator(FakeExecutor(*[REJECTED] * 5), config=CONFIG)

    with pytest.raises(UpstreamAPIError) as exc_info:
        await negotiator.negotiate("m", {}, normalize_products)
    assert exc_info.value.code == "IncompleteSignature"
    assert exc_info.value.sub_code == "isv.sign"


@pytest.mark.asyncio
async def test_explicit_candidate_list():
    only = [Candidate("https://other.test/api", SignMethod.MD5, TimestampFormat.FORMATTED_UTC)]
    executor = FakeExecutor(PRODUCTS)
    negotiator = ProtocolNegotiator(executor, config=CONFIG)

    await negotiator.negotiate("m", {}, normalize_products, candidates=only)

    assert executor.urls[0].startswith("https://other.test/api?")
    assert " " in query_of(executor.urls[0])["timestamp"]


@pytest.mark.asyncio
async def test_rate_limit_stops_probing():
    throttled = FetchFailure("HTTP 429", status_code=429, transient=True, retry_after=7.0)
    executor = FakeExecutor(throttled, PRODUCTS)
    negotiator = ProtocolNegotiator(executor, config=CONFIG)

    with pytest.raises(FetchFailure) as exc_info:
        await negotiator.negotiate("m", {}, normalize_products)

    assert exc_info.value.retry_after == 7.0
    assert len(executor.urls) == 1
