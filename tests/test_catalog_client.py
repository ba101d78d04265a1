"""Catalog client tests over httpx.MockTransport (signing, negotiation, normalization)."""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from aliprice.config import Settings
from aliprice.ingest.catalog_client import (
    METHOD_CATEGORY_LIST,
    METHOD_PRODUCT_DETAIL,
    METHOD_PRODUCT_QUERY,
    METHOD_SKU_DETAIL,
    CatalogClient,
)
from aliprice.ingest.http_client import RequestExecutor, RetryPolicy
from aliprice.ingest.signer import sign

CONFIG = Settings(ae_app_key="key", ae_app_secret="secret", ae_tracking_id="track", _env_file=None)
NO_RETRY = RetryPolicy(name="test", timeout=2.0, max_retries=0, base_delay=0.0, max_delay=0.0)


def params_of(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(str(request.url)).query).items()}


def client_for(handler) -> CatalogClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CatalogClient(executor=RequestExecutor(client=http, policy=NO_RETRY), config=CONFIG)


@pytest.mark.asyncio
async def test_query_page_params_and_signature():
    seen = []

    def handler(request):
        params = params_of(request)
        seen.append(params)
        body = {"aliexpress_affiliate_product_query_response": {"resp_result": {"resp_code": 200, "result": {
            "products": {"product": [{"product_id": 11, "first_level_category_id": 2, "lastest_volume": 7}]}
        }}}}
        return httpx.Response(200, json=body)

    async with client_for(handler) as client:
        result = await client.query_products_page(3, page_size=80, category_id=2)

    [params] = seen
    assert params["method"] == METHOD_PRODUCT_QUERY
    assert params["page_no"] == "3"
    assert params["page_size"] == "50"
    assert params["category_ids"] == "2" and params["category_id"] == "2"
    assert params["tracking_id"] == "track"
    assert "keywords" not in params
    assert params["sign"] == sign(params, "secret", params["sign_method"])
    assert [p.id for p in result.items] == ["11"]
    assert result.items[0].sold == 7


@pytest.mark.asyncio
async def test_sku_detail_probes_until_a_result_appears():
    endpoints = []

    def handler(request):
        endpoints.append(urlsplit(str(request.url)).path)
        assert params_of(request)["method"] == METHOD_SKU_DETAIL
        if len(endpoints) == 1:
            return httpx.Response(200, json={"error_response": {"code": "InvalidTimestamp", "msg": "bad ts"}})
        return httpx.Response(200, json={"aliexpress_affiliate_product_sku_detail_get_response": {"result": {
            "result": {
                "ae_item_info": {"title": "Mug"},
                "ae_item_sku_info": {"traffic_sku_info_list": [{"sku_id": 5, "sale_price_with_tax": "990"}]},
            }
        }}})

    async with client_for(handler) as client:
        detail = await client.fetch_sku_detail(1005)

    assert endpoints == ["/sync", "/sync"]
    assert detail.title == "Mug"
    assert [s.sku_id for s in detail.skus] == [5]


@pytest.mark.asyncio
async def test_sku_detail_without_result_is_none():
    async with client_for(lambda request: httpx.Response(200, json={})) as client:
        assert await client.fetch_sku_detail(1) is None


@pytest.mark.asyncio
async def test_product_details_are_batched():
    batches = []

    def handler(request):
        params = params_of(request)
        assert params["method"] == METHOD_PRODUCT_DETAIL
        ids = params["product_ids"].split(",")
        batches.append(ids)
        return httpx.Response(200, json={"resp_result": {"result": {"products": {"product": [
            {"product_id": pid} for pid in ids
        ]}}}})

    async with client_for(handler) as client:
        records = await client.fetch_product_details(range(1, 46))

    assert [len(b) for b in batches] == [20, 20, 5]
    assert len(records) == 45


@pytest.mark.asyncio
async def test_fetch_categories():
    def handler(request):
        assert params_of(request)["method"] == METHOD_CATEGORY_LIST
        return httpx.Response(200, json={"aliexpress_affiliate_category_get_response": {"resp_result": {
            "resp_code": 200,
            "result": {"categories": {"category": [
                {"category_id": 2, "category_name": "Food"},
                {"category_id": 205, "parent_category_id": 2, "category_name": "Snacks"},
            ]}},
        }}})

    async with client_for(handler) as client:
        categories = await client.fetch_categories()

    assert [(c.category_id, c.parent_category_id) for c in categories] == [(2, None), (205, 2)]
