"""Tests for envelope probing and field-alias normalization."""

from decimal import Decimal

import pytest

from aliprice.ingest.normalizer import (
    PRODUCT_ENVELOPE_PATHS,
    ProductRecord,
    extract_array,
    find_error,
    matches_category,
    normalize_categories,
    normalize_product,
    normalize_products,
    normalize_sku_detail,
    to_decimal,
    to_int,
)

RAW = {"product_id": 1005001, "product_title": "Mug", "lastest_volume": "1,204"}


def test_alias_only_record_normalizes():
    record = normalize_product({"item_id": "42", "sale_num": "1.2k+ sold 300", "item_url": "https://x/42"})
    assert record.id == "42"
    assert isinstance(record.sold, int)
    assert record.sold == 12300
    assert record.url == "https://x/42"


def test_every_field_present_with_defaults():
    record = normalize_product({})
    assert record.id is None
    assert record.title is None
    assert record.sold == 0
    assert record.review_count == 0
    assert record.currency == "KRW"
    assert record.price is None


def test_first_alias_wins():
    record = normalize_product({
        "target_app_sale_price": "12,900",
        "app_sale_price": "15000",
        "target_app_sale_price_currency": "KRW",
        "lastest_volume": 10,
        "sale_num": 99,
        "promotion_link": "https://s.click/1",
        "product_detail_url": "https://item/1",
    })
    assert record.price == Decimal("12900")
    assert record.sold == 10
    assert record.url == "https://s.click/1"
    assert record.detail_url == "https://item/1"


def test_coercions():
    assert to_int("₩1,234") == 1234
    assert to_int(None) == 0
    assert to_int("n/a") == 0
    assert to_decimal("₩12,900.50") == Decimal("12900.50")
    assert to_decimal("") is None
    assert to_decimal(3.5) == Decimal("3.5")


@pytest.mark.parametrize("body", [
    {"resp_result": {"result": {"products": {"product": [RAW]}}}},
    {"resp_result": {"result": {"products": [RAW]}}},
    {"resp_result": {"result": {"items": [RAW]}}},
    {"result": {"products": {"product": [RAW]}}},
    {"result": {"items": [RAW]}},
    {"data": {"products": [RAW]}},
    {"aliexpress_affiliate_product_query_response": {"resp_result": {"result": {"products": {"product": [RAW]}}}}},
    {"aliexpress_affiliate_product_query_response": {"resp_result": {"result": {"products": {"0": RAW}}}}},
])
def test_envelope_shapes(body):
    records = normalize_products(body)
    assert [r.id for r in records] == ["1005001"]
    assert records[0].sold == 1204


def test_unknown_envelope_is_empty():
    assert normalize_products({"something": {"else": []}}) == []
    assert normalize_products({}) == []
    assert extract_array("not a body", PRODUCT_ENVELOPE_PATHS) == []


def test_path_order_is_precedence():
    body = {
        "resp_result": {"result": {"products": {"product": [{"product_id": 1}]}}},
        "result": {"items": [{"product_id": 2}]},
    }
    assert [r.id for r in normalize_products(body)] == ["1"]


def test_find_error_payloads():
    assert find_error({"error_response": {"code": 15, "msg": "Invalid signature"}})["code"] == 15
    wrapped = {"x_response": {"resp_result": {"resp_code": 402, "resp_msg": "Invalid parameter"}}}
    assert find_error(wrapped) == {"code": 402, "msg": "Invalid parameter"}
    assert find_error({"resp_result": {"resp_code": 200, "result": {}}}) is None
    assert find_error({}) is None


def test_matches_category_first_or_second_level():
    record = ProductRecord(id="1", category_id_1=2, category_id_2=205)
    assert matches_category(record, 2)
    assert matches_category(record, "205")
    assert not matches_category(record, 3)
    assert matches_category(record, None)


SKU_BODY = {
    "aliexpress_affiliate_product_sku_detail_get_response": {
        "result": {
            "result": {
                "ae_item_info": {
                    "title": "Mug",
                    "store_name": "Cup Store",
                    "product_score": "4.8",
                    "review_number": "1,020",
                    "image_link": "https://img/1.jpg",
                    "additional_image_links": {"string": ["https://img/2.jpg", "https://img/3.jpg"]},
                    "display_category_id_l1": "2",
                    "display_category_name_l1": "Food",
                    "original_link": "https://item/1",
                },
                "ae_item_sku_info": {
                    "traffic_sku_info_list": [
                        {
                            "sku_id": "12000001",
                            "color": "Red ",
                            "price_with_tax": "15,000",
                            "sale_price_with_tax": "12,000",
                            "discount_rate": "20",
                            "sku_properties": "Color:Red",
                        },
                        {"sku_id": "12000002", "color": "Blue", "currency": "USD", "sale_price_with_tax": "9.5"},
                    ]
                },
            }
        }
    }
}


def test_sku_detail_extraction():
    [detail] = normalize_sku_detail(SKU_BODY)
    assert detail.title == "Mug"
    assert detail.store_name == "Cup Store"
    assert detail.product_score == Decimal("4.8")
    assert detail.review_number == 1020
    assert detail.additional_image_links == ["https://img/2.jpg", "https://img/3.jpg"]
    assert detail.category_id_1 == 2
    assert detail.category_id_3 is None

    first, second = detail.skus
    assert first.sku_id == 12000001
    assert first.sale_price_with_tax == Decimal("12000")
    assert first.price_with_tax == Decimal("15000")
    assert first.currency == "KRW"
    assert second.currency == "USD"
    assert second.sku_properties == ""


def test_sku_detail_missing_result():
    assert normalize_sku_detail({"aliexpress_affiliate_product_sku_detail_get_response": {"result": {}}}) == []
    assert normalize_sku_detail({}) == []


def test_categories_drop_invalid_rows():
    body = {"resp_result": {"result": {"categories": {"category": [
        {"category_id": 2, "category_name": "Food"},
        {"category_id": 205, "parent_category_id": 2, "category_name": "Snacks"},
        {"category_id": "x", "category_name": "Broken"},
        {"category_id": 9, "category_name": " "},
    ]}}}}
    records = normalize_categories(body)
    assert [(c.category_id, c.parent_category_id) for c in records] == [(2, None), (205, 2)]
    assert records[0].is_top_level
    assert not records[1].is_top_level
