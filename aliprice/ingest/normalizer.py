"""Normalize structurally variable gateway responses onto fixed records.

Two data tables drive everything here:

- ``PRODUCT_ENVELOPE_PATHS`` lists where a product array may sit inside a
  response; the first path that resolves to an array wins.
- ``PRODUCT_FIELDS`` / ``SKU_FIELDS`` / ... map each internal field to an
  ordered list of upstream aliases plus a coercion; the first alias present
  wins.

Both are evaluated by small interpreters (``extract_array`` and
``resolve_fields``) so precedence can be tested without any fetching.
"""

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"[^\d]")
_NON_NUMERIC = re.compile(r"[^\d.\-]")

Path = tuple[str, ...]

# Searched under the body itself and under every "<method>_response" wrapper
PRODUCT_ENVELOPE_PATHS: list[Path] = [
    ("resp_result", "result", "products", "product"),
    ("resp_result", "result", "products"),
    ("resp_result", "result", "items"),
    ("result", "products", "product"),
    ("result", "products"),
    ("result", "items"),
    ("data", "products", "product"),
    ("data", "products"),
]

CATEGORY_ENVELOPE_PATHS: list[Path] = [
    ("resp_result", "result", "categories", "category"),
    ("resp_result", "result", "categories"),
    ("result", "categories", "category"),
    ("result", "categories"),
]

# SKU detail responses carry a single object, nested once more
SKU_DETAIL_ENVELOPE_PATHS: list[Path] = [
    ("result", "result"),
    ("resp_result", "result"),
    ("result",),
]

# Wrapper keys that hold an array inside an object ({"product": [...]})
_ARRAY_WRAPPER_KEYS = ("product", "products", "items", "list", "category")


# =============================================================================
# Coercions
# =============================================================================

def to_int(value: Any) -> int:
    """Counts: strip every non-digit character; absent/unparseable -> 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    digits = _NON_DIGITS.sub("", str(value))
    return int(digits) if digits else 0


def to_optional_int(value: Any) -> Optional[int]:
    """Identifiers: strip non-digits; absent/unparseable -> None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    digits = _NON_DIGITS.sub("", str(value))
    return int(digits) if digits else None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Prices: keep digits, sign and decimal point ("₩12,900" -> 12900)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def to_text(value: Any) -> Optional[str]:
    """Text/identifier: stringified and stripped; empty -> None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_string_list(value: Any) -> list[str]:
    """Image lists arrive as a list, a {"string": [...]} wrapper, or one string."""
    if value is None:
        return []
    if isinstance(value, Mapping):
        value = value.get("string", [])
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v]
    return []


# =============================================================================
# Field tables
# =============================================================================

@dataclass(frozen=True)
class FieldSpec:
    """One target field: ordered upstream aliases plus a coercion."""

    name: str
    aliases: tuple[str, ...]
    coerce: Callable[[Any], Any] = to_text
    default: Any = None


PRODUCT_FIELDS: list[FieldSpec] = [
    FieldSpec("id", ("product_id", "item_id", "productId", "itemId")),
    FieldSpec("title", ("product_title", "title")),
    FieldSpec("price", (
        "target_app_sale_price", "app_sale_price", "target_sale_price",
        "sale_price", "price",
    ), to_decimal),
    FieldSpec("currency", (
        "target_app_sale_price_currency", "app_sale_price_currency",
        "target_sale_price_currency", "sale_price_currency", "currency",
    ), default="KRW"),
    # "lastest_volume" is how the gateway actually spells it
    FieldSpec("sold", ("lastest_volume", "sale_num", "volume", "sales"), to_int, 0),
    FieldSpec("rating", ("evaluate_rate", "rating")),
    FieldSpec("review_count", ("review_count", "total_review_num", "evaluate_count"), to_int, 0),
    FieldSpec("image_url", ("product_main_image_url", "image_url", "main_image", "imageUrl")),
    FieldSpec("url", ("promotion_link", "product_detail_url", "product_url", "item_url", "url")),
    FieldSpec("detail_url", ("product_detail_url", "product_url", "item_url", "url")),
    FieldSpec("promotion_link", ("promotion_link",)),
    FieldSpec("category_id_1", ("first_level_category_id",), to_optional_int),
    FieldSpec("category_name_1", ("first_level_category_name",)),
    FieldSpec("category_id_2", ("second_level_category_id",), to_optional_int),
    FieldSpec("category_name_2", ("second_level_category_name",)),
]

SKU_FIELDS: list[FieldSpec] = [
    FieldSpec("sku_id", ("sku_id", "skuId", "id"), to_optional_int),
    FieldSpec("color", ("color", "sku_color"), default=""),
    FieldSpec("link", ("link", "sku_link", "promotion_link")),
    FieldSpec("sku_properties", ("sku_properties", "sku_attr", "properties"), default=""),
    FieldSpec("currency", ("currency", "target_currency"), default="KRW"),
    FieldSpec("price_with_tax", ("price_with_tax", "price", "original_price"), to_decimal),
    FieldSpec("sale_price_with_tax", (
        "sale_price_with_tax", "sale_price", "target_sale_price",
    ), to_decimal),
    FieldSpec("discount_rate", ("discount_rate", "discount"), to_decimal),
]

DETAIL_INFO_FIELDS: list[FieldSpec] = [
    FieldSpec("title", ("title", "product_title")),
    FieldSpec("original_link", ("original_link", "product_detail_url")),
    FieldSpec("store_name", ("store_name", "shop_name")),
    FieldSpec("product_score", ("product_score", "evaluate_rate"), to_decimal),
    FieldSpec("review_number", ("review_number", "review_count"), to_int, 0),
    FieldSpec("image_link", ("image_link", "product_main_image_url")),
    FieldSpec("additional_image_links", ("additional_image_links",), to_string_list, []),
    FieldSpec("category_id_1", ("display_category_id_l1",), to_optional_int),
    FieldSpec("category_id_2", ("display_category_id_l2",), to_optional_int),
    FieldSpec("category_id_3", ("display_category_id_l3",), to_optional_int),
    FieldSpec("category_name_1", ("display_category_name_l1",)),
    FieldSpec("category_name_2", ("display_category_name_l2",)),
    FieldSpec("category_name_3", ("display_category_name_l3",)),
]

CATEGORY_FIELDS: list[FieldSpec] = [
    FieldSpec("category_id", ("category_id", "categoryId"), to_optional_int),
    FieldSpec("parent_category_id", ("parent_category_id", "parentCategoryId"), to_optional_int),
    FieldSpec("category_name", ("category_name", "name")),
]


def resolve_fields(raw: Mapping[str, Any], fields: Sequence[FieldSpec]) -> dict[str, Any]:
    """
    Resolve every field against a raw record.

    Every target key is present in the result: the first alias holding a
    non-None value is coerced; otherwise the field default applies.
    """
    resolved: dict[str, Any] = {}
    for target in fields:
        value = None
        for alias in target.aliases:
            candidate = raw.get(alias)
            if candidate is not None:
                value = target.coerce(candidate)
                break
        if value is None:
            value = list(target.default) if isinstance(target.default, list) else target.default
        resolved[target.name] = value
    return resolved


# =============================================================================
# Records
# =============================================================================

@dataclass
class ProductRecord:
    """A product as listed by a catalog query."""

    id: Optional[str]
    title: Optional[str] = None
    price: Optional[Decimal] = None
    currency: str = "KRW"
    sold: int = 0
    rating: Optional[str] = None
    review_count: int = 0
    image_url: Optional[str] = None
    url: Optional[str] = None
    detail_url: Optional[str] = None
    promotion_link: Optional[str] = None
    category_id_1: Optional[int] = None
    category_name_1: Optional[str] = None
    category_id_2: Optional[int] = None
    category_name_2: Optional[str] = None


@dataclass
class SkuRecord:
    """One SKU as returned by the SKU-detail endpoint."""

    sku_id: Optional[int]
    color: str = ""
    link: Optional[str] = None
    sku_properties: str = ""
    currency: str = "KRW"
    price_with_tax: Optional[Decimal] = None
    sale_price_with_tax: Optional[Decimal] = None
    discount_rate: Optional[Decimal] = None


@dataclass
class ProductDetail:
    """SKU-detail response: product info plus its SKU list."""

    title: Optional[str] = None
    original_link: Optional[str] = None
    store_name: Optional[str] = None
    product_score: Optional[Decimal] = None
    review_number: int = 0
    image_link: Optional[str] = None
    additional_image_links: list[str] = field(default_factory=list)
    category_id_1: Optional[int] = None
    category_id_2: Optional[int] = None
    category_id_3: Optional[int] = None
    category_name_1: Optional[str] = None
    category_name_2: Optional[str] = None
    category_name_3: Optional[str] = None
    skus: list[SkuRecord] = field(default_factory=list)


@dataclass
class CategoryRecord:
    category_id: int
    category_name: str
    parent_category_id: Optional[int] = None

    @property
    def is_top_level(self) -> bool:
        return not self.parent_category_id


# =============================================================================
# Envelope probing
# =============================================================================

def _walk(root: Any, path: Path) -> Any:
    cur = root
    for key in path:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(key)
    return cur


def _as_array(value: Any) -> Optional[list]:
    """Return value as a list of records if it is (or wraps) one."""
    if isinstance(value, list):
        return value
    if not isinstance(value, Mapping) or not value:
        return None
    for key in _ARRAY_WRAPPER_KEYS:
        if isinstance(value.get(key), list):
            return value[key]
    # Array-like object: {"0": {...}, "1": {...}}
    if all(isinstance(k, str) and k.isdigit() for k in value):
        return [value[k] for k in sorted(value, key=int)]
    return None


def envelope_roots(body: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    """The body itself followed by any method-name-prefixed response wrappers."""
    roots: list[Mapping[str, Any]] = [body]
    for key, value in body.items():
        if key.endswith("_response") and key != "error_response" and isinstance(value, Mapping):
            roots.append(value)
    return roots


def extract_array(body: Any, paths: Iterable[Path]) -> list:
    """
    Return the first array found by probing ``paths`` under each envelope root.

    An empty list means no path resolved.
    """
    if not isinstance(body, Mapping):
        return []
    paths = list(paths)
    for root in envelope_roots(body):
        for path in paths:
            found = _as_array(_walk(root, path))
            if found is not None:
                return found
    return []


def extract_object(body: Any, paths: Iterable[Path]) -> Optional[Mapping[str, Any]]:
    """Return the first non-empty object found by probing ``paths``."""
    if not isinstance(body, Mapping):
        return None
    paths = list(paths)
    for root in envelope_roots(body):
        for path in paths:
            found = _walk(root, path)
            if isinstance(found, Mapping) and found:
                return found
    return None


def find_error(body: Any) -> Optional[Mapping[str, Any]]:
    """
    Return the gateway error payload, if any.

    Errors arrive either as ``error_response`` or as a non-200 ``resp_code``
    inside the (possibly wrapped) result.
    """
    if not isinstance(body, Mapping):
        return None
    if isinstance(body.get("error_response"), Mapping):
        return body["error_response"]
    for root in envelope_roots(body):
        for holder in (root, root.get("resp_result")):
            if not isinstance(holder, Mapping) or "resp_code" not in holder:
                continue
            if to_optional_int(holder.get("resp_code")) not in (None, 200):
                return {"code": holder.get("resp_code"), "msg": holder.get("resp_msg")}
    return None


# =============================================================================
# Public normalizers
# =============================================================================

def normalize_product(raw: Mapping[str, Any]) -> ProductRecord:
    return ProductRecord(**resolve_fields(raw, PRODUCT_FIELDS))


def normalize_products(body: Any) -> list[ProductRecord]:
    """Extract and normalize the product array of a catalog response."""
    return [
        normalize_product(raw)
        for raw in extract_array(body, PRODUCT_ENVELOPE_PATHS)
        if isinstance(raw, Mapping)
    ]


def normalize_sku(raw: Mapping[str, Any]) -> SkuRecord:
    return SkuRecord(**resolve_fields(raw, SKU_FIELDS))


def normalize_sku_detail(body: Any) -> list[ProductDetail]:
    """
    Extract the SKU-detail result.

    Returns a one-element list, or an empty list when the response carries
    no result object.
    """
    result = extract_object(body, SKU_DETAIL_ENVELOPE_PATHS)
    if result is None:
        return []

    info = result.get("ae_item_info")
    if not isinstance(info, Mapping):
        info = result
    sku_info = result.get("ae_item_sku_info")
    raw_skus = _as_array(sku_info.get("traffic_sku_info_list")) if isinstance(sku_info, Mapping) else None
    if raw_skus is None:
        raw_skus = _as_array(result.get("sku_list")) or []

    detail = ProductDetail(**resolve_fields(info, DETAIL_INFO_FIELDS))
    detail.skus = [normalize_sku(s) for s in raw_skus if isinstance(s, Mapping)]
    return [detail]


def normalize_categories(body: Any) -> list[CategoryRecord]:
    """Extract category rows; rows without a numeric id or a name are dropped."""
    records = []
    for raw in extract_array(body, CATEGORY_ENVELOPE_PATHS):
        if not isinstance(raw, Mapping):
            continue
        fields = resolve_fields(raw, CATEGORY_FIELDS)
        if fields["category_id"] is None or not fields["category_name"]:
            continue
        records.append(CategoryRecord(**fields))
    return records


def matches_category(record: ProductRecord, category_id: Optional[int | str]) -> bool:
    """True when the record's first- or second-level category is ``category_id``."""
    if category_id is None or category_id == "":
        return True
    wanted = to_optional_int(category_id)
    return wanted is not None and wanted in (record.category_id_1, record.category_id_2)
