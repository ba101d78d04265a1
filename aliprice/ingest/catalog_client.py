"""Method-level access to the affiliate catalog gateway."""

import logging
from typing import Iterable, Optional

from aliprice.config import Settings, settings
from aliprice.ingest.http_client import RequestExecutor, RetryPolicy
from aliprice.ingest.negotiator import (
    NegotiationResult,
    ProtocolNegotiator,
    default_candidates,
    sku_detail_candidates,
)
from aliprice.ingest.normalizer import (
    CategoryRecord,
    ProductDetail,
    ProductRecord,
    normalize_categories,
    normalize_products,
    normalize_sku_detail,
)

logger = logging.getLogger(__name__)

METHOD_PRODUCT_QUERY = "aliexpress.affiliate.product.query"
METHOD_SKU_DETAIL = "aliexpress.affiliate.product.sku.detail.get"
METHOD_PRODUCT_DETAIL = "aliexpress.affiliate.productdetail.get"
METHOD_CATEGORY_LIST = "aliexpress.affiliate.category.get"

# Server-side maximum for page_size
MAX_PAGE_SIZE = 50

PRODUCT_FIELDS = ",".join([
    "product_id",
    "product_title",
    "product_detail_url",
    "product_main_image_url",
    "target_app_sale_price",
    "target_app_sale_price_currency",
    "app_sale_price",
    "app_sale_price_currency",
    "sale_price",
    "sale_price_currency",
    "promotion_link",
    "lastest_volume",
    "evaluate_rate",
    "review_count",
    "first_level_category_id",
    "first_level_category_name",
    "second_level_category_id",
    "second_level_category_name",
])

# productdetail.get is limited to this many ids per call
PRODUCT_DETAIL_BATCH = 20


class CatalogClient:
    """
    One method per gateway call, each negotiated across candidates.

    The client owns its executor unless one is passed in.
    """

    def __init__(
        self,
        executor: Optional[RequestExecutor] = None,
        negotiator: Optional[ProtocolNegotiator] = None,
        config: Settings = settings,
    ):
        self.config = config
        self._owns_executor = executor is None and negotiator is None
        self.executor = executor or (negotiator.executor if negotiator else RequestExecutor(
            policy=RetryPolicy.for_catalog(config)
        ))
        self.negotiator = negotiator or ProtocolNegotiator(self.executor, config=config)

    async def close(self):
        if self._owns_executor:
            await self.executor.close()

    async def __aenter__(self) -> "CatalogClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _locale_params(self) -> dict:
        return {
            "target_language": self.config.target_language,
            "target_currency": self.config.target_currency,
            "ship_to_country": self.config.ship_to_country,
        }

    async def query_products_page(
        self,
        page_no: int,
        page_size: int = MAX_PAGE_SIZE,
        category_id: Optional[int | str] = None,
        keywords: Optional[str] = None,
        sort: Optional[str] = None,
    ) -> NegotiationResult[ProductRecord]:
        """
        Fetch one page of the product query.

        Items are normalized but not filtered; category filtering is the
        paginator's concern.
        """
        category = str(category_id) if category_id not in (None, "") else None
        biz = {
            "tracking_id": self.config.ae_tracking_id,
            "page_no": page_no,
            "page_size": min(page_size, MAX_PAGE_SIZE),
            "sort": sort or self.config.default_sort,
            "fields": PRODUCT_FIELDS,
            # Deployments disagree on the singular/plural name; send both
            "category_ids": category,
            "category_id": category,
            "keywords": keywords or None,
            **self._locale_params(),
        }
        return await self.negotiator.negotiate(
            METHOD_PRODUCT_QUERY, biz, normalize_products, default_candidates(self.config)
        )

    async def fetch_sku_detail(
        self,
        product_id: int | str,
        policy: Optional[RetryPolicy] = None,
    ) -> Optional[ProductDetail]:
        """
        Fetch product info plus SKU list for one product.

        Returns:
            The detail, or None when no candidate returned a result object
        """
        biz = {
            "tracking_id": self.config.ae_tracking_id,
            "product_id": str(product_id),
            **self._locale_params(),
        }
        result = await self.negotiator.negotiate(
            METHOD_SKU_DETAIL,
            biz,
            normalize_sku_detail,
            sku_detail_candidates(self.config),
            policy=policy,
        )
        return result.items[0] if result.items else None

    async def fetch_product_details(self, product_ids: Iterable[int | str]) -> list[ProductRecord]:
        """Product records for explicit ids, in batches of PRODUCT_DETAIL_BATCH."""
        ids = [str(pid) for pid in product_ids]
        records: list[ProductRecord] = []
        for start in range(0, len(ids), PRODUCT_DETAIL_BATCH):
            batch = ids[start:start + PRODUCT_DETAIL_BATCH]
            biz = {
                "tracking_id": self.config.ae_tracking_id,
                "product_ids": ",".join(batch),
                "country": self.config.ship_to_country,
                "fields": PRODUCT_FIELDS,
                **self._locale_params(),
            }
            result = await self.negotiator.negotiate(
                METHOD_PRODUCT_DETAIL, biz, normalize_products, default_candidates(self.config)
            )
            if result.empty:
                logger.warning(f"No product detail returned for ids {','.join(batch)}")
            records.extend(result.items)
        return records

    async def fetch_categories(self) -> list[CategoryRecord]:
        """The full category list (top-level and second-level)."""
        biz = {"country": self.config.ship_to_country, **self._locale_params()}
        result = await self.negotiator.negotiate(
            METHOD_CATEGORY_LIST, biz, normalize_categories, default_candidates(self.config)
        )
        logger.info(f"Fetched {len(result.items)} categories")
        return result.items
