"""One full catalog sync cycle: crawl, enrich, merge, persist."""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from aliprice.config import Settings, settings
from aliprice.db.store import ProductStore
from aliprice.ingest.catalog_client import CatalogClient
from aliprice.ingest.enrichment import EnrichedProduct, EnrichmentOrchestrator
from aliprice.ingest.normalizer import CategoryRecord, ProductRecord, to_optional_int
from aliprice.ingest.paginator import CatalogQuery, Paginator
from aliprice.logging_config import get_logger
from aliprice.sync.merge import build_operations, date_key_kst, merge

logger = logging.getLogger(__name__)


@dataclass
class SyncSummary:
    """Counts and failure samples for one run."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    categories: int = 0
    category_failures: list[tuple[str, str]] = field(default_factory=list)
    products_found: int = 0
    products_below_volume: int = 0
    products_synced: int = 0
    product_failures: list[tuple[str, str]] = field(default_factory=list)
    sku_changes: Counter = field(default_factory=Counter)
    operations_applied: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def failure_sample(self, limit: int = 5) -> list[tuple[str, str]]:
        return (self.category_failures + self.product_failures)[:limit]

    def log(self):
        logger.info(
            f"Sync finished in {self.duration_seconds:.1f}s: "
            f"{self.categories} categories ({len(self.category_failures)} failed), "
            f"{self.products_found} products found, {self.products_below_volume} below volume, "
            f"{self.products_synced} synced, {len(self.product_failures)} failed; "
            f"SKU changes {dict(self.sku_changes)}, {self.operations_applied} store operations"
        )
        for key, error in self.failure_sample():
            logger.warning(f"  failed {key}: {error}")


def product_fields(enriched: EnrichedProduct) -> dict:
    """Columns refreshed on every sync; detail values win over catalog values."""
    p, d = enriched.product, enriched.detail
    fields = {
        "title": d.title or p.title,
        "detail_url": p.detail_url or d.original_link,
        "original_link": d.original_link,
        "promotion_link": p.promotion_link or p.url,
        "image_url": d.image_link or p.image_url,
        "additional_image_links": d.additional_image_links or None,
        "sale_price": p.price,
        "currency": p.currency,
        "rating": p.rating,
        "product_score": d.product_score,
        "review_count": d.review_number or p.review_count,
        "volume": p.sold,
        "store_name": d.store_name,
        "category_id_1": d.category_id_1 or p.category_id_1,
        "category_name_1": d.category_name_1 or p.category_name_1,
        "category_id_2": d.category_id_2 or p.category_id_2,
        "category_name_2": d.category_name_2 or p.category_name_2,
        "category_id_3": d.category_id_3,
        "category_name_3": d.category_name_3,
    }
    # Absent values never clobber what an earlier sync stored
    return {k: v for k, v in fields.items() if v is not None}


class SyncRunner:
    """
    Runs one sync cycle against an explicitly connected store.

    Product ids and categories may be given explicitly; otherwise categories
    come from the store, and from the gateway when the store has none.
    """

    def __init__(
        self,
        client: CatalogClient,
        store: ProductStore,
        config: Settings = settings,
        paginator: Optional[Paginator] = None,
        orchestrator: Optional[EnrichmentOrchestrator] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.client = client
        self.store = store
        self.config = config
        self.paginator = paginator or Paginator(client, config=config)
        self.orchestrator = orchestrator or EnrichmentOrchestrator(client, config=config)
        self.clock = clock

    async def resolve_categories(self, category_ids: Optional[Iterable[int]] = None) -> list[int]:
        if category_ids:
            return list(dict.fromkeys(int(c) for c in category_ids))

        categories = await self.store.list_categories()
        if not categories:
            logger.info("No categories stored, fetching the category list")
            fetched: list[CategoryRecord] = await self.client.fetch_categories()
            await self.store.upsert_categories(fetched)
            categories = fetched
        return [c.category_id for c in categories]

    async def collect_products(
        self,
        category_ids: list[int],
        keywords: Optional[str],
        summary: SyncSummary,
    ) -> list[ProductRecord]:
        """Crawl every category under the category cap; one failing category is isolated."""
        queries = [CatalogQuery(category_id=cid, page_size=self.config.page_size) for cid in category_ids]
        if keywords:
            queries.append(CatalogQuery(keywords=keywords, page_size=self.config.page_size))
        summary.categories = len(queries)

        semaphore = asyncio.Semaphore(max(1, self.config.category_concurrency))

        async def crawl(query: CatalogQuery) -> list[ProductRecord]:
            async with semaphore:
                try:
                    return await self.paginator.collect(query)
                except Exception as e:
                    logger.warning(f"[{query.describe()}] crawl failed: {type(e).__name__}: {e}")
                    summary.category_failures.append((query.describe(), str(e)))
                    return []

        results = await asyncio.gather(*(crawl(q) for q in queries))

        merged: dict[str, ProductRecord] = {}
        for records in results:
            for record in records:
                merged[str(record.id)] = record
        return list(merged.values())

    async def persist(self, enriched: EnrichedProduct, summary: SyncSummary) -> None:
        """Upsert the product, merge its SKUs against a fresh read and apply the writes."""
        product_id = to_optional_int(enriched.product.id)
        if product_id is None:
            raise ValueError(f"non-numeric product id {enriched.product.id!r}")

        now = self.clock()
        today = date_key_kst(now, self.config.store_utc_offset_hours)

        await self.store.upsert_product(
            product_id,
            product_fields(enriched),
            on_insert={"first_seen_at": now.astimezone(timezone.utc).replace(tzinfo=None)},
        )
        existing = await self.store.load_sku_rows(product_id) or []
        plan = merge(existing, enriched.detail.skus, today, now=now)
        if plan.skipped:
            get_logger(__name__, product_id=product_id, date_key=today).warning(
                f"Product {product_id}: {len(plan.skipped)} SKU rows skipped"
            )
        summary.sku_changes.update({k: v for k, v in plan.counts().items() if v})
        summary.operations_applied += await self.store.apply(build_operations(product_id, plan))
        summary.products_synced += 1

    async def run(
        self,
        category_ids: Optional[Iterable[int]] = None,
        product_ids: Optional[Iterable[int | str]] = None,
        keywords: Optional[str] = None,
    ) -> SyncSummary:
        """
        Run one sync cycle.

        Args:
            category_ids: Restrict the crawl to these categories
            product_ids: Skip the crawl and sync exactly these products
            keywords: Additional keyword query

        Returns:
            SyncSummary (already logged)
        """
        summary = SyncSummary(started_at=self.clock())

        if product_ids:
            ids = [str(pid) for pid in product_ids]
            found = {str(p.id): p for p in await self.client.fetch_product_details(ids)}
            # Ids the detail call did not return are still enriched from their SKU detail
            products = [found.get(pid) or ProductRecord(id=pid) for pid in ids]
        else:
            categories = await self.resolve_categories(category_ids)
            logger.info(f"Syncing {len(categories)} categories")
            products = await self.collect_products(categories, keywords, summary)
            if self.config.min_volume > 0:
                kept = [p for p in products if p.sold >= self.config.min_volume]
                summary.products_below_volume = len(products) - len(kept)
                products = kept

        summary.products_found = len(products)
        logger.info(f"Enriching {len(products)} products")

        report = await self.orchestrator.enrich(
            products, after=lambda enriched: self.persist(enriched, summary)
        )
        summary.product_failures = [
            (product_id, f"{type(error).__name__}: {error}") for product_id, error in report.failed
        ]

        summary.finished_at = self.clock()
        summary.log()
        return summary
