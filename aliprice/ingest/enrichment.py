"""Bounded-concurrency SKU-detail enrichment with per-product failure isolation."""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Iterable, Optional, Protocol, TypeVar

from aliprice import metrics
from aliprice.config import Settings, settings
from aliprice.ingest.http_client import (
    FetchFailure,
    RetryPolicy,
    TransientNetworkError,
    retry_async,
)
from aliprice.ingest.normalizer import ProductDetail, ProductRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EmptyResultError(RuntimeError):
    """The SKU-detail call succeeded but carried no result object."""

    def __init__(self, product_id: str):
        super().__init__(f"empty SKU-detail result for product {product_id}")
        self.product_id = product_id


class SkuDetailSource(Protocol):
    async def fetch_sku_detail(
        self, product_id: int | str, policy: Optional[RetryPolicy] = ...
    ) -> Optional[ProductDetail]:
        ...


@dataclass
class EnrichedProduct:
    product: ProductRecord
    detail: ProductDetail

    @property
    def product_id(self) -> str:
        return str(self.product.id)


@dataclass
class Outcome(Generic[T]):
    """Success or isolated failure of one submitted unit."""

    key: str
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class EnrichmentReport:
    succeeded: list[EnrichedProduct] = field(default_factory=list)
    failed: list[tuple[str, BaseException]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


def is_retryable_detail_error(exc: BaseException) -> bool:
    """Only exhausted transient fetches are retried per item; API errors and empties are final."""
    if isinstance(exc, TransientNetworkError):
        return True
    return isinstance(exc, FetchFailure) and exc.transient


class EnrichmentOrchestrator:
    """
    Runs one SKU-detail fetch per product under a concurrency cap.

    Each product is retried on its own with the detail policy. The executor
    underneath makes a single attempt per candidate so retries do not nest.
    Every task is awaited before the report is returned.
    """

    def __init__(
        self,
        source: SkuDetailSource,
        concurrency: Optional[int] = None,
        policy: Optional[RetryPolicy] = None,
        config: Settings = settings,
    ):
        self.source = source
        self.concurrency = max(1, concurrency or config.sku_concurrency)
        self.policy = policy or RetryPolicy.for_detail(config)
        self._attempt_policy = dataclasses.replace(self.policy, max_retries=0)

    async def enrich(
        self,
        products: Iterable[ProductRecord],
        after: Optional[Callable[[EnrichedProduct], Awaitable[None]]] = None,
    ) -> EnrichmentReport:
        """
        Enrich every product.

        Args:
            products: Products to enrich
            after: Optional coroutine run for each success while its slot is
                still held (used to persist immediately); an exception here
                marks that product as failed

        Returns:
            Report with ``len(succeeded) + len(failed)`` equal to the input size
        """
        products = list(products)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(product: ProductRecord) -> Outcome[EnrichedProduct]:
            key = str(product.id)
            async with semaphore:
                try:
                    enriched = await self._enrich_one(product)
                    if after is not None:
                        await after(enriched)
                except Exception as e:
                    logger.warning(f"Enrichment failed for product {key}: {type(e).__name__}: {e}")
                    metrics.enrichment_results_total.labels(status="failed").inc()
                    return Outcome(key=key, error=e)
            metrics.enrichment_results_total.labels(status="ok").inc()
            return Outcome(key=key, value=enriched)

        outcomes = await asyncio.gather(*(run(p) for p in products))

        report = EnrichmentReport()
        for outcome in outcomes:
            if outcome.ok:
                report.succeeded.append(outcome.value)
            else:
                report.failed.append((outcome.key, outcome.error))

        logger.info(
            f"Enrichment done: {len(report.succeeded)} succeeded, "
            f"{len(report.failed)} failed of {len(products)}"
        )
        return report

    async def _enrich_one(self, product: ProductRecord) -> EnrichedProduct:
        product_id = str(product.id)

        async def attempt() -> ProductDetail:
            detail = await self.source.fetch_sku_detail(product_id, policy=self._attempt_policy)
            if detail is None:
                raise EmptyResultError(product_id)
            return detail

        detail = await retry_async(
            attempt,
            self.policy,
            is_transient=is_retryable_detail_error,
            label=f"sku_detail[{product_id}]",
        )
        return EnrichedProduct(product=product, detail=detail)
