"""Price-history merge: classify fresh SKU observations against stored rows.

Each SKU row keeps at most one PricePoint per calendar date (store-local,
UTC+9). For a fresh observation of an existing row:

- no PricePoint for today yet   -> first observation of the day
- today's stored sale price is strictly higher -> correction (replace)
- otherwise                      -> no-op

so the stored PricePoint for a day is always the lowest price seen that day.
Rows are matched on ``(sku_id, normalized color)``; an unmatched fresh row is
new even when its sku_id exists under another color.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Union

from aliprice import metrics
from aliprice.ingest.normalizer import SkuRecord

logger = logging.getLogger(__name__)

_COLOR_NOISE = re.compile(r"[\s\u200b-\u200d\ufeff]+")


def normalize_color(value) -> str:
    """Stringify and strip all whitespace, including zero-width characters."""
    return _COLOR_NOISE.sub("", str(value or ""))


def date_key_kst(now: Optional[datetime] = None, offset_hours: int = 9) -> str:
    """Calendar date ("YYYY-MM-DD") in the fixed store-local offset."""
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local = moment.astimezone(timezone(timedelta(hours=offset_hours)))
    return local.strftime("%Y-%m-%d")


@dataclass(frozen=True)
class PricePoint:
    sale_price_with_tax: Decimal
    price_with_tax: Optional[Decimal] = None
    discount_rate: Optional[Decimal] = None
    currency: str = "KRW"
    collected_at: Optional[datetime] = None


@dataclass
class SkuRow:
    """A stored SKU with its date-keyed price history."""

    sku_id: int
    color: str = ""
    link: Optional[str] = None
    sku_properties: str = ""
    currency: str = "KRW"
    history: dict[str, PricePoint] = field(default_factory=dict)

    @property
    def color_key(self) -> str:
        return normalize_color(self.color)

    @property
    def key(self) -> tuple[int, str]:
        return (self.sku_id, self.color_key)

    def attributes(self) -> dict:
        """Non-history fields refreshed on every observation."""
        return {
            "color": self.color,
            "link": self.link,
            "sku_properties": self.sku_properties,
            "currency": self.currency,
        }


class MergeKind(str, Enum):
    NEW = "new"
    FIRST_OF_DAY = "first_of_day"
    CORRECTION = "correction"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


class SkuRowError(ValueError):
    """A fresh SKU row that cannot be merged (bad sku_id or price)."""

    def __init__(self, message: str, raw: Optional[SkuRecord] = None):
        super().__init__(message)
        self.raw = raw


@dataclass
class SkuChange:
    kind: MergeKind
    row: SkuRow
    date_key: str
    point: PricePoint


@dataclass
class MergePlan:
    date_key: str
    new: list[SkuChange] = field(default_factory=list)
    first_of_day: list[SkuChange] = field(default_factory=list)
    corrections: list[SkuChange] = field(default_factory=list)
    unchanged: int = 0
    skipped: list[SkuRowError] = field(default_factory=list)

    @property
    def has_writes(self) -> bool:
        return bool(self.new or self.first_of_day or self.corrections)

    def counts(self) -> dict[str, int]:
        return {
            MergeKind.NEW.value: len(self.new),
            MergeKind.FIRST_OF_DAY.value: len(self.first_of_day),
            MergeKind.CORRECTION.value: len(self.corrections),
            MergeKind.UNCHANGED.value: self.unchanged,
            MergeKind.SKIPPED.value: len(self.skipped),
        }


def to_sku_row(raw: SkuRecord, collected_at: datetime) -> tuple[SkuRow, PricePoint]:
    """
    Validate a fresh SKU record.

    Raises:
        SkuRowError: If sku_id is missing/non-numeric or the sale price is not a number
    """
    if raw.sku_id is None or isinstance(raw.sku_id, bool):
        raise SkuRowError("missing or non-numeric sku_id", raw)
    try:
        sku_id = int(raw.sku_id)
    except (TypeError, ValueError):
        raise SkuRowError(f"non-numeric sku_id {raw.sku_id!r}", raw)
    sale = raw.sale_price_with_tax
    if sale is None or not isinstance(sale, Decimal) or not sale.is_finite():
        raise SkuRowError(f"sku {sku_id}: non-numeric sale price {sale!r}", raw)

    row = SkuRow(
        sku_id=sku_id,
        color=raw.color or "",
        link=raw.link,
        sku_properties=raw.sku_properties or "",
        currency=raw.currency or "KRW",
    )
    point = PricePoint(
        sale_price_with_tax=sale,
        price_with_tax=raw.price_with_tax,
        discount_rate=raw.discount_rate,
        currency=row.currency,
        collected_at=collected_at,
    )
    return row, point


def merge(
    existing: Iterable[SkuRow],
    fresh: Iterable[SkuRecord],
    today: str,
    now: Optional[datetime] = None,
) -> MergePlan:
    """
    Compute the write set for one product.

    Args:
        existing: Stored SKU rows (with history) for the product
        fresh: Freshly fetched SKU records
        today: Date key the observations belong to
        now: Observation timestamp (defaults to the wall clock)

    Returns:
        MergePlan; malformed fresh rows land in ``skipped``
    """
    collected_at = now or datetime.now(timezone.utc)
    stored = {row.key: row for row in existing}
    plan = MergePlan(date_key=today)

    # Last duplicate of a (sku_id, color) key wins
    latest: dict[tuple[int, str], tuple[SkuRow, PricePoint]] = {}
    for raw in fresh:
        try:
            row, point = to_sku_row(raw, collected_at)
        except SkuRowError as e:
            logger.warning(f"Skipping SKU row: {e}")
            plan.skipped.append(e)
            continue
        latest[row.key] = (row, point)

    for key, (row, point) in latest.items():
        current = stored.get(key)
        if current is None:
            row.history = {today: point}
            plan.new.append(SkuChange(MergeKind.NEW, row, today, point))
            continue

        recorded = current.history.get(today)
        if recorded is None:
            plan.first_of_day.append(SkuChange(MergeKind.FIRST_OF_DAY, row, today, point))
        elif recorded.sale_price_with_tax > point.sale_price_with_tax:
            plan.corrections.append(SkuChange(MergeKind.CORRECTION, row, today, point))
        else:
            plan.unchanged += 1

    for kind, count in plan.counts().items():
        if count:
            metrics.sku_merge_operations_total.labels(kind=kind).inc(count)
    return plan


def apply_plan(existing: Iterable[SkuRow], plan: MergePlan) -> list[SkuRow]:
    """Return the SKU rows as they look after ``plan`` is written (pure, in memory)."""
    rows = {row.key: replace(row, history=dict(row.history)) for row in existing}
    for change in plan.first_of_day + plan.corrections:
        target = rows[change.row.key]
        target.color, target.link = change.row.color, change.row.link
        target.sku_properties, target.currency = change.row.sku_properties, change.row.currency
        target.history[change.date_key] = change.point
    for change in plan.new:
        rows.setdefault(change.row.key, replace(change.row, history={change.date_key: change.point}))
    return list(rows.values())


# =============================================================================
# Store operations
# =============================================================================

@dataclass
class PushSkuEntries:
    """Append new SKU rows, each seeded with its first PricePoint."""

    product_id: int
    entries: list[SkuRow]
    date_key: str


@dataclass
class UpdateSkuEntry:
    """
    Refresh one SKU row matched by (sku_id, color_key) and write today's point.

    ``only_if_lower`` turns the point write into a guarded replace that only
    lands while the stored sale price is still higher.
    """

    product_id: int
    sku_id: int
    color_key: str
    fields: dict
    date_key: str
    point: PricePoint
    only_if_lower: bool = False


StoreOperation = Union[PushSkuEntries, UpdateSkuEntry]


def build_operations(product_id: int, plan: MergePlan) -> list[StoreOperation]:
    """Minimal store operations for a plan; empty when nothing changed."""
    ops: list[StoreOperation] = []
    if plan.new:
        ops.append(PushSkuEntries(
            product_id=product_id,
            entries=[change.row for change in plan.new],
            date_key=plan.date_key,
        ))
    for change in plan.first_of_day + plan.corrections:
        ops.append(UpdateSkuEntry(
            product_id=product_id,
            sku_id=change.row.sku_id,
            color_key=change.row.color_key,
            fields=change.row.attributes(),
            date_key=change.date_key,
            point=change.point,
            only_if_lower=change.kind is MergeKind.CORRECTION,
        ))
    return ops
