"""Product store: explicit-lifecycle async client over the catalog tables.

All writes are idempotent upserts so concurrent writers for different
products never conflict, and every operation commits on its own.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload

from aliprice.config import Settings, settings
from aliprice.db.models import Base, Category, Product, ProductSku, SkuPricePoint
from aliprice.ingest.normalizer import CategoryRecord
from aliprice.sync.merge import PricePoint, PushSkuEntries, SkuRow, StoreOperation, UpdateSkuEntry

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp (columns are timezone-less)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class StoreNotConnectedError(RuntimeError):
    pass


class ProductStore:
    """
    Async store client.

    Usage:
        store = ProductStore(settings.database_url)
        await store.connect()
        ...
        await store.close()

    or ``async with ProductStore(url) as store:``.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: Optional[bool] = None,
        create_schema: bool = False,
        config: Settings = settings,
    ):
        self.database_url = database_url or config.database_url
        self.echo = config.database_echo if echo is None else echo
        self.create_schema = create_schema
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> "ProductStore":
        if self._engine is not None:
            return self
        self._engine = create_async_engine(self.database_url, echo=self.echo)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
        if self.create_schema:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Store connected ({self._engine.dialect.name})")
        return self

    async def close(self):
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None

    async def __aenter__(self) -> "ProductStore":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _session(self) -> AsyncSession:
        if self._sessions is None:
            raise StoreNotConnectedError("ProductStore.connect() has not been called")
        return self._sessions()

    def _insert(self, model):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        if self._engine is not None and self._engine.dialect.name == "sqlite":
            return sqlite.insert(model)
        return postgresql.insert(model)

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    async def upsert_product(
        self,
        product_id: int,
        fields: Mapping[str, Any],
        on_insert: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Insert or refresh a product row.

        Args:
            product_id: Gateway product id
            fields: Columns written on every call
            on_insert: Columns written only when the row is created
        """
        now = utcnow()
        values = {"id": product_id, **(on_insert or {}), **fields, "updated_at": now}
        stmt = self._insert(Product).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Product.id],
            set_={**fields, "updated_at": now},
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_product(self, product_id: int) -> Optional[Product]:
        async with self._session() as session:
            return await session.get(Product, product_id)

    # ------------------------------------------------------------------
    # SKUs and price history
    # ------------------------------------------------------------------

    async def load_sku_rows(self, product_id: int) -> Optional[list[SkuRow]]:
        """
        Point read of a product's SKU rows with their price maps.

        Returns:
            The rows (possibly empty), or None when the product does not exist
        """
        async with self._session() as session:
            exists = await session.scalar(select(Product.id).where(Product.id == product_id))
            if exists is None:
                return None
            result = await session.scalars(
                select(ProductSku)
                .where(ProductSku.product_id == product_id)
                .options(selectinload(ProductSku.price_points))
                .order_by(ProductSku.id)
            )
            return [
                SkuRow(
                    sku_id=sku.sku_id,
                    color=sku.color,
                    link=sku.link,
                    sku_properties=sku.sku_properties,
                    currency=sku.currency,
                    history={
                        pp.date_key: PricePoint(
                            sale_price_with_tax=pp.sale_price_with_tax,
                            price_with_tax=pp.price_with_tax,
                            discount_rate=pp.discount_rate,
                            currency=pp.currency,
                            collected_at=pp.collected_at,
                        )
                        for pp in sku.price_points
                    },
                )
                for sku in result
            ]

    def _point_insert(self, sku_row_id: int, date_key: str, point: PricePoint):
        return self._insert(SkuPricePoint).values(
            sku_row_id=sku_row_id,
            date_key=date_key,
            price_with_tax=point.price_with_tax,
            sale_price_with_tax=point.sale_price_with_tax,
            discount_rate=point.discount_rate,
            currency=point.currency,
            collected_at=_naive_utc(point.collected_at),
        )

    async def update_sku_entry(
        self,
        product_id: int,
        sku_id: int,
        color_key: str,
        fields: Mapping[str, Any],
        date_key: str,
        point: PricePoint,
        only_if_lower: bool = False,
    ) -> bool:
        """
        Refresh one SKU row and write its PricePoint for ``date_key``.

        Without ``only_if_lower`` an existing point for the date is kept
        (first observation wins). With it, the point is replaced only while
        the stored sale price is strictly higher.

        Returns:
            False when no SKU row matched
        """
        async with self._session() as session:
            sku_row_id = await session.scalar(
                select(ProductSku.id).where(
                    ProductSku.product_id == product_id,
                    ProductSku.sku_id == sku_id,
                    ProductSku.color_key == color_key,
                )
            )
            if sku_row_id is None:
                return False

            await session.execute(
                update(ProductSku)
                .where(ProductSku.id == sku_row_id)
                .values(**fields, updated_at=utcnow())
            )

            stmt = self._point_insert(sku_row_id, date_key, point)
            if only_if_lower:
                stmt = stmt.on_conflict_do_update(
                    index_elements=[SkuPricePoint.sku_row_id, SkuPricePoint.date_key],
                    set_={
                        "price_with_tax": stmt.excluded.price_with_tax,
                        "sale_price_with_tax": stmt.excluded.sale_price_with_tax,
                        "discount_rate": stmt.excluded.discount_rate,
                        "currency": stmt.excluded.currency,
                        "collected_at": stmt.excluded.collected_at,
                    },
                    where=SkuPricePoint.sale_price_with_tax > stmt.excluded.sale_price_with_tax,
                )
            else:
                stmt = stmt.on_conflict_do_nothing(
                    index_elements=[SkuPricePoint.sku_row_id, SkuPricePoint.date_key]
                )
            await session.execute(stmt)
            await session.commit()
        return True

    async def push_sku_entries(
        self,
        product_id: int,
        entries: Iterable[SkuRow],
        date_key: str,
    ) -> int:
        """
        Append new SKU rows, each seeded with its PricePoint for ``date_key``.

        Rows that already exist are left alone.

        Returns:
            Number of entries pushed
        """
        entries = list(entries)
        if not entries:
            return 0
        now = utcnow()

        async with self._session() as session:
            stmt = self._insert(ProductSku).values([
                {
                    "product_id": product_id,
                    "sku_id": row.sku_id,
                    "color": row.color,
                    "color_key": row.color_key,
                    "link": row.link,
                    "sku_properties": row.sku_properties,
                    "currency": row.currency,
                    "created_at": now,
                    "updated_at": now,
                }
                for row in entries
            ]).on_conflict_do_nothing(
                index_elements=[ProductSku.product_id, ProductSku.sku_id, ProductSku.color_key]
            )
            await session.execute(stmt)

            ids = {
                (sku_id, color_key): row_id
                for row_id, sku_id, color_key in await session.execute(
                    select(ProductSku.id, ProductSku.sku_id, ProductSku.color_key).where(
                        ProductSku.product_id == product_id,
                        ProductSku.sku_id.in_(sorted({row.sku_id for row in entries})),
                    )
                )
            }
            for row in entries:
                point = row.history.get(date_key)
                row_id = ids.get(row.key)
                if point is None or row_id is None:
                    continue
                await session.execute(
                    self._point_insert(row_id, date_key, point).on_conflict_do_nothing(
                        index_elements=[SkuPricePoint.sku_row_id, SkuPricePoint.date_key]
                    )
                )
            await session.commit()
        return len(entries)

    async def apply(self, operations: Iterable[StoreOperation]) -> int:
        """Apply merge operations in order, each committed on its own."""
        applied = 0
        for op in operations:
            if isinstance(op, PushSkuEntries):
                await self.push_sku_entries(op.product_id, op.entries, op.date_key)
            elif isinstance(op, UpdateSkuEntry):
                if not await self.update_sku_entry(
                    op.product_id, op.sku_id, op.color_key, op.fields,
                    op.date_key, op.point, op.only_if_lower,
                ):
                    logger.warning(
                        f"SKU {op.sku_id} of product {op.product_id} vanished before update"
                    )
                    continue
            else:
                raise TypeError(f"Unknown store operation: {type(op).__name__}")
            applied += 1
        return applied

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    async def upsert_categories(self, records: Iterable[CategoryRecord]) -> int:
        rows = [
            {
                "category_id": r.category_id,
                "parent_category_id": r.parent_category_id or None,
                "category_name": r.category_name,
                "updated_at": utcnow(),
            }
            for r in records
        ]
        if not rows:
            return 0
        stmt = self._insert(Category).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Category.category_id],
            set_={
                "parent_category_id": stmt.excluded.parent_category_id,
                "category_name": stmt.excluded.category_name,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with self._session() as session:
            await session.execute(stmt)
            await session.commit()
        return len(rows)

    async def list_categories(self, top_level_only: bool = False) -> list[CategoryRecord]:
        query = select(Category).order_by(Category.category_id)
        if top_level_only:
            query = query.where(Category.parent_category_id.is_(None))
        async with self._session() as session:
            result = await session.scalars(query)
            return [
                CategoryRecord(
                    category_id=c.category_id,
                    category_name=c.category_name,
                    parent_category_id=c.parent_category_id,
                )
                for c in result
            ]
