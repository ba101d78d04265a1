"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Category(Base):
    """Catalog category (flat reference table)."""

    __tablename__ = "categories"

    category_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    parent_category_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    category_name: Mapped[str] = mapped_column(String(255), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Product(Base):
    """Catalog product, keyed by the gateway's product id."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    detail_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    original_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    promotion_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    additional_image_links: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    sale_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="KRW", nullable=False)
    rating: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # e.g. "96.5%"
    product_score: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    review_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    volume: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # Recent sales
    store_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    category_id_1: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    category_name_1: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category_id_2: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    category_name_2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category_id_3: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    category_name_3: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    first_seen_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # Set on insert only
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Relationships
    skus: Mapped[list["ProductSku"]] = relationship(
        "ProductSku", back_populates="product", cascade="all, delete-orphan"
    )


class ProductSku(Base):
    """One SKU of a product, matched by (sku_id, normalized color)."""

    __tablename__ = "product_skus"
    __table_args__ = (
        UniqueConstraint("product_id", "sku_id", "color_key", name="uq_product_sku_color"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sku_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    color: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    color_key: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sku_properties: Mapped[str] = mapped_column(Text, default="", nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="KRW", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Relationships
    product: Mapped["Product"] = relationship("Product", back_populates="skus")
    price_points: Mapped[list["SkuPricePoint"]] = relationship(
        "SkuPricePoint", back_populates="sku", cascade="all, delete-orphan"
    )


class SkuPricePoint(Base):
    """Daily price observation; one row per SKU per store-local date."""

    __tablename__ = "sku_price_points"
    __table_args__ = (
        UniqueConstraint("sku_row_id", "date_key", name="uq_sku_price_point_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sku_row_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("product_skus.id", ondelete="CASCADE"), nullable=False
    )
    date_key: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD, UTC+9
    price_with_tax: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    sale_price_with_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    discount_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="KRW", nullable=False)
    collected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Relationships
    sku: Mapped["ProductSku"] = relationship("ProductSku", back_populates="price_points")
