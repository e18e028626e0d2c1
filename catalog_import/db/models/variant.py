"""Variant, stock and price ORM models."""
from sqlalchemy import String, ForeignKey, Numeric, Integer, Boolean, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from catalog_import.db.base import Base, UUIDMixin, TimestampMixin
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING
import uuid

if TYPE_CHECKING:
    from catalog_import.db.models.product import Product


class Variant(Base, UUIDMixin, TimestampMixin):
    """Sellable variant of a product (size, colour...)."""

    __tablename__ = "variants"

    code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_code: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    size: Mapped[str | None] = mapped_column(String(100), nullable=True)
    color: Mapped[str | None] = mapped_column(String(100), nullable=True)
    weight: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False, server_default="0")
    gross_weight: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False, server_default="0")
    status: Mapped[str] = mapped_column(String(32), nullable=False, server_default="active")

    product: Mapped["Product"] = relationship(back_populates="variants")
    stock: Mapped[Optional["Stock"]] = relationship(
        back_populates="variant", cascade="all, delete-orphan", passive_deletes=True
    )
    prices: Mapped[List["Price"]] = relationship(
        back_populates="variant", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Variant(id={self.id}, code='{self.code}')>"


class Stock(Base, UUIDMixin, TimestampMixin):
    """Stock level; one row per variant."""

    __tablename__ = "stocks"

    variant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("variants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    variant_code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    min_order_qty: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")

    variant: Mapped["Variant"] = relationship(back_populates="stock")


class Price(Base, UUIDMixin, TimestampMixin):
    """Variant price; one row per type, currency and minimum quantity."""

    __tablename__ = "prices"
    __table_args__ = (
        UniqueConstraint(
            'variant_code', 'price_type', 'currency', 'min_quantity',
            name='uq_price_variant_type_currency_qty'
        ),
        CheckConstraint('gross_price >= 0', name='check_gross_price_non_negative'),
        CheckConstraint('net_price >= 0', name='check_net_price_non_negative'),
    )

    variant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("variants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    variant_code: Mapped[str] = mapped_column(String(255), nullable=False)
    gross_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    net_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    price_type: Mapped[str] = mapped_column(String(32), nullable=False, server_default="retail")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default="EUR")
    min_quantity: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")

    variant: Mapped["Variant"] = relationship(back_populates="prices")
