"""Product ORM model with reference links and sanitized descriptions."""
from sqlalchemy import String, ForeignKey, Numeric, Boolean, Date, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from catalog_import.db.base import Base, UUIDMixin, TimestampMixin
from datetime import date
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING
import uuid

if TYPE_CHECKING:
    from catalog_import.db.models.category import Category
    from catalog_import.db.models.producer import Producer
    from catalog_import.db.models.unit import Unit
    from catalog_import.db.models.variant import Variant
    from catalog_import.db.models.media import Image, Document
    from catalog_import.db.models.product_property import ProductProperty


class Product(Base, UUIDMixin, TimestampMixin):
    """Product model.

    Attributes:
        code: Supplier product code (business key)
        name: Display name
        vat: VAT rate in percent
        description_short: Escaped, length-bounded short description
        description_long: Escaped, length-bounded long description
        description_html: Escaped, length-bounded HTML description
        category_id: Reference to category (optional)
        producer_id: Reference to producer (optional)
        unit_id: Reference to unit (optional)

    Relationships:
        variants, images, documents, properties: Child rows, deleted with
            the product
    """

    __tablename__ = "products"

    code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    code_on_card: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ean: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    producer_code: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vat: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, server_default="0")
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    description_short: Mapped[str | None] = mapped_column(Text, nullable=True)
    description_long: Mapped[str | None] = mapped_column(Text, nullable=True)
    description_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, server_default="active")
    discontinued: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")

    category_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    producer_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("producers.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    unit_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("units.id", ondelete="SET NULL"),
        nullable=True
    )

    # Relationships
    category: Mapped[Optional["Category"]] = relationship(back_populates="products")
    producer: Mapped[Optional["Producer"]] = relationship(back_populates="products")
    unit: Mapped[Optional["Unit"]] = relationship()
    variants: Mapped[List["Variant"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", passive_deletes=True
    )
    images: Mapped[List["Image"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", passive_deletes=True
    )
    documents: Mapped[List["Document"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", passive_deletes=True
    )
    properties: Mapped[List["ProductProperty"]] = relationship(
        back_populates="product", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, code='{self.code}')>"
