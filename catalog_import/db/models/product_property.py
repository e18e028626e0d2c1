"""Free-form product property ORM model."""
from sqlalchemy import String, ForeignKey, Integer, Boolean, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from catalog_import.db.base import Base, UUIDMixin, TimestampMixin
from typing import TYPE_CHECKING
import uuid

if TYPE_CHECKING:
    from catalog_import.db.models.product import Product


class ProductProperty(Base, UUIDMixin, TimestampMixin):
    """Name/value property of a product, unique per product and language."""

    __tablename__ = "product_properties"
    __table_args__ = (
        UniqueConstraint('product_code', 'name', 'language', name='uq_property_product_name_lang'),
    )

    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_code: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    group_name: Mapped[str] = mapped_column(String(255), nullable=False, server_default="General")
    language: Mapped[str] = mapped_column(String(10), nullable=False, server_default="en")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    is_filterable: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")

    product: Mapped["Product"] = relationship(back_populates="properties")
