"""Image and document ORM models attached to products."""
from sqlalchemy import String, ForeignKey, Integer, Boolean, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from catalog_import.db.base import Base, UUIDMixin, TimestampMixin
from typing import TYPE_CHECKING
import uuid

if TYPE_CHECKING:
    from catalog_import.db.models.product import Product


class Image(Base, UUIDMixin, TimestampMixin):
    """Product image."""

    __tablename__ = "images"
    __table_args__ = (
        UniqueConstraint('product_code', 'url', name='uq_image_product_url'),
    )

    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_code: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    is_main: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")

    product: Mapped["Product"] = relationship(back_populates="images")


class Document(Base, UUIDMixin, TimestampMixin):
    """Downloadable product document (manual, data sheet...)."""

    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint('product_code', 'url', name='uq_document_product_url'),
    )

    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    product_code: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    doc_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    language: Mapped[str] = mapped_column(String(10), nullable=False, server_default="en")

    product: Mapped["Product"] = relationship(back_populates="documents")
