"""Category ORM model keyed by the feed's category identifier."""
from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from catalog_import.db.base import Base, UUIDMixin, TimestampMixin
from typing import List, TYPE_CHECKING

if TYPE_CHECKING:
    from catalog_import.db.models.product import Product


class Category(Base, UUIDMixin, TimestampMixin):
    """Category model.

    Attributes:
        external_id: Feed identifier (business key)
        name: Display name
        path: Slash-separated category path from the feed
        parent_external_id: Feed identifier of the parent category, if any
        idosell_path: Alternate path from <category_idosell>
    """

    __tablename__ = "categories"

    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    idosell_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    products: Mapped[List["Product"]] = relationship(back_populates="category")

    def __repr__(self) -> str:
        return f"<Category(id={self.id}, external_id='{self.external_id}')>"
