"""Producer ORM model keyed by name."""
from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from catalog_import.db.base import Base, UUIDMixin, TimestampMixin
from typing import List, TYPE_CHECKING

if TYPE_CHECKING:
    from catalog_import.db.models.product import Product


class Producer(Base, UUIDMixin, TimestampMixin):
    """Producer (brand owner) model."""

    __tablename__ = "producers"

    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)

    products: Mapped[List["Product"]] = relationship(back_populates="producer")

    def __repr__(self) -> str:
        return f"<Producer(id={self.id}, name='{self.name}')>"
