"""Unit of measure ORM model."""
from sqlalchemy import String, Integer
from sqlalchemy.orm import Mapped, mapped_column
from catalog_import.db.base import Base, UUIDMixin, TimestampMixin


class Unit(Base, UUIDMixin, TimestampMixin):
    """Unit model; ``moq`` is the minimum order quantity in this unit."""

    __tablename__ = "units"

    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    moq: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")

    def __repr__(self) -> str:
        return f"<Unit(id={self.id}, external_id='{self.external_id}')>"
