"""Pydantic models for the entity graph produced by the catalog parser.

Records reference each other by business key (codes, names), never by
surrogate id. Surrogate ids only exist once the persistence engine has
written a row.
"""
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, Hashable, List, Optional

from pydantic import BaseModel, Field, field_validator

from catalog_import.models.import_stats import ErrorEntry


class EntityType(str, Enum):
    """Persisted entity types, declared in dependency order."""
    CATEGORIES = "categories"
    PRODUCERS = "producers"
    UNITS = "units"
    PRODUCTS = "products"
    VARIANTS = "variants"
    STOCKS = "stocks"
    PRICES = "prices"
    IMAGES = "images"
    DOCUMENTS = "documents"
    PRODUCT_PROPERTIES = "product_properties"


# Largest value of a NUMERIC(12, 2) price column
MAX_PRICE = Decimal("9999999999.99")


def _quantize(v: Decimal) -> Decimal:
    return v.quantize(Decimal("0.01"))


class CategoryRecord(BaseModel):
    """Category keyed by its feed identifier."""

    id: str = Field(..., min_length=1, max_length=255)
    name: str = ""
    path: str = ""
    parent_id: Optional[str] = None
    idosell_path: Optional[str] = None

    def business_key(self) -> Hashable:
        return self.id


class ProducerRecord(BaseModel):
    """Producer keyed by name."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    website: str = ""

    def business_key(self) -> Hashable:
        return self.name


class UnitRecord(BaseModel):
    """Unit of measure keyed by its feed identifier."""

    id: str = Field(..., min_length=1, max_length=255)
    name: str = ""
    moq: int = 1

    def business_key(self) -> Hashable:
        return self.id


class ProductRecord(BaseModel):
    """Product keyed by code.

    ``category_id``, ``producer_name`` and ``unit_id`` are business keys of
    the related records, resolved to surrogate ids at persistence time.
    """

    code: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1)
    code_on_card: str = ""
    ean: str = ""
    producer_code: str = ""
    vat: Decimal = Field(default=Decimal("0"), le=Decimal("999.99"))
    url: str = ""
    delivery_date: Optional[date] = None
    description_short: str = ""
    description_long: str = ""
    description_html: str = ""
    status: str = "active"
    discontinued: bool = False
    category_id: Optional[str] = None
    producer_name: Optional[str] = None
    unit_id: Optional[str] = None

    def business_key(self) -> Hashable:
        return self.code


class VariantRecord(BaseModel):
    """Product variant (size, colour...) keyed by its own code."""

    code: str = Field(..., min_length=1, max_length=255)
    product_code: str
    name: str = ""
    size: str = ""
    color: str = ""
    weight: Decimal = Decimal("0")
    gross_weight: Decimal = Decimal("0")
    status: str = "active"

    def business_key(self) -> Hashable:
        return self.code


class StockRecord(BaseModel):
    """Stock level; one row per variant."""

    variant_code: str
    quantity: int = 0
    available: bool = False
    min_order_qty: int = 1

    def business_key(self) -> Hashable:
        return self.variant_code


class PriceRecord(BaseModel):
    """Price for a variant.

    A variant can carry several prices distinguished by type, currency and
    minimum quantity.
    """

    variant_code: str
    gross_price: Decimal = Field(default=Decimal("0"), ge=0, le=MAX_PRICE)
    net_price: Decimal = Field(default=Decimal("0"), ge=0, le=MAX_PRICE)
    price_type: str = "retail"
    currency: str = "EUR"
    min_quantity: int = 1

    @field_validator("gross_price", "net_price")
    @classmethod
    def validate_price_precision(cls, v: Decimal) -> Decimal:
        """Quantize prices to 2 decimal places."""
        return _quantize(v)

    def business_key(self) -> Hashable:
        return (self.variant_code, self.price_type, self.currency, self.min_quantity)


class ImageRecord(BaseModel):
    """Product image keyed by product code and URL."""

    product_code: str
    url: str = Field(..., min_length=1)
    is_main: bool = False
    order: int = 1

    def business_key(self) -> Hashable:
        return (self.product_code, self.url)


class DocumentRecord(BaseModel):
    """Downloadable product document keyed by product code and URL."""

    product_code: str
    url: str = Field(..., min_length=1)
    type: str = ""
    title: str = ""
    language: str = "en"

    def business_key(self) -> Hashable:
        return (self.product_code, self.url)


class PropertyRecord(BaseModel):
    """Free-form product property keyed by product code, name and language."""

    product_code: str
    name: str = Field(..., min_length=1, max_length=255)
    value: str = ""
    group: str = "General"
    language: str = "en"
    order: int = 0
    is_filterable: bool = False
    is_public: bool = True

    def business_key(self) -> Hashable:
        return (self.product_code, self.name, self.language)


class EntityGraph(BaseModel):
    """Full in-memory result of one parse, prior to persistence."""

    categories: List[CategoryRecord] = Field(default_factory=list)
    producers: List[ProducerRecord] = Field(default_factory=list)
    units: List[UnitRecord] = Field(default_factory=list)
    products: List[ProductRecord] = Field(default_factory=list)
    variants: List[VariantRecord] = Field(default_factory=list)
    stocks: List[StockRecord] = Field(default_factory=list)
    prices: List[PriceRecord] = Field(default_factory=list)
    images: List[ImageRecord] = Field(default_factory=list)
    documents: List[DocumentRecord] = Field(default_factory=list)
    product_properties: List[PropertyRecord] = Field(default_factory=list)

    source_shape: Optional[str] = None
    source_product_count: int = 0
    errors: List[ErrorEntry] = Field(default_factory=list)

    def records(self, entity_type: EntityType) -> List[BaseModel]:
        """Return the record list for an entity type."""
        return getattr(self, entity_type.value)

    def counts(self) -> Dict[str, int]:
        """Row counts per entity type."""
        return {t.value: len(self.records(t)) for t in EntityType}

    def total_rows(self) -> int:
        return sum(self.counts().values())
