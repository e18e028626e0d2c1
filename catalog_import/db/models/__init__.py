"""Catalog ORM models."""
from catalog_import.db.models.category import Category
from catalog_import.db.models.producer import Producer
from catalog_import.db.models.unit import Unit
from catalog_import.db.models.product import Product
from catalog_import.db.models.variant import Variant, Stock, Price
from catalog_import.db.models.media import Image, Document
from catalog_import.db.models.product_property import ProductProperty

__all__ = [
    # Reference entities
    "Category",
    "Producer",
    "Unit",
    # Product tree
    "Product",
    "Variant",
    "Stock",
    "Price",
    "Image",
    "Document",
    "ProductProperty",
]
