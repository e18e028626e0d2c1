"""Parser modules for catalog feed formats."""
from catalog_import.parsers.base_parser import FeedParser
from catalog_import.parsers.catalog_xml_parser import CatalogXmlParser

__all__ = [
    "FeedParser",
    "CatalogXmlParser",
]
