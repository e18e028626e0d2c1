"""Catalog XML parser.

Transforms a supplier catalog feed into an :class:`EntityGraph`:

    product ─┬─ variant (from <variants>/<sizes>, or a synthesized default)
             │     ├─ stock
             │     └─ price* (<price>, <srp>)
             ├─ image*
             ├─ document*
             └─ property*

Categories, producers and units are deduplicated by business key while
scanning; the first occurrence wins.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from catalog_import.config import ImportSettings, import_settings
from catalog_import.errors.exceptions import RecordTransformError
from catalog_import.models.entities import (
    CategoryRecord,
    DocumentRecord,
    EntityGraph,
    ImageRecord,
    PriceRecord,
    ProducerRecord,
    ProductRecord,
    PropertyRecord,
    StockRecord,
    UnitRecord,
    VariantRecord,
)
from catalog_import.models.import_stats import ErrorEntry, ErrorKind
from catalog_import.parsers.base_parser import FeedParser
from catalog_import.parsers.feed_shapes import detect_feed, load_document
from catalog_import.parsers.field_normalizers import (
    as_list,
    derive_net_price,
    infer_document_type,
    normalize_string,
    normalize_url,
    parse_delivery_date,
    pick,
    safe_decimal,
    safe_int,
    sanitize_html_text,
    slugify,
    to_bool,
    validate_ean,
)

logger = structlog.get_logger(__name__)

# Scalar product fields kept as free-form properties
EXTRA_PROPERTY_FIELDS = (
    "brand", "manufacturer", "condition", "warranty", "material", "keywords",
    "seo_title", "seo_keywords", "seo_description",
)
PROPERTY_SECTIONS = ("properties", "attributes", "specifications", "specs")
PROPERTY_ITEMS = ("property", "attribute", "spec", "item")


class CatalogXmlParser(FeedParser):
    """Parser for GEKO-style supplier catalog XML."""

    def __init__(self, config: Optional[ImportSettings] = None) -> None:
        self._config = config or import_settings

    def get_parser_name(self) -> str:
        return "catalog_xml"

    def parse(self, raw: Union[bytes, str]) -> EntityGraph:
        """Parse a catalog document into an entity graph.

        Args:
            raw: XML document

        Returns:
            EntityGraph; ``errors`` lists products that were skipped

        Raises:
            StructuralParseError: If the bytes are not XML or the root
                matches neither supported shape
        """
        root = load_document(raw)
        feed = detect_feed(root)
        del root

        graph = EntityGraph(source_shape=feed.shape.value, source_product_count=len(feed.products))
        categories: Dict[str, CategoryRecord] = {}
        producers: Dict[str, ProducerRecord] = {}
        units: Dict[str, UnitRecord] = {}

        logger.info(
            "catalog_parse_started",
            shape=feed.shape.value,
            product_elements=len(feed.products),
        )

        for index, node in enumerate(feed.products):
            try:
                self._process_product(node, index, graph, categories, producers, units)
            except RecordTransformError as e:
                logger.warning(
                    "product_record_skipped",
                    index=index,
                    product_code=e.product_code,
                    error=e.message,
                )
                graph.errors.append(
                    ErrorEntry(
                        kind=ErrorKind.RECORD_TRANSFORM,
                        entity_type="products",
                        identifier=e.product_code or f"#{index}",
                        message=e.message,
                    )
                )

        graph.categories = list(categories.values())
        graph.producers = list(producers.values())
        graph.units = list(units.values())

        logger.info(
            "catalog_parse_completed",
            shape=feed.shape.value,
            skipped_products=len(graph.errors),
            **graph.counts(),
        )
        return graph

    # =========================================================================
    # Product
    # =========================================================================

    def _process_product(
        self,
        node: Any,
        index: int,
        graph: EntityGraph,
        categories: Dict[str, CategoryRecord],
        producers: Dict[str, ProducerRecord],
        units: Dict[str, UnitRecord],
    ) -> None:
        """Fan one product element out into graph records.

        The product's records are built first and only appended once all of
        them are valid, so a failing record never leaves orphans behind.
        """
        if not isinstance(node, dict):
            raise RecordTransformError("Product element has no fields", index=index)

        code = normalize_string(pick(node, "code", "id"))
        if not code:
            raise RecordTransformError("Product has neither code nor id", index=index)

        try:
            product = self._build_product(node, code)
            category = self._build_category(node)
            producer = self._build_producer(node)
            unit = self._build_unit(node)
            product.category_id = category.id if category else None
            product.producer_name = producer.name if producer else None
            product.unit_id = unit.id if unit else None

            variants, stocks, prices = self._build_variants(node, code, product.vat)
            images = self._build_images(node, code)
            documents = self._build_documents(node, code)
            properties = self._build_properties(node, code)
        except RecordTransformError:
            raise
        except (ValidationError, ValueError, TypeError, AttributeError, ArithmeticError) as e:
            raise RecordTransformError(
                f"Invalid product record: {e}", product_code=code, index=index
            ) from e

        if category and category.id not in categories:
            categories[category.id] = category
        if producer and producer.name not in producers:
            producers[producer.name] = producer
        if unit and unit.id not in units:
            units[unit.id] = unit

        graph.products.append(product)
        graph.variants.extend(variants)
        graph.stocks.extend(stocks)
        graph.prices.extend(prices)
        graph.images.extend(images)
        graph.documents.extend(documents)
        graph.product_properties.extend(properties)

    def _build_product(self, node: Dict[str, Any], code: str) -> ProductRecord:
        max_length = self._config.max_text_length
        description = node.get("description")

        if isinstance(description, dict):
            name = normalize_string(pick(description, "n", "name")) or normalize_string(pick(node, "name", "title"))
            short = pick(description, "short_desc", "short")
            long = pick(description, "long_desc", "long")
            html_text = description.get("description")
        else:
            name = normalize_string(pick(node, "name", "title")) or normalize_string(description)
            short = pick(node, "short_description", "summary")
            long = description if description else pick(node, "long_description", "full_description")
            html_text = node.get("html_description")

        if not name:
            raise RecordTransformError("Product has no name", product_code=code)

        card = node.get("card")
        url = normalize_url(card.get("url")) if isinstance(card, dict) else ""

        return ProductRecord(
            code=code,
            name=name[:500],
            code_on_card=normalize_string(node.get("code_on_card")),
            ean=validate_ean(node.get("ean")),
            producer_code=normalize_string(node.get("code_producer")),
            vat=safe_decimal(node.get("vat")),
            url=url,
            delivery_date=parse_delivery_date(node.get("delivery")),
            description_short=sanitize_html_text(short, max_length),
            description_long=sanitize_html_text(long, max_length),
            description_html=sanitize_html_text(html_text, max_length),
            discontinued=to_bool(node.get("discontinued")),
        )

    # =========================================================================
    # Reference entities
    # =========================================================================

    def _build_category(self, node: Dict[str, Any]) -> Optional[CategoryRecord]:
        category: Optional[CategoryRecord] = None
        raw = node.get("category")

        if isinstance(raw, dict):
            name = normalize_string(pick(raw, "name", "n"))
            path = normalize_string(raw.get("path"))
            category_id = normalize_string(raw.get("id")) or name
            if category_id:
                parts = [p.strip() for p in path.split("/") if p.strip()] if path else []
                category = CategoryRecord(
                    id=category_id,
                    name=name or category_id,
                    path=path,
                    parent_id=parts[-2] if len(parts) > 1 else None,
                )
        elif normalize_string(raw):
            text = normalize_string(raw)
            category = CategoryRecord(id=f"category-{slugify(text)}", name=text, path=text)

        idosell = node.get("category_idosell")
        idosell_path = normalize_string(idosell.get("path")) if isinstance(idosell, dict) else ""
        if idosell_path:
            if category is None:
                category = CategoryRecord(
                    id=f"idosell-{slugify(idosell_path)}",
                    name=idosell_path.rstrip("/").split("/")[-1].strip(),
                    path=idosell_path,
                )
            else:
                category.idosell_path = idosell_path

        return category

    def _build_producer(self, node: Dict[str, Any]) -> Optional[ProducerRecord]:
        raw = node.get("producer")
        if isinstance(raw, dict):
            name = normalize_string(raw.get("name"))
            if not name:
                return None
            return ProducerRecord(
                name=name,
                description=normalize_string(raw.get("description")),
                website=normalize_url(raw.get("website")),
            )
        name = normalize_string(raw)
        return ProducerRecord(name=name) if name else None

    def _build_unit(self, node: Dict[str, Any]) -> Optional[UnitRecord]:
        raw = node.get("unit")
        if isinstance(raw, dict):
            name = normalize_string(raw.get("name"))
            unit_id = normalize_string(raw.get("id")) or (f"unit-{slugify(name)}" if name else "")
            if not unit_id:
                return None
            return UnitRecord(id=unit_id, name=name or unit_id, moq=safe_int(raw.get("moq"), 1) or 1)
        name = normalize_string(raw)
        if not name:
            return None
        return UnitRecord(id=f"unit-{slugify(name)}", name=name)

    # =========================================================================
    # Variants, stock and prices
    # =========================================================================

    def _build_variants(
        self,
        node: Dict[str, Any],
        product_code: str,
        vat: Decimal,
    ) -> tuple[List[VariantRecord], List[StockRecord], List[PriceRecord]]:
        variants: List[VariantRecord] = []
        stocks: List[StockRecord] = []
        prices: List[PriceRecord] = []

        variant_nodes = []
        container = node.get("variants")
        if isinstance(container, dict):
            variant_nodes.extend(as_list(container.get("variant")))
        container = node.get("sizes")
        if isinstance(container, dict):
            variant_nodes.extend(as_list(container.get("size")))

        for position, variant_node in enumerate(variant_nodes):
            if not isinstance(variant_node, dict):
                continue
            code = normalize_string(variant_node.get("code"))
            if not code:
                suffix = normalize_string(variant_node.get("id")) or str(position + 1)
                code = f"{product_code}-{suffix}"

            variants.append(
                VariantRecord(
                    code=code,
                    product_code=product_code,
                    name=normalize_string(pick(variant_node, "name", "n")),
                    size=normalize_string(pick(variant_node, "size", "size_value")),
                    color=normalize_string(variant_node.get("color")),
                    weight=safe_decimal(variant_node.get("weight")),
                    gross_weight=safe_decimal(pick(variant_node, "gross_weight", "grossweight")),
                    status=normalize_string(variant_node.get("status")) or "active",
                )
            )

            stock_node = variant_node.get("stock")
            if stock_node is not None and stock_node != "":
                stocks.append(self._build_stock(stock_node, code))

            price_container = variant_node.get("prices")
            if isinstance(price_container, dict):
                price_nodes = as_list(price_container.get("price"))
            else:
                price_nodes = as_list(variant_node.get("price"))
            prices.extend(self._build_prices(price_nodes, code, vat))
            prices.extend(self._build_prices(as_list(variant_node.get("srp")), code, vat, "suggested"))

        if not variants:
            default_code = f"{product_code}-default"
            variants.append(
                VariantRecord(code=default_code, product_code=product_code, name="Default")
            )
            prices.extend(self._build_prices(as_list(node.get("price")), default_code, vat))
            prices.extend(self._build_prices(as_list(node.get("srp")), default_code, vat, "suggested"))
            stock_node = node.get("stock")
            if stock_node is not None and stock_node != "":
                stocks.append(self._build_stock(stock_node, default_code))

        return variants, stocks, prices

    def _build_stock(self, raw: Any, variant_code: str) -> StockRecord:
        """A variant has one stock row; repeated stock elements are summed."""
        quantity = 0
        flagged_available = False
        min_order = 1
        for stock_node in as_list(raw):
            if isinstance(stock_node, dict):
                quantity += safe_int(stock_node.get("quantity"))
                flagged_available = flagged_available or to_bool(stock_node.get("available"))
                min_order = max(min_order, safe_int(pick(stock_node, "min_order_quantity", "moq"), 1))
            else:
                quantity += safe_int(stock_node)
        return StockRecord(
            variant_code=variant_code,
            quantity=quantity,
            available=flagged_available or quantity > 0,
            min_order_qty=min_order,
        )

    def _build_prices(
        self,
        price_nodes: List[Any],
        variant_code: str,
        vat: Decimal,
        price_type: Optional[str] = None,
    ) -> List[PriceRecord]:
        prices = []
        for price_node in price_nodes:
            if isinstance(price_node, dict):
                gross_raw = pick(price_node, "gross", "value", "amount", "_")
                net_raw = price_node.get("net")
                currency = normalize_string(price_node.get("currency"))
                kind = price_type or normalize_string(price_node.get("type")) or "retail"
                min_quantity = safe_int(price_node.get("min_quantity"), 1) or 1
            else:
                gross_raw = price_node
                net_raw = None
                currency = ""
                kind = price_type or "retail"
                min_quantity = 1

            gross = safe_decimal(gross_raw, default=None)
            if gross is None:
                if normalize_string(gross_raw):
                    raise ValueError(f"Unusable price {normalize_string(gross_raw)!r} for {variant_code}")
                gross = Decimal("0")
            net = safe_decimal(net_raw, default=None)
            if net is None:
                net = derive_net_price(gross, vat)

            prices.append(
                PriceRecord(
                    variant_code=variant_code,
                    gross_price=gross,
                    net_price=net,
                    price_type=kind,
                    currency=(currency or self._config.default_currency).upper(),
                    min_quantity=min_quantity,
                )
            )
        return prices

    # =========================================================================
    # Media and properties
    # =========================================================================

    def _build_images(self, node: Dict[str, Any], product_code: str) -> List[ImageRecord]:
        container = node.get("images")
        if isinstance(container, dict):
            image_nodes = as_list(container.get("image"))
        else:
            image_nodes = []

        images: List[ImageRecord] = []
        seen = set()
        for position, image_node in enumerate(image_nodes):
            url = normalize_url(pick(image_node, "url", "src", "path")) if isinstance(image_node, dict) \
                else normalize_url(image_node)
            if not url or url in seen:
                continue
            seen.add(url)
            flag = pick(image_node, "is_main", "main") if isinstance(image_node, dict) else None
            order = safe_int(image_node.get("order"), position + 1) if isinstance(image_node, dict) else position + 1
            images.append(
                ImageRecord(
                    product_code=product_code,
                    url=url,
                    is_main=to_bool(flag) if flag is not None else position == 0,
                    order=order,
                )
            )
        return images

    def _build_documents(self, node: Dict[str, Any], product_code: str) -> List[DocumentRecord]:
        container = node.get("documents")
        if not isinstance(container, dict):
            return []

        documents: List[DocumentRecord] = []
        seen = set()
        for position, doc_node in enumerate(as_list(container.get("document"))):
            if not isinstance(doc_node, dict):
                continue
            url = normalize_url(pick(doc_node, "url", "href", "link"))
            if not url or url in seen:
                continue
            seen.add(url)
            documents.append(
                DocumentRecord(
                    product_code=product_code,
                    url=url,
                    type=normalize_string(pick(doc_node, "type", "mime_type")) or infer_document_type(url),
                    title=normalize_string(pick(doc_node, "title", "name")) or f"Document {position + 1}",
                    language=normalize_string(pick(doc_node, "language", "lang")) or "en",
                )
            )
        return documents

    def _build_properties(self, node: Dict[str, Any], product_code: str) -> List[PropertyRecord]:
        properties: Dict[tuple, PropertyRecord] = {}

        def _add(record: PropertyRecord) -> None:
            key = record.business_key()
            if key not in properties:
                properties[key] = record

        for section_name in PROPERTY_SECTIONS:
            section = node.get(section_name)
            if not isinstance(section, dict):
                continue
            items: List[Any] = []
            for item_name in PROPERTY_ITEMS:
                items.extend(as_list(section.get(item_name)))
            if not items:
                # <properties><color>Red</color></properties>
                for key, value in section.items():
                    if key != "_" and not isinstance(value, (dict, list)) and normalize_string(value):
                        _add(PropertyRecord(product_code=product_code, name=key, value=normalize_string(value)))
                continue
            for position, item in enumerate(items):
                if not isinstance(item, dict):
                    continue
                name = normalize_string(pick(item, "name", "key", "n"))
                if not name:
                    continue
                _add(
                    PropertyRecord(
                        product_code=product_code,
                        name=name[:255],
                        value=normalize_string(pick(item, "value", "v", "text", "_")),
                        group=normalize_string(item.get("group")) or "General",
                        language=normalize_string(pick(item, "language", "lang")) or "en",
                        order=safe_int(item.get("order"), position),
                        is_filterable=to_bool(item.get("filterable")),
                        is_public=normalize_string(item.get("public")).lower() != "false",
                    )
                )

        for field_name in EXTRA_PROPERTY_FIELDS:
            value = node.get(field_name)
            if isinstance(value, str) and value.strip():
                _add(PropertyRecord(product_code=product_code, name=field_name, value=value.strip()))

        return list(properties.values())
