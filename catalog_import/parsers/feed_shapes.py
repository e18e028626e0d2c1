"""Document decoding and root shape detection for catalog XML feeds.

Two root shapes are supported:

    <geko><products><product .../>...</products></geko>
    <offer><products><product .../>...</products></offer>

``<offer>`` documents that list ``<item>`` elements directly under the
root are read as the offer shape too. Anything else is a structural error.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Union
from xml.etree.ElementTree import Element, ParseError

import defusedxml.ElementTree as ET
from defusedxml import DefusedXmlException

from catalog_import.errors.exceptions import StructuralParseError
from catalog_import.parsers.field_normalizers import TEXT_KEY, as_list


class FeedShape(str, Enum):
    """Supported catalog document shapes."""
    GEKO = "geko"
    OFFER = "offer"


@dataclass
class DetectedFeed:
    """A document whose shape has been recognised."""

    shape: FeedShape
    products: List[Any] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)


def _local_name(tag: str) -> str:
    """Strip any namespace and lower-case a tag or attribute name."""
    if "}" in tag:
        tag = tag.rsplit("}", 1)[1]
    return tag.lower()


def element_to_node(element: Element) -> Union[str, Dict[str, Any]]:
    """Convert an element into a plain node.

    Elements with neither attributes nor children become their stripped
    text. Otherwise attributes and children merge into one mapping;
    repeated names collect into a list and element text is kept under
    ``"_"``.
    """
    text = (element.text or "").strip()
    if not element.attrib and len(element) == 0:
        return text

    node: Dict[str, Any] = {}

    def _merge(key: str, value: Any) -> None:
        if key not in node:
            node[key] = value
        elif isinstance(node[key], list):
            node[key].append(value)
        else:
            node[key] = [node[key], value]

    for name, value in element.attrib.items():
        _merge(_local_name(name), value.strip())
    for child in element:
        if not isinstance(child.tag, str):
            continue
        _merge(_local_name(child.tag), element_to_node(child))
    if text:
        node[TEXT_KEY] = text
    return node


def load_document(raw: Union[bytes, str]) -> Element:
    """Parse raw bytes into an element tree root.

    Raises:
        StructuralParseError: If the bytes are empty, not well-formed XML, or
            use forbidden constructs (entity expansion, external entities).
    """
    if raw is None or (isinstance(raw, (bytes, str)) and not raw.strip()):
        raise StructuralParseError("Feed document is empty")
    try:
        return ET.fromstring(raw)
    except ParseError as e:
        raise StructuralParseError(f"Failed to parse XML: {e}") from e
    except DefusedXmlException as e:
        raise StructuralParseError(f"Forbidden XML construct in feed: {e}") from e


def _products_from_container(container: Any) -> List[Any]:
    if isinstance(container, dict):
        return as_list(container.get("product"))
    # <products/> with nothing inside
    return []


def detect_feed(root: Element) -> DetectedFeed:
    """Match the document root against the supported shapes.

    Raises:
        StructuralParseError: If the root is neither shape, or the shape's
            product container is missing.
    """
    root_name = _local_name(root.tag)
    node = element_to_node(root)
    attributes = {k: v for k, v in node.items() if isinstance(v, str)} if isinstance(node, dict) else {}

    if root_name == FeedShape.GEKO.value:
        if not isinstance(node, dict) or "products" not in node:
            raise StructuralParseError(
                "Unexpected XML structure: <geko> document has no <products> container"
            )
        return DetectedFeed(
            shape=FeedShape.GEKO,
            products=_products_from_container(node["products"]),
            attributes=attributes,
        )

    if root_name == FeedShape.OFFER.value:
        if isinstance(node, dict) and "products" in node:
            return DetectedFeed(
                shape=FeedShape.OFFER,
                products=_products_from_container(node["products"]),
                attributes=attributes,
            )
        if isinstance(node, dict) and "item" in node:
            return DetectedFeed(
                shape=FeedShape.OFFER,
                products=as_list(node["item"]),
                attributes=attributes,
            )
        raise StructuralParseError(
            "Unexpected XML structure: <offer> document has no <products> container"
        )

    raise StructuralParseError(
        f"Unexpected XML structure: root element <{root_name}> is not <geko> or <offer>",
        {"root": root_name},
    )
