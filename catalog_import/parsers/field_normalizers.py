"""Field normalization helpers for loosely-typed feed values.

Feed values arrive as strings, nested mappings (element with attributes)
or lists (repeated elements). Every helper here accepts any of those and
never raises: invalid input falls back to the caller's default.
"""
import html
import re
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, List, Optional
from urllib.parse import urlsplit

TEXT_KEY = "_"
TRUNCATION_MARKER = "... [truncated]"
PARAGRAPH_BOUNDARIES = ("&lt;/p&gt;", "\n\n")

_TWO_PLACES = Decimal("0.01")
_TRUE_VALUES = {"true", "1", "yes", "y", "t"}
_DATE_RE = re.compile(r"(\d{4})[-/](\d{1,2})[-/](\d{1,2})")
_PARTIAL_ENTITY_RE = re.compile(r"&[#a-zA-Z0-9]{0,8}$")
_EAN_RE = re.compile(r"\d{13}")
_URL_SCHEMES = {"http", "https", "ftp"}


def as_list(value: Any) -> List[Any]:
    """Normalize a possibly-collapsed collection into a list.

    A single repeated element parses as a scalar or mapping rather than a
    one-item list; absent elements parse as None or an empty string.
    """
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]


def first(value: Any) -> Any:
    """Return the first item of a repeated element, or the value itself."""
    if isinstance(value, list):
        return value[0] if value else None
    return value


def pick(node: Any, *keys: str) -> Any:
    """Return the first non-empty value among ``keys`` of a mapping node."""
    if not isinstance(node, dict):
        return None
    for key in keys:
        value = node.get(key)
        if value is not None and value != "":
            return value
    return None


def normalize_string(value: Any) -> str:
    """Coerce a feed value to a trimmed string ("" when absent)."""
    value = first(value)
    if value is None:
        return ""
    if isinstance(value, dict):
        return normalize_string(value.get(TEXT_KEY))
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def safe_decimal(value: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    """Parse a decimal, accepting comma decimal separators.

    Values that cannot be held with two decimal places (``1e30``, ``NaN``)
    count as invalid and return ``default``.
    """
    text = normalize_string(value).replace(" ", "").replace(",", ".")
    if not text:
        return default
    try:
        result = Decimal(text)
        if not result.is_finite():
            return default
        result.quantize(_TWO_PLACES)
    except (InvalidOperation, ValueError):
        return default
    return result


def safe_int(value: Any, default: int = 0) -> int:
    """Parse an integer; decimals are truncated toward zero."""
    parsed = safe_decimal(value, default=None)
    if parsed is None:
        return default
    return int(parsed)


def to_bool(value: Any, default: bool = False) -> bool:
    text = normalize_string(value).lower()
    if not text:
        return default
    return text in _TRUE_VALUES


def derive_net_price(gross: Decimal, vat_percent: Decimal) -> Decimal:
    """Net price from a gross price and a VAT rate in percent.

    Example:
        >>> derive_net_price(Decimal("19.99"), Decimal("23"))
        Decimal('16.25')

    Raises:
        ValueError: If the result cannot be held with two decimal places
    """
    divisor = Decimal("1") + (vat_percent / Decimal("100"))
    try:
        if divisor <= 0:
            return gross.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
        return (gross / divisor).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Net price out of range for gross {gross} and VAT {vat_percent}") from e


def validate_ean(value: Any) -> str:
    """Return a 13-digit EAN, or "" for anything else."""
    text = normalize_string(value)
    return text if _EAN_RE.fullmatch(text) else ""


def normalize_url(value: Any) -> str:
    """Return an absolute http(s)/ftp URL, or "" when the value is not one.

    A bare host (``cdn.example.com/a.jpg``) gets an ``https://`` prefix.
    """
    text = normalize_string(value)
    if not text or any(ch.isspace() for ch in text):
        return ""
    if "://" not in text:
        if text.startswith("/"):
            return ""
        text = f"https://{text}"
    try:
        parts = urlsplit(text)
    except ValueError:
        return ""
    if parts.scheme.lower() not in _URL_SCHEMES or not parts.hostname:
        return ""
    return text


def sanitize_html_text(value: Any, max_length: int = 10000) -> str:
    """Escape markup and bound the length of a free-text field.

    Text longer than ``max_length`` after escaping is cut at the last
    paragraph boundary that fits. Without one, it is hard-cut and ends
    with :data:`TRUNCATION_MARKER`.
    """
    text = html.escape(normalize_string(value), quote=True)
    if len(text) <= max_length:
        return text

    window = text[:max_length]
    cut = -1
    for boundary in PARAGRAPH_BOUNDARIES:
        position = window.rfind(boundary)
        if position > 0:
            cut = max(cut, position + len(boundary))
    if cut > 0:
        return window[:cut].rstrip()

    hard = text[: max(0, max_length - len(TRUNCATION_MARKER))]
    # never leave half an escaped entity behind
    hard = _PARTIAL_ENTITY_RE.sub("", hard)
    return hard + TRUNCATION_MARKER


def parse_delivery_date(value: Any) -> Optional[date]:
    """Parse YYYY-MM-DD or YYYY/MM/DD, returning None on anything else."""
    match = _DATE_RE.search(normalize_string(value))
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


def slugify(value: Any) -> str:
    text = normalize_string(value).lower()
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"[^\w\-]+", "", text)
    text = re.sub(r"-{2,}", "-", text)
    return text.strip("-")


_DOCUMENT_TYPES = {
    "pdf": "PDF",
    "doc": "Word Document",
    "docx": "Word Document",
    "xls": "Excel Document",
    "xlsx": "Excel Document",
    "txt": "Text Document",
    "zip": "Archive",
    "rar": "Archive",
}


def infer_document_type(url: str) -> str:
    """Guess a document type label from the URL extension."""
    if not url:
        return ""
    path = url.split("?", 1)[0].split("#", 1)[0]
    if "." not in path.rsplit("/", 1)[-1]:
        return ""
    extension = path.rsplit(".", 1)[-1].lower()
    return _DOCUMENT_TYPES.get(extension, extension.upper())
