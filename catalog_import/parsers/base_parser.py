"""Abstract parser interface for pluggable catalog feed formats."""
from abc import ABC, abstractmethod
from typing import Union

from catalog_import.models.entities import EntityGraph


class FeedParser(ABC):
    """Abstract base class for all catalog feed parsers.

    Implementations turn raw feed bytes into an :class:`EntityGraph`.
    Parsing is CPU-bound and synchronous; async callers should run it in a
    worker thread.

    Implementations must provide:
    - parse(): Transform a raw document into the entity graph
    - get_parser_name(): Return unique parser identifier
    """

    @abstractmethod
    def parse(self, raw: Union[bytes, str]) -> EntityGraph:
        """Parse a raw feed document.

        Args:
            raw: Document bytes (or already decoded text)

        Returns:
            EntityGraph with every transformable record

        Raises:
            StructuralParseError: If the document as a whole is unusable.
                Individual broken records are logged and skipped instead.
        """
        pass

    @abstractmethod
    def get_parser_name(self) -> str:
        """Return unique identifier for this parser type.

        Returns:
            Parser identifier string (e.g., "catalog_xml")
        """
        pass
