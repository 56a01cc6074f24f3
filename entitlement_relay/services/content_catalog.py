"""
Content Catalog - Product id to content id mapping.

Products missing from the catalog unlock a single content item named after
the product itself.
"""

import json
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Protocol

from structlog import get_logger

from entitlement_relay.config import ConfigurationError

logger = get_logger(__name__)


class ContentCatalog(Protocol):
    """Resolves which content ids a product unlocks."""

    async def content_ids_for_product(self, product_id: str) -> frozenset[str]:
        """Content ids unlocked by ``product_id``. Never empty."""
        ...


class StaticContentCatalog:
    """Catalog held in memory, optionally loaded from a JSON file."""

    def __init__(self, mapping: Mapping[str, Iterable[str]] | None = None) -> None:
        self._mapping: dict[str, frozenset[str]] = {
            product_id: frozenset(content_ids)
            for product_id, content_ids in (mapping or {}).items()
        }

    @classmethod
    def from_json_file(cls, path: str) -> "StaticContentCatalog":
        """
        Load a catalog of the form ``{"product_id": ["content_id", ...]}``.

        Raises:
            ConfigurationError: If the file is unreadable or has the wrong shape
        """
        try:
            raw = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read content catalog {path}: {exc}") from exc

        if not isinstance(raw, dict) or not all(
            isinstance(ids, list) and all(isinstance(i, str) for i in ids) for ids in raw.values()
        ):
            raise ConfigurationError(f"Content catalog {path} must map product ids to string lists")

        logger.info("content_catalog_loaded", path=path, products=len(raw))
        return cls(raw)

    async def content_ids_for_product(self, product_id: str) -> frozenset[str]:
        content_ids = self._mapping.get(product_id)
        if not content_ids:
            return frozenset({product_id})
        return content_ids
