"""
Tests for StaticContentCatalog.
"""

import json

import pytest

from entitlement_relay.config import ConfigurationError
from entitlement_relay.services.content_catalog import StaticContentCatalog


class TestStaticContentCatalog:
    """Product -> content id mapping."""

    @pytest.mark.asyncio
    async def test_mapped_product(self):
        catalog = StaticContentCatalog({"pack": ["a", "b"]})

        assert await catalog.content_ids_for_product("pack") == frozenset({"a", "b"})

    @pytest.mark.asyncio
    async def test_unmapped_product_unlocks_itself(self):
        catalog = StaticContentCatalog()

        assert await catalog.content_ids_for_product("solo") == frozenset({"solo"})

    @pytest.mark.asyncio
    async def test_empty_mapping_falls_back(self):
        catalog = StaticContentCatalog({"pack": []})

        assert await catalog.content_ids_for_product("pack") == frozenset({"pack"})

    @pytest.mark.asyncio
    async def test_from_json_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({"pack": ["a", "b"]}))

        catalog = StaticContentCatalog.from_json_file(str(path))

        assert await catalog.content_ids_for_product("pack") == frozenset({"a", "b"})

    @pytest.mark.parametrize("content", ["not json", '["a"]', '{"pack": "a"}', '{"pack": [1]}'])
    def test_invalid_file(self, tmp_path, content):
        path = tmp_path / "catalog.json"
        path.write_text(content)

        with pytest.raises(ConfigurationError):
            StaticContentCatalog.from_json_file(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            StaticContentCatalog.from_json_file(str(tmp_path / "missing.json"))
