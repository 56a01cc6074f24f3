"""
Tests for service container wiring.
"""

import pytest
from cryptography.hazmat.primitives import serialization

from entitlement_relay.config import Settings
from entitlement_relay.services.container import build_container, build_stores
from entitlement_relay.services.crm_sync import InMemoryCrmSyncQueue
from entitlement_relay.services.push_gateway import HttpPushGateway
from tests.conftest import TestAuthority


class TestBuildContainer:
    """Optional channels follow configuration."""

    def test_crm_disabled_without_client(self, test_settings: Settings, authority: TestAuthority):
        container = build_container(test_settings, verifier=authority.verifier())

        assert container.crm_queue is None
        assert container.crm_worker is None
        assert container.storage == "memory"

    def test_crm_enabled_from_settings(self, authority: TestAuthority):
        settings = Settings(storage_backend="memory", crm_base_url="https://crm.example.com")

        container = build_container(settings, verifier=authority.verifier())

        assert isinstance(container.crm_queue, InMemoryCrmSyncQueue)
        assert container.crm_worker is not None

    def test_push_gateway_from_settings(self, authority: TestAuthority):
        settings = Settings(storage_backend="memory", push_gateway_url="https://push.example.com")

        container = build_container(settings, verifier=authority.verifier())

        assert isinstance(container.dispatcher._push_gateway, HttpPushGateway)

    def test_roots_loaded_from_settings(self, authority: TestAuthority, tmp_path):

        root_path = tmp_path / "root.cer"
        root_path.write_bytes(authority.root.public_bytes(serialization.Encoding.DER))
        settings = Settings(storage_backend="memory", APPLE_ROOT_CERTIFICATES=str(root_path))

        container = build_container(settings)

        assert container.pipeline._decoder._verifier._roots == (authority.root,)

    @pytest.mark.asyncio
    async def test_memory_storage_check(self, test_settings: Settings):
        stores = build_stores(test_settings)

        await stores.storage_check()
