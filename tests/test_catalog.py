# tests/test_catalog.py
"""
Unit tests for the resource catalog and registry sync.
"""
import base64
import json

import pytest

from paygate.api.models.resource import RevenueSplit
from paygate.core.config import ZERO_ADDRESS
from paygate.services.catalog import ResourceCatalog, parse_display_name
from paygate.services.registry import AgentFunding

from conftest import (
    AGENT_WALLET_ADDRESS,
    PAYEE_ADDRESS,
    POOL_ADDRESS,
    PRICE,
    RESOURCE_ID,
    FakeFundingReader,
    FakeRegistry,
    make_service,
)


def data_uri(metadata):
    encoded = base64.b64encode(json.dumps(metadata).encode("utf-8")).decode("ascii")
    return f"data:application/json;base64,{encoded}"


class TestParseDisplayName:
    """Test display name derivation with explicit fallback."""

    def test_plain_name(self):
        """A plain string is used as the name."""
        result = parse_display_name("Weather Oracle", "Agent #1")
        assert result.name == "Weather Oracle"
        assert result.ok is True

    def test_json_metadata(self):
        """The name is read from inline JSON metadata."""
        assert parse_display_name('{"name": "Translator"}', "Agent #1").name == "Translator"

    def test_data_uri(self):
        """The name is read from a base64 data URI."""
        result = parse_display_name(data_uri({"name": "Image Gen", "image": "ipfs://x"}), "Agent #1")
        assert result.name == "Image Gen"
        assert result.ok is True

    @pytest.mark.parametrize("uri", [
        "",
        "   ",
        "{not json",
        '{"description": "no name"}',
        '{"name": ""}',
        "data:application/json;base64,@@@",
    ])
    def test_fallback_with_reason(self, uri):
        """Unusable metadata falls back and says why."""
        result = parse_display_name(uri, "Agent #7")
        assert result.name == "Agent #7"
        assert result.ok is False
        assert result.error

    def test_text_not_starting_with_brace_is_plain_name(self):
        """Only JSON objects are parsed as metadata."""
        assert parse_display_name('["x"]', "Agent #7").name == '["x"]'


class TestRegister:
    """Test single-service registration."""

    def test_register_active_service(self):
        """Registration copies registry fields onto the resource."""
        catalog = ResourceCatalog(FakeRegistry([make_service()]), "http://testserver/")
        resource = catalog.register(RESOURCE_ID, "https://origin.example/v1", api_key="sk-test")

        assert resource.id == RESOURCE_ID
        assert resource.name == "Weather Oracle"
        assert resource.ownerAddress == PAYEE_ADDRESS
        assert resource.originURL == "https://origin.example/v1"
        assert resource.pricePerCall == PRICE
        assert resource.serviceType == "API"
        assert resource.apiKey == "sk-test"
        assert catalog.get(RESOURCE_ID.upper().replace("0X", "0x")) == resource
        assert catalog.proxy_url(resource.id) == f"http://testserver/proxy/{RESOURCE_ID}"

    def test_api_key_not_serialized(self):
        """The origin API key never appears in dumps."""
        catalog = ResourceCatalog(FakeRegistry([make_service()]))
        resource = catalog.register(RESOURCE_ID, "https://origin.example", api_key="sk-test")
        assert "apiKey" not in resource.model_dump()

    def test_inactive_service_refused(self):
        """Inactive services are not published."""
        catalog = ResourceCatalog(FakeRegistry([make_service(active=False)]))
        with pytest.raises(ValueError, match="not active"):
            catalog.register(RESOURCE_ID, "https://origin.example")
        assert catalog.list() == []

    def test_fallback_name(self):
        """Broken metadata names the service after its agent."""
        catalog = ResourceCatalog(FakeRegistry([make_service(name="{broken", agent_id=12)]))
        assert catalog.register(RESOURCE_ID, "https://origin.example").name == "Agent #12"

    def test_no_registry(self):
        """Registering without a registry reader fails."""
        with pytest.raises(RuntimeError):
            ResourceCatalog().register(RESOURCE_ID, "https://origin.example")


class TestSyncFromRegistry:
    """Test the bounded registry sweep."""

    def test_partial_results_with_failures(self):
        """Failing entries are reported and the rest are published."""
        services = [
            make_service("0x" + "01" * 32),
            make_service("0x" + "02" * 32, active=False),
            make_service("0x" + "03" * 32, endpoint=""),
            make_service("0x" + "04" * 32),
            make_service("0x" + "05" * 32),
        ]
        registry = FakeRegistry(services)
        registry.broken_indexes = {4}
        catalog = ResourceCatalog(registry, sync_concurrency=2)

        result = catalog.sync_from_registry()

        assert [r.id for r in result.resources] == ["0x" + "01" * 32, "0x" + "04" * 32]
        assert len(result.failures) == 2
        missing_endpoint = next(f for f in result.failures if f.service_id == "0x" + "03" * 32)
        assert "endpoint" in missing_endpoint.error
        broken = next(f for f in result.failures if f.index == 4)
        assert broken.service_id is None
        assert "RPC timeout" in broken.error
        assert len(catalog.list()) == 2

    def test_empty_registry(self):
        """An empty registry syncs to nothing."""
        result = ResourceCatalog(FakeRegistry([])).sync_from_registry()
        assert result.resources == []
        assert result.failures == []

    def test_many_services_all_loaded(self):
        """Every service is loaded with a small worker pool."""
        services = [make_service("0x" + f"{i:064x}") for i in range(1, 41)]
        result = ResourceCatalog(FakeRegistry(services), sync_concurrency=4).sync_from_registry()
        assert len(result.resources) == 40
        assert result.failures == []


def funded(ratio=4000, needs_funding=True, wallet=AGENT_WALLET_ADDRESS, pool=POOL_ADDRESS, agent_id=7):
    return FakeFundingReader({agent_id: AgentFunding(agent_id, needs_funding, ratio, wallet, pool)})


class TestRevenueSplit:
    """Test funding lookup at registration."""

    def test_agent_needing_funding_gets_split(self):
        """A funded agent with pool and wallet is paid through the signer."""
        catalog = ResourceCatalog(FakeRegistry([make_service()]), funding=funded())
        resource = catalog.register(RESOURCE_ID, "https://origin.example")

        assert resource.split == RevenueSplit(splitRatio=4000, pool=POOL_ADDRESS, agentWallet=AGENT_WALLET_ADDRESS)
        assert "split" not in resource.model_dump()

    def test_no_funding_reader(self):
        """Without a funding reader every resource pays its owner."""
        resource = ResourceCatalog(FakeRegistry([make_service()])).register(RESOURCE_ID, "https://origin.example")
        assert resource.split is None

    @pytest.mark.parametrize("reader", [
        funded(needs_funding=False),
        funded(ratio=0),
        funded(ratio=10_001),
        funded(wallet=ZERO_ADDRESS),
        funded(pool=ZERO_ADDRESS),
        FakeFundingReader(),
    ])
    def test_no_split(self, reader):
        """Unfunded agents, bad ratios and missing targets pay the owner."""
        catalog = ResourceCatalog(FakeRegistry([make_service()]), funding=reader)
        assert catalog.register(RESOURCE_ID, "https://origin.example").split is None

    def test_funding_read_failure_pays_owner(self):
        """A failed funding read still registers the resource."""
        reader = funded()
        reader.error = ConnectionError("rpc down")
        catalog = ResourceCatalog(FakeRegistry([make_service()]), funding=reader)

        resource = catalog.register(RESOURCE_ID, "https://origin.example")

        assert resource.split is None
        assert catalog.get(RESOURCE_ID) == resource

    def test_sync_resolves_split_per_agent(self):
        """Each synced service gets the funding of its own agent."""
        services = [make_service("0x" + "01" * 32, agent_id=7), make_service("0x" + "02" * 32, agent_id=8)]
        catalog = ResourceCatalog(FakeRegistry(services), funding=funded(agent_id=7))

        result = catalog.sync_from_registry()

        splits = {r.id: r.split for r in result.resources}
        assert splits["0x" + "01" * 32].splitRatio == 4000
        assert splits["0x" + "02" * 32] is None
