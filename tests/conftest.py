# tests/conftest.py
"""
Shared fixtures: settings pointing at temp files, and in-process stand-ins
for the chain (gateway contract, token, registry).
"""
import threading
from typing import Dict, List, Optional

import pytest
from eth_account import Account
from eth_utils import to_checksum_address

from paygate.api.models.resource import Resource
from paygate.core.config import ZERO_ADDRESS, Settings
from paygate.services.chain import GatewayPayment
from paygate.services.registry import AgentFunding, RegistryService

PAYER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
SIGNER_KEY = "0x" + "33" * 32
OWNER_KEY = "0x" + "44" * 32

PAYER_ADDRESS = Account.from_key(PAYER_KEY).address
OTHER_ADDRESS = Account.from_key(OTHER_KEY).address
SIGNER_ADDRESS = Account.from_key(SIGNER_KEY).address
PAYEE_ADDRESS = Account.from_key(OWNER_KEY).address

ASSET_ADDRESS = to_checksum_address("0x534b2f3a21130d7a60830c2df862319e593943a3")
GATEWAY_ADDRESS = to_checksum_address("0x76f3a9ae46d58761f073a8686eb60194b1917e24")
REGISTRY_ADDRESS = to_checksum_address("0x7fc98430eaedbb6070b35b39d798725049088348")
POOL_ADDRESS = to_checksum_address("0x1c7d4b196cb0c7b01d743fbc6116a902379c7238")
AGENT_WALLET_ADDRESS = to_checksum_address("0x2a9c0e1f3b5d7a8c6e4f0b2d1a3c5e7f9b8d6a4c")

RESOURCE_ID = "0x" + "ab" * 32
PRICE = 1_000_000


class FakeGateway:
    """Stands in for ChainGateway. Confirmation waits can be held open with `release`."""

    def __init__(self, signer_address: Optional[str] = SIGNER_ADDRESS):
        self.signer_address = signer_address
        self.can_record_usage = False
        self.transfers: List[tuple] = []
        self.usage: List[tuple] = []
        self.usage_error: Optional[Exception] = None
        self.split_transfers: List[tuple] = []
        self.split_error: Optional[Exception] = None
        self.payments: Dict[str, GatewayPayment] = {}
        self.receipt_result = True
        self.receipt_error: Optional[Exception] = None
        self.transfer_error: Optional[Exception] = None
        self.verify_error: Optional[Exception] = None
        self.release = threading.Event()
        self.release.set()

    def verify_payment(self, payment_id: str) -> GatewayPayment:
        if self.verify_error:
            raise self.verify_error
        # bytes32 argument: every hex spelling of the id is the same payment
        by_bytes = {key.lower(): payment for key, payment in self.payments.items()}
        return by_bytes.get(payment_id.lower(), GatewayPayment(valid=False, payer="", amount=0))

    def transfer_with_authorization(self, authorization, signature: str) -> str:
        if self.transfer_error:
            raise self.transfer_error
        self.transfers.append((authorization, signature))
        return "0x" + f"{len(self.transfers):064x}"

    def record_usage(self, service_id: str, calls: int, revenue: int) -> str:
        if self.usage_error:
            raise self.usage_error
        self.usage.append((service_id, calls, revenue))
        return "0x" + "ee" * 32

    def transfer(self, to: str, amount: int) -> str:
        if self.split_error:
            raise self.split_error
        self.split_transfers.append((to, amount))
        return "0x" + f"{len(self.split_transfers):064x}"

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> bool:
        self.release.wait(timeout=5)
        if self.receipt_error:
            raise self.receipt_error
        return self.receipt_result


class FakeRegistry:
    """Stands in for ServiceRegistryReader over a fixed list of services."""

    def __init__(self, services: Optional[List[RegistryService]] = None):
        self.services = list(services or [])
        self.broken_indexes = set()

    def service_count(self) -> int:
        return len(self.services)

    def service_id_at(self, index: int) -> str:
        if index in self.broken_indexes:
            raise ConnectionError(f"RPC timeout reading index {index}")
        return self.services[index].service_id

    def get_service(self, service_id: str) -> RegistryService:
        for service in self.services:
            if service.service_id.lower() == service_id.lower():
                return service
        raise LookupError(f"Unknown service {service_id}")

class FakeFundingReader:
    """Stands in for AgentFundingReader with a fixed funding row per agent."""

    def __init__(self, funding: Optional[Dict[int, AgentFunding]] = None):
        self.funding = dict(funding or {})
        self.error: Optional[Exception] = None

    def get_funding(self, agent_id: int) -> AgentFunding:
        if self.error:
            raise self.error
        return self.funding.get(agent_id, AgentFunding(agent_id, False, 0, ZERO_ADDRESS, ZERO_ADDRESS))



def make_service(service_id: str = RESOURCE_ID, active: bool = True, endpoint: str = "https://origin.example",
                 name: str = "Weather Oracle", agent_id: int = 7) -> RegistryService:
    return RegistryService(
        service_id=service_id,
        agent_id=agent_id,
        owner=PAYEE_ADDRESS,
        name=name,
        price_per_call=PRICE,
        endpoint=endpoint,
        service_type=2,
        payment_mode=0,
        active=active,
        total_calls=0,
        total_revenue=0,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        PUBLIC_URL="http://testserver",
        X402_NETWORK="eip155:10143",
        GATEWAY_ADDRESS=GATEWAY_ADDRESS,
        SERVICE_REGISTRY_ADDRESS=REGISTRY_ADDRESS,
        ASSET_ADDRESS=ASSET_ADDRESS,
        ASSET_NAME="USDC",
        ASSET_VERSION="2",
        ADMIN_TOKEN="admin-secret",
        SETTLEMENT_WAIT_SECONDS=3.0,
        SETTLEMENT_CONFIRMATION_TIMEOUT=5.0,
        X402_AUDIT_LOG_PATH=str(tmp_path / "audit.jsonl"),
        LEDGER_PATH=None,
    )


@pytest.fixture
def resource():
    return Resource(
        id=RESOURCE_ID,
        name="Weather Oracle",
        ownerAddress=PAYEE_ADDRESS,
        originURL="https://origin.example/api",
        pricePerCall=PRICE,
        serviceType="API",
    )


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_registry():
    return FakeRegistry([make_service()])
