# paygate/services/registry.py
import logging
from dataclasses import dataclass
from typing import Optional

from eth_utils import to_bytes, to_hex
from web3 import Web3

from paygate.api.models.resource import SERVICE_TYPE_NAMES
from paygate.core.config import ZERO_ADDRESS, Settings

logger = logging.getLogger(__name__)

SERVICE_REGISTRY_ABI = [
    {
        "name": "getService",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "serviceId", "type": "bytes32"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "agentId", "type": "uint256"},
                    {"name": "owner", "type": "address"},
                    {"name": "name", "type": "string"},
                    {"name": "pricePerCall", "type": "uint256"},
                    {"name": "endpoint", "type": "string"},
                    {"name": "serviceType", "type": "uint8"},
                    {"name": "paymentMode", "type": "uint8"},
                    {"name": "active", "type": "bool"},
                    {"name": "totalCalls", "type": "uint256"},
                    {"name": "totalRevenue", "type": "uint256"},
                ],
            }
        ],
    },
    {
        "name": "getServiceCount",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "getServiceIdAt",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "index", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
]


@dataclass(frozen=True)
class RegistryService:
    """A ServiceRegistry entry as returned by getService."""
    service_id: str
    agent_id: int
    owner: str
    name: str
    price_per_call: int
    endpoint: str
    service_type: int
    payment_mode: int
    active: bool
    total_calls: int
    total_revenue: int

    @property
    def service_type_name(self) -> str:
        return SERVICE_TYPE_NAMES.get(self.service_type, "OTHER")


class ServiceRegistryReader:
    """Read-only client for the on-chain ServiceRegistry."""

    def __init__(self, web3: Web3, registry_address: str):
        self._contract = web3.eth.contract(
            address=Web3.to_checksum_address(registry_address), abi=SERVICE_REGISTRY_ABI
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceRegistryReader":
        web3 = Web3(Web3.HTTPProvider(str(settings.RPC_URL), request_kwargs={"timeout": 30}))
        return cls(web3, settings.SERVICE_REGISTRY_ADDRESS)

    def service_count(self) -> int:
        return int(self._contract.functions.getServiceCount().call())

    def service_id_at(self, index: int) -> str:
        return to_hex(self._contract.functions.getServiceIdAt(index).call())

    def get_service(self, service_id: str) -> RegistryService:
        (agent_id, owner, name, price, endpoint, service_type, payment_mode,
         active, total_calls, total_revenue) = self._contract.functions.getService(
            to_bytes(hexstr=service_id)
        ).call()
        return RegistryService(
            service_id=service_id,
            agent_id=int(agent_id),
            owner=owner,
            name=name,
            price_per_call=int(price),
            endpoint=endpoint,
            service_type=int(service_type),
            payment_mode=int(payment_mode),
            active=bool(active),
            total_calls=int(total_calls),
            total_revenue=int(total_revenue),
        )


AGENT_FACTORY_ABI = [
    {
        "name": "getFundingConfig",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "agentId", "type": "uint256"}],
        "outputs": [
            {"name": "needsFunding", "type": "bool"},
            {"name": "splitRatio", "type": "uint16"},
        ],
    },
    {
        "name": "poolByAgentId",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "agentId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

IDENTITY_REGISTRY_ABI = [
    {
        "name": "getAgentWallet",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "agentId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]


@dataclass(frozen=True)
class AgentFunding:
    """Funding configuration of the agent behind a service."""
    agent_id: int
    needs_funding: bool
    split_ratio: int  # basis points sent to the pool
    agent_wallet: str
    pool: str

    @property
    def has_split_targets(self) -> bool:
        return self.agent_wallet.lower() != ZERO_ADDRESS and self.pool.lower() != ZERO_ADDRESS


class AgentFundingReader:
    """Reads agent funding config, pool and wallet from the pool factory and identity registry."""

    def __init__(self, web3: Web3, pool_factory_address: str, identity_registry_address: str):
        self._factory = web3.eth.contract(
            address=Web3.to_checksum_address(pool_factory_address), abi=AGENT_FACTORY_ABI
        )
        self._identity = web3.eth.contract(
            address=Web3.to_checksum_address(identity_registry_address), abi=IDENTITY_REGISTRY_ABI
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["AgentFundingReader"]:
        """None unless both the pool factory and the identity registry are configured."""
        if ZERO_ADDRESS in (settings.AGENT_POOL_FACTORY_ADDRESS.lower(), settings.IDENTITY_REGISTRY_ADDRESS.lower()):
            return None
        web3 = Web3(Web3.HTTPProvider(str(settings.RPC_URL), request_kwargs={"timeout": 30}))
        return cls(web3, settings.AGENT_POOL_FACTORY_ADDRESS, settings.IDENTITY_REGISTRY_ADDRESS)

    def get_funding(self, agent_id: int) -> AgentFunding:
        needs_funding, split_ratio = self._factory.functions.getFundingConfig(agent_id).call()
        pool = self._factory.functions.poolByAgentId(agent_id).call()
        wallet = self._identity.functions.getAgentWallet(agent_id).call()
        logger.info(f"Agent {agent_id} funding config: needsFunding={needs_funding}, splitRatio={split_ratio}")
        return AgentFunding(
            agent_id=agent_id,
            needs_funding=bool(needs_funding),
            split_ratio=int(split_ratio),
            agent_wallet=wallet,
            pool=pool,
        )
