# paygate/core/config.py
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings

# Load .env file if it exists
load_dotenv()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Settings(BaseSettings):
    """
    Process-wide configuration.

    Built once at startup by create_app() and handed to every component.
    The object is frozen: nothing may change it after construction.
    """
    PROJECT_NAME: str = "Paygate x402 Proxy"
    PUBLIC_URL: Optional[str] = None

    # Network
    X402_NETWORK: str = "eip155:10143"  # eip155:<chainId>
    RPC_URL: AnyHttpUrl = "http://localhost:8545"
    BUNDLER_URL: Optional[AnyHttpUrl] = None
    ENTRYPOINT_ADDRESS: str = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"

    # Contracts
    GATEWAY_ADDRESS: str = ZERO_ADDRESS
    SERVICE_REGISTRY_ADDRESS: str = ZERO_ADDRESS
    AGENT_POOL_FACTORY_ADDRESS: str = ZERO_ADDRESS  # funding config and agent pools
    IDENTITY_REGISTRY_ADDRESS: str = ZERO_ADDRESS  # agent wallets

    # Payment asset (ERC-3009 token) and its EIP-712 domain
    ASSET_ADDRESS: str = ZERO_ADDRESS
    ASSET_NAME: str = "USDC"
    ASSET_VERSION: str = "2"
    ASSET_DECIMALS: int = 6

    # Access
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:4402"  # comma-separated
    ADMIN_TOKEN: str = ""
    SETTLEMENT_SIGNER_KEY: str = ""

    # x402 behaviour
    X402_MAX_TIMEOUT_SECONDS: int = 60
    X402_CLOCK_SKEW_SECONDS: int = 60
    SETTLEMENT_CONFIRMATION_TIMEOUT: float = 120.0
    SETTLEMENT_WAIT_SECONDS: float = 10.0
    LEDGER_PATH: Optional[str] = None  # None keeps the ledger in memory
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # Origin forwarding
    ORIGIN_TIMEOUT_SECONDS: float = 30.0

    # Registry sync
    REGISTRY_SYNC_CONCURRENCY: int = 8

    # Agent side (user operations)
    USEROP_RECEIPT_TIMEOUT: float = 180.0
    USEROP_POLL_INTERVAL: float = 2.0

    @property
    def allowed_origins(self) -> List[str]:
        return [item.strip() for item in self.ALLOWED_ORIGINS.split(",") if item.strip()]

    @property
    def chain_id(self) -> int:
        return parse_chain_id(self.X402_NETWORK)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env
        frozen = True


def parse_chain_id(network: str) -> int:
    """
    Extract the numeric chain id from a CAIP-2 eip155 network identifier.

    Raises:
        ValueError: If the identifier is not of the form "eip155:<int>"
    """
    namespace, _, reference = network.partition(":")
    if namespace != "eip155" or not reference.isdigit():
        raise ValueError(f"Unsupported network identifier: {network!r}")
    return int(reference)


@lru_cache()  # One settings object per process
def get_settings() -> Settings:
    return Settings()
