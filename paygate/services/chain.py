# paygate/services/chain.py
"""
On-chain collaborators of the proxy: the payment gateway, the payment asset
(ERC-3009 token) and the service registry's usage counter.

Reads go through contract views. Writes are signed by the dedicated
settlement signer; its transaction nonces come from a NonceAllocator so
concurrent settlements never collide.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_utils import to_bytes, to_hex
from web3 import Web3

from paygate.api.models.payment import Authorization
from paygate.core.config import ZERO_ADDRESS, Settings
from paygate.x402.typed_data import nonce_bytes, split_signature

logger = logging.getLogger(__name__)

GATEWAY_ABI = [
    {
        "name": "verifyPayment",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "paymentId", "type": "bytes32"}],
        "outputs": [
            {"name": "valid", "type": "bool"},
            {"name": "payer", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
    },
]

ERC3009_ABI = [
    {
        "name": "transferWithAuthorization",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

REGISTRY_USAGE_ABI = [
    {
        "name": "recordUsage",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "serviceId", "type": "bytes32"},
            {"name": "calls", "type": "uint256"},
            {"name": "revenue", "type": "uint256"},
        ],
        "outputs": [],
    },
]


@dataclass(frozen=True)
class GatewayPayment:
    """Result of the gateway's verifyPayment view."""
    valid: bool
    payer: str
    amount: int


class NonceAllocator:
    """
    Hands out transaction nonces for one sending address.

    Synced once from the node's pending transaction count, then incremented
    locally under a lock. resync() drops the cached value after a failed send.
    """

    def __init__(self, web3: Web3, address: str):
        self._web3 = web3
        self._address = address
        self._next: Optional[int] = None
        self._lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            if self._next is None:
                self._next = self._web3.eth.get_transaction_count(self._address, "pending")
                logger.info(f"Nonce allocator for {self._address} synced at {self._next}")
            nonce = self._next
            self._next += 1
            return nonce

    def resync(self) -> None:
        with self._lock:
            self._next = None


class ChainGateway:
    """
    Client for the gateway, asset and registry contracts.

    Args:
        web3: Connected Web3 instance
        gateway_address: x402 gateway contract (verifyPayment)
        asset_address: ERC-3009 payment token
        registry_address: ServiceRegistry (recordUsage)
        signer_key: Private key of the settlement signer; writes are refused without it
    """

    def __init__(
        self,
        web3: Web3,
        gateway_address: str,
        asset_address: str,
        registry_address: str = ZERO_ADDRESS,
        signer_key: Optional[str] = None,
    ):
        self.web3 = web3
        self._gateway = web3.eth.contract(address=Web3.to_checksum_address(gateway_address), abi=GATEWAY_ABI)
        self._asset = web3.eth.contract(address=Web3.to_checksum_address(asset_address), abi=ERC3009_ABI)
        self._registry_address = registry_address
        self._registry = web3.eth.contract(
            address=Web3.to_checksum_address(registry_address), abi=REGISTRY_USAGE_ABI
        )
        self._account = Account.from_key(signer_key) if signer_key else None
        self._nonces = NonceAllocator(web3, self._account.address) if self._account else None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChainGateway":
        web3 = Web3(Web3.HTTPProvider(str(settings.RPC_URL), request_kwargs={"timeout": 30}))
        return cls(
            web3,
            gateway_address=settings.GATEWAY_ADDRESS,
            asset_address=settings.ASSET_ADDRESS,
            registry_address=settings.SERVICE_REGISTRY_ADDRESS,
            signer_key=settings.SETTLEMENT_SIGNER_KEY or None,
        )

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    @property
    def can_record_usage(self) -> bool:
        return self._account is not None and self._registry_address.lower() != ZERO_ADDRESS

    def verify_payment(self, payment_id: str) -> GatewayPayment:
        valid, payer, amount = self._gateway.functions.verifyPayment(
            to_bytes(hexstr=payment_id)
        ).call()
        return GatewayPayment(valid=bool(valid), payer=payer, amount=int(amount))

    def transfer_with_authorization(self, authorization: Authorization, signature: str) -> str:
        """Submit the signed ERC-3009 transfer. Returns the transaction hash."""
        v, r, s = split_signature(signature)
        function = self._asset.functions.transferWithAuthorization(
            Web3.to_checksum_address(authorization.from_),
            Web3.to_checksum_address(authorization.to),
            authorization.value,
            authorization.validAfter,
            authorization.validBefore,
            nonce_bytes(authorization.nonce),
            v,
            r,
            s,
        )
        return self._send(function)

    def transfer(self, to: str, amount: int) -> str:
        """Send asset held by the settlement signer, used for revenue splits."""
        return self._send(self._asset.functions.transfer(Web3.to_checksum_address(to), amount))

    def record_usage(self, service_id: str, calls: int, revenue: int) -> str:
        function = self._registry.functions.recordUsage(to_bytes(hexstr=service_id), calls, revenue)
        return self._send(function)

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> bool:
        """
        Block until the transaction is mined.

        Returns:
            True if it executed successfully, False if it reverted

        Raises:
            web3.exceptions.TimeExhausted: If it is not mined within timeout
        """
        receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=1)
        return receipt["status"] == 1

    def _send(self, function) -> str:
        if self._account is None:
            raise RuntimeError("No settlement signer key configured")

        nonce = self._nonces.allocate()
        try:
            tx = function.build_transaction({
                "from": self._account.address,
                "nonce": nonce,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception:
            # The allocated nonce may be unused now; re-read it from the node next time
            self._nonces.resync()
            raise

        logger.info(f"Transaction sent from {self._account.address} (nonce {nonce}): {to_hex(tx_hash)}")
        return to_hex(tx_hash)
