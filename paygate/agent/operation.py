# paygate/agent/operation.py
"""
EntryPoint v0.7 user operations for the agent's smart account.

OperationBuilder turns an ordered list of Calls into an Operation: callData
for execute/executeBatch, the EntryPoint nonce, gas prices from the node and
gas limits from the bundler, raised to at least the per-call floor. The
user-operation hash is the digest the account owner signs.
"""
import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional, Sequence, Tuple

from eth_abi import encode
from eth_utils import keccak, to_checksum_address, to_hex

from paygate.agent.calls import Call, encode_execute
from paygate.agent.relay import RelayClient

logger = logging.getLogger(__name__)

# Raw 65-byte ECDSA signature shaped placeholder accepted by gas estimation
DUMMY_SIGNATURE = (
    "0xfffffffffffffffffffffffffffffff0000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)

CALL_GAS_FLOOR = 35_000
PRIORITY_FEE_WEI = 3_000_000_000  # 3 gwei tip
GAS_PRICE_MULTIPLIER = 2
ESTIMATE_MULTIPLIER = 2


def calldata_gas(data: bytes) -> int:
    """Intrinsic calldata cost: 16 gas per non-zero byte, 4 per zero byte."""
    return sum(16 if byte else 4 for byte in data)


def call_gas_floor(call: Call) -> int:
    return CALL_GAS_FLOOR + calldata_gas(call.data)


@dataclass(frozen=True)
class GasEstimate:
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int


@dataclass(frozen=True)
class Operation:
    """
    An unsigned or signed user operation.

    Owned by the flow that built it; every change produces a new value.
    """
    sender: str
    nonce: int
    calls: Tuple[Call, ...]
    call_data: bytes
    gas: GasEstimate
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    signature: Optional[str] = None

    def to_rpc(self, signature: Optional[str] = None) -> Dict[str, str]:
        """Unpacked v0.7 JSON-RPC form, without factory and paymaster fields."""
        return {
            "sender": self.sender,
            "nonce": hex(self.nonce),
            "callData": to_hex(self.call_data),
            "callGasLimit": hex(self.gas.call_gas_limit),
            "verificationGasLimit": hex(self.gas.verification_gas_limit),
            "preVerificationGas": hex(self.gas.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
            "signature": signature or self.signature or DUMMY_SIGNATURE,
        }

    def with_signature(self, signature: str) -> "Operation":
        return replace(self, signature=signature)


def user_operation_hash(operation: Operation, entry_point: str, chain_id: int) -> bytes:
    """
    EntryPoint v0.7 getUserOpHash for an operation without initCode or paymaster.

    keccak256(abi.encode(keccak256(pack(op)), entryPoint, chainId)) where the
    packed form carries accountGasLimits and gasFees as two 128-bit halves.
    """
    account_gas_limits = (operation.gas.verification_gas_limit << 128) | operation.gas.call_gas_limit
    gas_fees = (operation.max_priority_fee_per_gas << 128) | operation.max_fee_per_gas
    packed = encode(
        ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
        [
            to_checksum_address(operation.sender),
            operation.nonce,
            keccak(b""),
            keccak(operation.call_data),
            account_gas_limits.to_bytes(32, "big"),
            operation.gas.pre_verification_gas,
            gas_fees.to_bytes(32, "big"),
            keccak(b""),
        ],
    )
    return keccak(encode(["bytes32", "address", "uint256"], [keccak(packed), to_checksum_address(entry_point), chain_id]))


class OperationBuilder:
    """
    Assembles calls into a ready-to-sign Operation.

    Several calls are sent as one executeBatch, so they succeed or revert
    together: an approve is never left behind without its payment.
    """

    def __init__(self, relay: RelayClient, chain_id: int):
        self._relay = relay
        self._chain_id = chain_id

    @property
    def entry_point(self) -> str:
        return self._relay.entry_point

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def build(self, sender: str, calls: Sequence[Call]) -> Operation:
        sender = to_checksum_address(sender)
        call_data = encode_execute(calls)
        nonce = self._relay.get_nonce(sender)

        gas_price = self._relay.gas_price()
        max_fee = gas_price * GAS_PRICE_MULTIPLIER
        priority_fee = min(PRIORITY_FEE_WEI, max_fee)

        draft = Operation(
            sender=sender,
            nonce=nonce,
            calls=tuple(calls),
            call_data=call_data,
            gas=GasEstimate(0, 0, 0),
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority_fee,
        )
        estimate = self._relay.estimate_user_operation_gas(draft.to_rpc(DUMMY_SIGNATURE))

        floor = sum(call_gas_floor(call) for call in calls)
        gas = GasEstimate(
            call_gas_limit=max(estimate.get("callGasLimit", 0) * ESTIMATE_MULTIPLIER, floor),
            verification_gas_limit=estimate.get("verificationGasLimit", 0) * ESTIMATE_MULTIPLIER,
            pre_verification_gas=estimate.get("preVerificationGas", 0) * ESTIMATE_MULTIPLIER,
        )
        logger.info(
            f"Built UserOperation for {sender} nonce {nonce}: {len(calls)} call(s), "
            f"callGasLimit {gas.call_gas_limit} (floor {floor})"
        )
        return replace(draft, gas=gas)

    def digest(self, operation: Operation) -> bytes:
        return user_operation_hash(operation, self.entry_point, self._chain_id)
