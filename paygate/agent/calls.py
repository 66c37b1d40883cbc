# paygate/agent/calls.py
"""
ABI-typed call descriptors for the agent's smart account.

Every payload the agent sends goes through encode_function_call with a
signature from FUNCTION_SIGNATURES; nothing else builds calldata by hand.
Invalid arguments raise CallEncodingError before anything is signed.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, is_address, to_bytes, to_checksum_address, to_hex

from paygate.core.errors import CallEncodingError

UINT256_MAX = 2 ** 256 - 1

# Contract function signatures (v1 of the pool, token, gateway and account interfaces)
FUNCTION_SIGNATURES = {
    "pool_pull": "pull(address,uint256)",
    "pool_deposit": "deposit(uint256,address)",
    "approve": "approve(address,uint256)",
    "pay_for_service": "payForService(bytes32,uint256)",
    "execute": "execute(address,uint256,bytes)",
    "execute_batch": "executeBatch(address[],uint256[],bytes[])",
    "get_nonce": "getNonce(address,uint192)",
}


@dataclass(frozen=True)
class Call:
    """One ABI-encoded invocation executed by the smart account."""
    target: str
    value: int
    data: bytes

    @property
    def data_hex(self) -> str:
        return to_hex(self.data)

    @property
    def selector(self) -> bytes:
        return self.data[:4]


def _argument_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1:signature.rindex(")")]
    return [t for t in inner.split(",") if t]


def encode_function_call(name: str, args: Sequence) -> bytes:
    """Selector plus ABI-encoded arguments for a function in FUNCTION_SIGNATURES."""
    try:
        signature = FUNCTION_SIGNATURES[name]
    except KeyError:
        raise CallEncodingError(f"Unknown function {name!r}")

    try:
        encoded = encode(_argument_types(signature), list(args))
    except (TypeError, ValueError, OverflowError) as e:
        raise CallEncodingError(f"Cannot encode {signature} with {list(args)!r}: {e}") from e
    return function_signature_to_4byte_selector(signature) + encoded


def _address(value: str, field: str) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise CallEncodingError(f"{field} is not an address: {value!r}")
    return to_checksum_address(value)


def _amount(value: int, field: str, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise CallEncodingError(f"{field} must be an integer, got {value!r}")
    if value < 0 or value > UINT256_MAX or (value == 0 and not allow_zero):
        raise CallEncodingError(f"{field} out of range: {value}")
    return value


def _bytes32(value: str, field: str) -> bytes:
    try:
        raw = to_bytes(hexstr=value)
    except (TypeError, ValueError) as e:
        raise CallEncodingError(f"{field} is not hex: {value!r}") from e
    if len(raw) != 32:
        raise CallEncodingError(f"{field} must be 32 bytes, got {len(raw)}")
    return raw


def encode_pool_pull(pool: str, to: str, amount: int, remaining_cap: Optional[int] = None) -> Call:
    """
    Withdraw `amount` from the agent's spending pool to `to`.

    The pool enforces a daily cap; pass remaining_cap (remainingCapToday) to
    refuse an over-cap pull before it is signed.
    """
    amount = _amount(amount, "amount")
    if remaining_cap is not None and amount > remaining_cap:
        raise CallEncodingError(f"Pull of {amount} exceeds remaining daily cap {remaining_cap}")
    data = encode_function_call("pool_pull", [_address(to, "to"), amount])
    return Call(target=_address(pool, "pool"), value=0, data=data)


def encode_pool_deposit(pool: str, assets: int, receiver: str) -> Call:
    data = encode_function_call("pool_deposit", [_amount(assets, "assets"), _address(receiver, "receiver")])
    return Call(target=_address(pool, "pool"), value=0, data=data)


def encode_approve(token: str, spender: str, amount: int) -> Call:
    # Zero is a valid approval (revokes the allowance)
    data = encode_function_call("approve", [_address(spender, "spender"), _amount(amount, "amount", allow_zero=True)])
    return Call(target=_address(token, "token"), value=0, data=data)


def encode_pay_for_service(gateway: str, service_id: str, calls: int) -> Call:
    data = encode_function_call("pay_for_service", [_bytes32(service_id, "service_id"), _amount(calls, "calls")])
    return Call(target=_address(gateway, "gateway"), value=0, data=data)


def encode_execute(calls: Sequence[Call]) -> bytes:
    """
    Smart account calldata for the given calls.

    One call uses execute(dest, value, func); several use executeBatch, which
    reverts as a whole if any inner call reverts.
    """
    if not calls:
        raise CallEncodingError("At least one call is required")
    if len(calls) == 1:
        call = calls[0]
        return encode_function_call("execute", [call.target, call.value, call.data])
    return encode_function_call(
        "execute_batch",
        [
            [call.target for call in calls],
            [call.value for call in calls],
            [call.data for call in calls],
        ],
    )
