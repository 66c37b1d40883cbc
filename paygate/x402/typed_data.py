# paygate/x402/typed_data.py
"""
EIP-712 payload for ERC-3009 TransferWithAuthorization.

The "exact" scheme signs this message; the domain comes from the payment
requirement (extra.name / extra.version, the asset as verifying contract,
and the chain id taken from the eip155 network identifier).
"""
from typing import Any, Dict, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_bytes, to_checksum_address, to_hex

from paygate.api.models.payment import Authorization, PaymentRequirement
from paygate.core.config import parse_chain_id

TRANSFER_WITH_AUTHORIZATION_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}


def nonce_bytes(nonce: str) -> bytes:
    """Decode a bytes32 hex nonce. Raises ValueError if it is not 32 bytes."""
    raw = to_bytes(hexstr=nonce)
    if len(raw) != 32:
        raise ValueError(f"Nonce must be 32 bytes, got {len(raw)}")
    return raw


def build_typed_data(authorization: Authorization, requirement: PaymentRequirement) -> Dict[str, Any]:
    return {
        "types": TRANSFER_WITH_AUTHORIZATION_TYPES,
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": requirement.extra.name,
            "version": requirement.extra.version,
            "chainId": parse_chain_id(requirement.network),
            "verifyingContract": to_checksum_address(requirement.asset),
        },
        "message": {
            "from": to_checksum_address(authorization.from_),
            "to": to_checksum_address(authorization.to),
            "value": authorization.value,
            "validAfter": authorization.validAfter,
            "validBefore": authorization.validBefore,
            "nonce": nonce_bytes(authorization.nonce),
        },
    }


def recover_signer(
    authorization: Authorization, signature: str, requirement: PaymentRequirement
) -> str:
    """Return the checksummed address that signed the authorization."""
    signable = encode_typed_data(full_message=build_typed_data(authorization, requirement))
    return Account.recover_message(signable, signature=signature)


def sign_authorization(
    authorization: Authorization, requirement: PaymentRequirement, private_key: str
) -> str:
    signed = Account.sign_typed_data(
        private_key, full_message=build_typed_data(authorization, requirement)
    )
    return to_hex(signed.signature)


def split_signature(signature: str) -> Tuple[int, bytes, bytes]:
    """Split a 65-byte r||s||v signature into (v, r, s) for transferWithAuthorization."""
    raw = to_bytes(hexstr=signature)
    if len(raw) != 65:
        raise ValueError(f"Signature must be 65 bytes, got {len(raw)}")
    v = raw[64]
    if v < 27:
        v += 27
    return v, raw[:32], raw[32:64]
