# paygate/core/errors.py
"""
Error taxonomy for the payment gateway and the agent operation pipeline.

Verification problems are local and recoverable: the verifier reports them as
an InvalidReason inside a VerificationResult. The exception classes below
exist for callers that want to raise them (MalformedProof from the header
decoder) and for remote failures (settlement, relay, origin), which are
reported upward and never retried by the component that hit them.
"""
from enum import Enum
from typing import Optional


class PaygateError(Exception):
    """Base class for all paygate errors."""


class InvalidReason(str, Enum):
    """Why a payment proof was rejected."""
    MALFORMED_PROOF = "malformed_proof"
    SCHEME_MISMATCH = "scheme_mismatch"
    NETWORK_MISMATCH = "network_mismatch"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    RECIPIENT_MISMATCH = "recipient_mismatch"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED_REQUIREMENT = "expired_requirement"
    REPLAYED_PAYMENT = "replayed_payment"
    GATEWAY_REJECTED = "gateway_rejected"


class VerificationError(PaygateError):
    """
    A proof failed verification.

    Subclasses fix the reason; the base class takes it explicitly for
    checks without a dedicated exception (scheme, network, recipient, signature).
    """
    reason: InvalidReason = InvalidReason.MALFORMED_PROOF

    def __init__(self, message: str, reason: Optional[InvalidReason] = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason


class MalformedProof(VerificationError):
    reason = InvalidReason.MALFORMED_PROOF


class ExpiredRequirement(VerificationError):
    reason = InvalidReason.EXPIRED_REQUIREMENT


class ReplayedPayment(VerificationError):
    reason = InvalidReason.REPLAYED_PAYMENT


class InsufficientAmount(VerificationError):
    reason = InvalidReason.INSUFFICIENT_AMOUNT


class InvalidTransition(PaygateError):
    """A ledger record was asked to move backwards or out of a terminal state."""

    def __init__(self, payment_id: str, current: str, requested: str):
        super().__init__(f"Cannot move {payment_id} from {current} to {requested}")
        self.payment_id = payment_id
        self.current = current
        self.requested = requested


class SettlementRevert(PaygateError):
    """The on-chain settlement call failed or reverted."""

    def __init__(self, payment_id: str, reason: str, transaction_hash: Optional[str] = None):
        super().__init__(f"Settlement of {payment_id} failed: {reason}")
        self.payment_id = payment_id
        self.reason = reason
        self.transaction_hash = transaction_hash


class OriginUnavailable(PaygateError):
    """The origin could not be reached after the payment settled."""

    def __init__(self, origin_url: str, detail: str):
        super().__init__(f"Origin {origin_url} unavailable: {detail}")
        self.origin_url = origin_url
        self.detail = detail


class CallEncodingError(PaygateError, ValueError):
    """Arguments for a contract call could not be encoded."""


class RelayError(PaygateError):
    """The relay (bundler) or node RPC answered with an error."""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        super().__init__(f"Relay RPC error ({method}): {message}")
        self.method = method
        self.message = message
        self.code = code


class RelayTimeout(PaygateError):
    """No receipt arrived within the maximum wait. The outcome is unknown."""

    def __init__(self, operation_hash: str, waited_seconds: float):
        super().__init__(
            f"UserOperation {operation_hash} not included within {waited_seconds}s"
        )
        self.operation_hash = operation_hash
        self.waited_seconds = waited_seconds


class PendingOperationError(PaygateError):
    """An earlier operation for the same sender and nonce has no receipt yet."""

    def __init__(self, sender: str, nonce: int, operation_hash: str):
        super().__init__(
            f"Pending UserOperation {operation_hash} exists for sender {sender} "
            f"nonce {nonce}. Query it before sending another."
        )
        self.sender = sender
        self.nonce = nonce
        self.operation_hash = operation_hash


class OperationReverted(PaygateError):
    """The relay included the operation but its execution reverted on-chain."""

    def __init__(self, operation_hash: str, reason: Optional[str] = None):
        super().__init__(f"UserOperation {operation_hash} reverted: {reason or 'no reason given'}")
        self.operation_hash = operation_hash
        self.reason = reason
