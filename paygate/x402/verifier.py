# paygate/x402/verifier.py
"""
Payment proof verification.

Checks run strictly in this order and stop at the first failure:
1. scheme and network match the requirement
2. amount covers the price and the recipient is the payee
3. EIP-712 signature recovers to the payer
4. authorization window has not expired
5. (payer, nonce) has not been consumed in the ledger

Each check raises a VerificationError; the public methods turn it into a
VerificationResult carrying the InvalidReason, so nothing escapes the
verifier and nothing is partially applied.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from paygate.api.models.payment import PaymentProof, PaymentRequirement
from paygate.api.models.resource import Resource
from paygate.core.errors import (
    ExpiredRequirement,
    InsufficientAmount,
    InvalidReason,
    MalformedProof,
    ReplayedPayment,
    VerificationError,
)
from paygate.x402.ledger import TransactionLedger
from paygate.x402.typed_data import nonce_bytes, recover_signer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    payer: Optional[str] = None
    amount: int = 0
    reason: Optional[InvalidReason] = None
    message: Optional[str] = None

    @classmethod
    def invalid(cls, reason: InvalidReason, message: str, payer: Optional[str] = None, amount: int = 0):
        return cls(valid=False, payer=payer, amount=amount, reason=reason, message=message)


class PaymentVerifier:
    """
    Validates payment proofs against the requirement they answer.

    Args:
        ledger: Consulted for consumed (payer, nonce) pairs and gateway receipts
        clock_skew_seconds: Tolerance applied to validAfter on both sides
        clock: Returns the current unix time
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        clock_skew_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._ledger = ledger
        self._skew = clock_skew_seconds
        self._clock = clock

    def verify(self, proof: PaymentProof, requirement: PaymentRequirement) -> VerificationResult:
        authorization = proof.payload.authorization
        payer = authorization.from_
        amount = authorization.value

        try:
            self._check_authenticity(proof, requirement)
            self._check_expiry(authorization.validAfter, authorization.validBefore, requirement.maxTimeoutSeconds)
            self._check_replay(payer, authorization.nonce)
        except VerificationError as e:
            return VerificationResult.invalid(e.reason, e.message, payer, amount)

        logger.info(f"x402: Verified exact payment of {amount} from {payer}")
        return VerificationResult(valid=True, payer=payer, amount=amount)

    def check_authenticity(self, proof: PaymentProof, requirement: PaymentRequirement) -> VerificationResult:
        """
        Run checks 1-3 only (scheme/network, amount/recipient, signature).

        Used when a retried proof maps onto an existing ledger record: the
        caller must still prove it holds the signed authorization.
        """
        authorization = proof.payload.authorization
        try:
            self._check_authenticity(proof, requirement)
        except VerificationError as e:
            return VerificationResult.invalid(e.reason, e.message, authorization.from_, authorization.value)
        return VerificationResult(valid=True, payer=authorization.from_, amount=authorization.value)

    def _check_authenticity(self, proof: PaymentProof, requirement: PaymentRequirement) -> None:
        authorization = proof.payload.authorization
        payer = authorization.from_

        try:
            nonce_bytes(authorization.nonce)
        except ValueError as e:
            raise MalformedProof(f"Invalid nonce: {e}") from e

        # 1. scheme / network
        if proof.scheme != requirement.scheme:
            raise VerificationError(
                f"Scheme {proof.scheme!r} does not match {requirement.scheme!r}",
                InvalidReason.SCHEME_MISMATCH,
            )
        if proof.network != requirement.network:
            raise VerificationError(
                f"Network {proof.network!r} does not match {requirement.network!r}",
                InvalidReason.NETWORK_MISMATCH,
            )

        # 2. amount / recipient
        self._check_amount(authorization.value, int(requirement.maxAmountRequired), "Authorized")
        if authorization.to.lower() != requirement.payTo.lower():
            raise VerificationError(
                f"Authorization pays {authorization.to}, expected {requirement.payTo}",
                InvalidReason.RECIPIENT_MISMATCH,
            )

        # 3. signature
        try:
            signer = recover_signer(authorization, proof.payload.signature, requirement)
        except Exception as e:
            logger.warning(f"x402: Signature recovery failed for {payer}: {e}")
            raise VerificationError(f"Unrecoverable signature: {e}", InvalidReason.INVALID_SIGNATURE) from e
        if signer.lower() != payer.lower():
            raise VerificationError(
                f"Signature recovers to {signer}, not {payer}", InvalidReason.INVALID_SIGNATURE
            )

    @staticmethod
    def _check_amount(paid: int, required: int, label: str) -> None:
        if paid < required:
            raise InsufficientAmount(f"{label} {paid} is less than required {required}")

    def _check_expiry(self, valid_after: int, valid_before: int, max_timeout: int) -> None:
        now = self._clock()
        if now < valid_after - self._skew:
            raise ExpiredRequirement(f"Authorization not valid until {valid_after}")
        if now >= valid_before:
            raise ExpiredRequirement(f"Authorization expired at {valid_before}")
        # validAfter is the issuance stamp; the proof must arrive within maxTimeoutSeconds of it
        if now > valid_after + self._skew + max_timeout:
            raise ExpiredRequirement(f"Authorization issued at {valid_after} is older than {max_timeout}s")

    def _check_replay(self, payer: str, nonce: str) -> None:
        if self._ledger.is_nonce_consumed(payer, nonce):
            raise ReplayedPayment(f"Nonce {nonce} already used by {payer}")

    def verify_gateway_receipt(self, payment_id: str, resource: Resource, gateway) -> VerificationResult:
        """
        Verify a payment made on-chain through the gateway's payForService.

        Raises whatever the gateway client raises on RPC failure; the caller
        maps that to an upstream error rather than a payment rejection.
        """
        if self._ledger.lookup(payment_id) is not None:
            return VerificationResult.invalid(
                InvalidReason.REPLAYED_PAYMENT, f"Payment {payment_id} already redeemed"
            )

        receipt = gateway.verify_payment(payment_id)
        if not receipt.valid:
            return VerificationResult.invalid(
                InvalidReason.GATEWAY_REJECTED, f"Gateway does not recognise payment {payment_id}"
            )
        try:
            self._check_amount(receipt.amount, resource.pricePerCall, "Paid")
        except InsufficientAmount as e:
            return VerificationResult.invalid(e.reason, e.message, receipt.payer, receipt.amount)

        logger.info(f"x402: Verified gateway payment {payment_id} of {receipt.amount} from {receipt.payer}")
        return VerificationResult(valid=True, payer=receipt.payer, amount=receipt.amount)
