# paygate/x402/gate.py
"""
Per-request payment decision for a proxied resource.

The gate resolves the resource, decides whether the request carries a
usable proof and drives verification and settlement. It returns a
GateDecision; turning that into an HTTP response is the middleware's job.

Two proof kinds are accepted:
- "exact": base64 JSON ERC-3009 authorization in X-PAYMENT / PAYMENT-SIGNATURE
- gateway receipt: bytes32 paymentId of a payForService call in X-PAYMENT-ID
"""
import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from paygate.api.models.payment import PaymentProof, PaymentRequiredResponse, PaymentRequirement
from paygate.api.models.resource import Resource
from paygate.api.models.transaction import Transaction, TransactionStatus
from paygate.core.config import Settings
from paygate.core.errors import InvalidReason, MalformedProof, ReplayedPayment, SettlementRevert
from paygate.services.catalog import ResourceCatalog
from paygate.services.chain import ChainGateway
from paygate.x402.audit import AuditLog
from paygate.x402.challenge import build_challenge, payee_for
from paygate.x402.ledger import TransactionLedger, derive_payment_id, normalize_payment_id
from paygate.x402.settlement import SettlementExecutor
from paygate.x402.verifier import PaymentVerifier, VerificationResult

logger = logging.getLogger(__name__)

BYTES32_HEX_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


class GateOutcome(Enum):
    CHALLENGE = "challenge"                  # no proof: 402 with requirements
    REJECTED = "rejected"                    # proof failed verification: 402
    SETTLEMENT_FAILED = "settlement_failed"  # verified but settlement failed: 402
    PENDING = "pending"                      # settlement not confirmed yet: 202
    PAID = "paid"                            # settled and redeemed: forward
    UNKNOWN_RESOURCE = "unknown_resource"    # 404
    UPSTREAM_ERROR = "upstream_error"        # gateway RPC unreachable: 502


@dataclass(frozen=True)
class GateDecision:
    outcome: GateOutcome
    resource: Optional[Resource] = None
    challenge: Optional[PaymentRequiredResponse] = None
    transaction: Optional[Transaction] = None
    reason: Optional[InvalidReason] = None
    message: Optional[str] = None


def decode_payment_header(header_value: str) -> PaymentProof:
    """
    Decode an X-PAYMENT / PAYMENT-SIGNATURE header into a PaymentProof.

    The header is base64 JSON; raw JSON is tolerated.

    Raises:
        MalformedProof: If the header is neither, or the JSON is not a proof
    """
    value = header_value.strip()
    if value.startswith("{"):
        text = value
    else:
        try:
            text = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise MalformedProof(f"Payment header is not base64 JSON: {e}") from e

    try:
        return PaymentProof.model_validate(json.loads(text))
    except json.JSONDecodeError as e:
        raise MalformedProof(f"Payment header JSON is invalid: {e}") from e
    except ValidationError as e:
        raise MalformedProof(f"Payment header is not an x402 payment payload: {e.error_count()} errors") from e


class PaymentGate:
    """
    Orchestrates catalog, challenger, verifier, executor and ledger for one request.

    Blocking: call it from a worker thread.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: ResourceCatalog,
        ledger: TransactionLedger,
        verifier: PaymentVerifier,
        executor: SettlementExecutor,
        gateway: ChainGateway,
        audit: Optional[AuditLog] = None,
    ):
        self._settings = settings
        self._catalog = catalog
        self._ledger = ledger
        self._verifier = verifier
        self._executor = executor
        self._gateway = gateway
        self._audit = audit

    def resource(self, resource_id: str) -> Optional[Resource]:
        return self._catalog.get(resource_id)

    def evaluate(
        self,
        resource_id: str,
        resource_url: str,
        payment_header: Optional[str] = None,
        payment_id_header: Optional[str] = None,
        client_ip: str = "unknown",
    ) -> GateDecision:
        resource = self._catalog.get(resource_id)
        if resource is None:
            return GateDecision(GateOutcome.UNKNOWN_RESOURCE, message=f"Resource '{resource_id}' not found")

        challenge = build_challenge(
            resource, resource_url, self._settings, pay_to=payee_for(resource, self._gateway.signer_address)
        )
        requirement = challenge.accepts[0]

        if payment_header:
            return self._evaluate_exact(resource, challenge, requirement, payment_header, client_ip)
        if payment_id_header:
            return self._evaluate_gateway_receipt(resource, challenge, payment_id_header.strip(), client_ip)

        logger.info(f"x402: No payment header for {resource.id}, returning 402 for {requirement.maxAmountRequired}")
        if self._audit:
            self._audit.payment_required_sent(
                client_ip=client_ip,
                resource_id=resource.id,
                amount=requirement.maxAmountRequired,
                network=requirement.network,
                pay_to=requirement.payTo,
            )
        return GateDecision(GateOutcome.CHALLENGE, resource=resource, challenge=challenge)

    def _evaluate_exact(
        self,
        resource: Resource,
        challenge: PaymentRequiredResponse,
        requirement: PaymentRequirement,
        payment_header: str,
        client_ip: str,
    ) -> GateDecision:
        try:
            proof = decode_payment_header(payment_header)
            payment_id = derive_payment_id(proof.payer, proof.nonce, resource.id)
        except (MalformedProof, ValueError) as e:
            logger.warning(f"x402: Invalid payment header from {client_ip}: {e}")
            return self._reject(resource, challenge, InvalidReason.MALFORMED_PROOF, str(e), client_ip)

        if self._audit:
            self._audit.payment_received(client_ip, proof.payer, payment_id, "exact", proof.amount)

        existing = self._ledger.lookup(payment_id)
        if existing is not None:
            # A retry: the caller still has to hold the signed authorization
            authentic = self._verifier.check_authenticity(proof, requirement)
            if not authentic.valid:
                return self._reject(resource, challenge, authentic.reason, authentic.message, client_ip, proof.payer)
            return self._redeem(resource, challenge, existing, client_ip)

        verification = self._verifier.verify(proof, requirement)
        self._audit_verification(client_ip, verification)
        if not verification.valid:
            return self._reject(resource, challenge, verification.reason, verification.message, client_ip, proof.payer)

        try:
            transaction = self._executor.settle(payment_id, resource, proof, verification)
        except ReplayedPayment as e:
            return self._reject(resource, challenge, e.reason, e.message, client_ip, proof.payer)
        except SettlementRevert as e:
            return GateDecision(
                GateOutcome.SETTLEMENT_FAILED,
                resource=resource,
                challenge=challenge,
                transaction=self._ledger.lookup(payment_id),
                message=e.reason,
            )

        if not transaction.status.is_terminal:
            transaction = self._ledger.wait_for_terminal(payment_id, self._settings.SETTLEMENT_WAIT_SECONDS)
        return self._redeem(resource, challenge, transaction, client_ip)

    def _evaluate_gateway_receipt(
        self,
        resource: Resource,
        challenge: PaymentRequiredResponse,
        payment_id: str,
        client_ip: str,
    ) -> GateDecision:
        if not BYTES32_HEX_PATTERN.match(payment_id):
            return self._reject(
                resource, challenge, InvalidReason.MALFORMED_PROOF,
                "X-PAYMENT-ID must be a 0x-prefixed bytes32", client_ip,
            )
        payment_id = normalize_payment_id(payment_id)

        if self._audit:
            self._audit.payment_received(client_ip, None, payment_id, "gateway")

        existing = self._ledger.lookup(payment_id)
        if existing is not None:
            return self._redeem(resource, challenge, existing, client_ip)

        try:
            verification = self._verifier.verify_gateway_receipt(payment_id, resource, self._gateway)
        except Exception as e:
            logger.error(f"x402: Gateway verification failed for {payment_id}: {e}")
            if self._audit:
                self._audit.error("gateway_rpc", str(e), {"payment_id": payment_id}, client_ip=client_ip)
            return GateDecision(GateOutcome.UPSTREAM_ERROR, resource=resource, message=str(e))

        self._audit_verification(client_ip, verification)
        if not verification.valid:
            return self._reject(resource, challenge, verification.reason, verification.message, client_ip)

        transaction = self._executor.settle_gateway_receipt(payment_id, resource, verification)
        return self._redeem(resource, challenge, transaction, client_ip)

    def _redeem(
        self,
        resource: Resource,
        challenge: PaymentRequiredResponse,
        transaction: Transaction,
        client_ip: str,
    ) -> GateDecision:
        if transaction.status == TransactionStatus.SETTLED:
            if self._ledger.claim_delivery(transaction.id):
                return GateDecision(
                    GateOutcome.PAID, resource=resource, transaction=self._ledger.lookup(transaction.id)
                )
            return self._reject(
                resource, challenge, InvalidReason.REPLAYED_PAYMENT,
                f"Payment {transaction.id} has already been redeemed", client_ip, transaction.payer,
            )

        if transaction.status == TransactionStatus.FAILED:
            return GateDecision(
                GateOutcome.SETTLEMENT_FAILED,
                resource=resource,
                challenge=challenge,
                transaction=transaction,
                message=transaction.failureReason or "settlement failed",
            )

        logger.info(f"x402: Payment {transaction.id} still {transaction.status.value}, answering 202")
        return GateDecision(GateOutcome.PENDING, resource=resource, transaction=transaction)

    def _reject(
        self,
        resource: Resource,
        challenge: PaymentRequiredResponse,
        reason: InvalidReason,
        message: str,
        client_ip: str,
        payer: Optional[str] = None,
    ) -> GateDecision:
        logger.warning(f"x402: Payment rejected for {resource.id} ({reason.value}): {message}")
        if self._audit:
            self._audit.payment_failed(reason=message, stage="verification",
                                       client_ip=client_ip, wallet_address=payer)
        return GateDecision(
            GateOutcome.REJECTED, resource=resource, challenge=challenge, reason=reason, message=message
        )

    def _audit_verification(self, client_ip: str, verification: VerificationResult) -> None:
        if self._audit:
            self._audit.payment_verified(
                client_ip,
                verification.payer,
                verification.valid,
                verification.reason.value if verification.reason else None,
            )
