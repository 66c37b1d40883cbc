# paygate/x402/settlement.py
"""
Settlement of verified payments.

settle() records the attempt as pending before any remote call, submits the
ERC-3009 transfer from the settlement signer, advances to verified with the
transaction hash and returns. A daemon watcher then waits for the receipt
with its own timeout and advances to settled or failed.

Gateway receipts were already paid on-chain through payForService, so they
move pending -> verified -> settled without a second transfer.

Exact payments made out to the settlement signer for an agent with a
revenue split are forwarded to the agent's pool and wallet once settled.
The gateway contract splits its own receipts.
"""
import logging
import re
import threading
from typing import Optional, Tuple

from web3.exceptions import TimeExhausted

from paygate.api.models.payment import PaymentProof
from paygate.api.models.resource import Resource, RevenueSplit
from paygate.api.models.transaction import PaymentMethod, Transaction, TransactionStatus
from paygate.core.errors import InvalidTransition, SettlementRevert
from paygate.services.chain import ChainGateway
from paygate.x402.audit import AuditLog
from paygate.x402.ledger import TransactionLedger
from paygate.x402.verifier import VerificationResult

logger = logging.getLogger(__name__)

BYTES32_HEX_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
BPS = 10_000


def split_revenue(total: int, split_ratio: int) -> Tuple[int, int]:
    """(pool share, wallet share) of total; the wallet gets the rounding remainder."""
    pool_amount = total * split_ratio // BPS
    return pool_amount, total - pool_amount


class SettlementExecutor:
    """
    Commits verified payments and tracks their confirmation.

    Args:
        ledger: Ledger holding the payment records
        gateway: Chain client used for the transfer and usage recording
        network: CAIP-2 network stored on the records
        confirmation_timeout: Seconds a watcher waits for the receipt
        audit: Optional audit log for settled/failed events
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        gateway: ChainGateway,
        network: str,
        confirmation_timeout: float = 120.0,
        audit: Optional[AuditLog] = None,
    ):
        self._ledger = ledger
        self._gateway = gateway
        self._network = network
        self._confirmation_timeout = confirmation_timeout
        self._audit = audit

    def settle(
        self,
        payment_id: str,
        resource: Resource,
        proof: PaymentProof,
        verification: VerificationResult,
    ) -> Transaction:
        """
        Settle an "exact" payment. Idempotent per payment_id.

        Returns:
            The ledger record, verified on a fresh submission or as found on a retry

        Raises:
            SettlementRevert: If the transfer could not be submitted (record marked failed)
            ReplayedPayment: If the nonce was consumed by another payment meanwhile
        """
        transaction, created = self._ledger.record_attempt(
            payment_id,
            resource_id=resource.id,
            payer=verification.payer,
            amount=verification.amount,
            method=PaymentMethod.EXACT,
            nonce=proof.nonce,
            network=self._network,
        )
        if not created:
            logger.info(f"x402: Payment {payment_id} already {transaction.status.value}, not resubmitting")
            return transaction

        signer = self._gateway.signer_address
        if signer is None or signer.lower() == resource.ownerAddress.lower():
            reason = "settlement signer missing or identical to the payee"
            self._fail(payment_id, verification.payer, reason)
            raise SettlementRevert(payment_id, reason)

        try:
            tx_hash = self._gateway.transfer_with_authorization(
                proof.payload.authorization, proof.payload.signature
            )
        except Exception as e:
            logger.error(f"x402: Settlement submission failed for {payment_id}: {e}")
            self._fail(payment_id, verification.payer, str(e))
            raise SettlementRevert(payment_id, str(e)) from e

        transaction = self._ledger.advance(payment_id, TransactionStatus.VERIFIED, transactionHash=tx_hash)
        logger.info(f"x402: Settlement of {payment_id} submitted: {tx_hash}")

        # Only funds that actually reach the signer are split
        split = resource.split if proof.payload.authorization.to.lower() == signer.lower() else None
        threading.Thread(
            target=self._watch,
            args=(payment_id, tx_hash, resource, split),
            name=f"settlement-{payment_id[:10]}",
            daemon=True,
        ).start()
        return transaction

    def settle_gateway_receipt(
        self, payment_id: str, resource: Resource, verification: VerificationResult
    ) -> Transaction:
        """Record a payForService payment. No transfer is submitted."""
        transaction, created = self._ledger.record_attempt(
            payment_id,
            resource_id=resource.id,
            payer=verification.payer,
            amount=verification.amount,
            method=PaymentMethod.GATEWAY,
            network=self._network,
        )
        if not created:
            return transaction

        self._ledger.advance(payment_id, TransactionStatus.VERIFIED)
        transaction = self._ledger.advance(payment_id, TransactionStatus.SETTLED)
        self._settled(transaction)
        self._record_usage_async(resource.id, verification.amount)
        return transaction

    def _watch(self, payment_id: str, tx_hash: str, resource: Resource, split: Optional[RevenueSplit] = None) -> None:
        try:
            success = self._gateway.wait_for_receipt(tx_hash, self._confirmation_timeout)
        except TimeExhausted:
            self._fail(payment_id, None, f"not confirmed within {self._confirmation_timeout}s")
            return
        except Exception as e:
            logger.error(f"x402: Confirmation watcher for {payment_id} failed: {e}")
            self._fail(payment_id, None, f"confirmation error: {e}")
            return

        if not success:
            self._fail(payment_id, None, "settlement transaction reverted")
            return

        try:
            transaction = self._ledger.advance(payment_id, TransactionStatus.SETTLED)
        except InvalidTransition as e:
            logger.warning(f"x402: {e}")
            return
        self._settled(transaction)
        if split is not None:
            self._split_and_record_usage(resource.id, transaction.amount, split)
        else:
            self._record_usage(resource.id, transaction.amount)

    def _settled(self, transaction: Transaction) -> None:
        logger.info(f"x402: Payment {transaction.paymentId} settled ({transaction.transactionHash})")
        if self._audit:
            self._audit.payment_settled(
                payer=transaction.payer,
                payment_id=transaction.paymentId,
                transaction_hash=transaction.transactionHash,
                network=transaction.network,
            )

    def _fail(self, payment_id: str, payer: Optional[str], reason: str) -> None:
        try:
            self._ledger.advance(payment_id, TransactionStatus.FAILED, failureReason=reason)
        except InvalidTransition as e:
            logger.warning(f"x402: {e}")
            return
        logger.warning(f"x402: Payment {payment_id} failed: {reason}")
        if self._audit:
            self._audit.payment_failed(reason=reason, stage="settlement",
                                       payment_id=payment_id, wallet_address=payer)

    def _record_usage_async(self, service_id: str, revenue: int) -> None:
        threading.Thread(
            target=self._record_usage, args=(service_id, revenue), daemon=True
        ).start()

    def _record_usage(self, service_id: str, revenue: int) -> None:
        """Best effort: usage stats never affect the payment state."""
        if not BYTES32_HEX_PATTERN.match(service_id) or not self._gateway.can_record_usage:
            return
        try:
            tx_hash = self._gateway.record_usage(service_id, 1, revenue)
            logger.info(f"x402: recordUsage sent for {service_id}: {tx_hash}")
        except Exception as e:
            logger.error(f"x402: recordUsage failed for {service_id}: {e}")

    def _split_and_record_usage(self, service_id: str, total: int, split: RevenueSplit) -> None:
        """
        Forward the pool and wallet shares, then record usage.

        Best effort like usage recording: a failed transfer leaves the rest
        of the funds with the settlement signer and never touches the ledger.
        """
        pool_amount, wallet_amount = split_revenue(total, split.splitRatio)
        try:
            for target, share in ((split.pool, pool_amount), (split.agentWallet, wallet_amount)):
                if share <= 0:
                    continue
                tx_hash = self._gateway.transfer(target, share)
                if not self._gateway.wait_for_receipt(tx_hash, self._confirmation_timeout):
                    raise RuntimeError(f"split transfer {tx_hash} to {target} reverted")
                logger.info(f"x402: Split {share} of {service_id} revenue to {target}: {tx_hash}")
        except Exception as e:
            logger.error(f"x402: Revenue split for {service_id} failed, funds stay with the signer: {e}")
            return
        self._record_usage(service_id, total)
