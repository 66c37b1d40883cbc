# paygate/x402/ledger.py
"""
Transaction ledger for x402 payments.

Every payment attempt is recorded here, keyed by its paymentId, and moves
strictly forward through the status lattice:

    pending -> verified -> settled

with a side exit to failed from any non-terminal state. settled and failed
are terminal. Advances of the same paymentId are
serialized with a per-id condition; different ids never share a lock.

Storage is injectable:
- InMemoryLedgerStore: process memory, used by tests and single-shot runs
- JsonlLedgerStore: append-only JSON lines file, replayed on start
"""
import json
import logging
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from eth_abi import encode
from eth_utils import keccak, to_bytes, to_checksum_address, to_hex

from paygate.api.models.transaction import PaymentMethod, Transaction, TransactionStatus
from paygate.core.errors import InvalidTransition, ReplayedPayment

logger = logging.getLogger(__name__)

# Non-terminal states and the single state each may advance to
_NEXT_STATUS = {
    TransactionStatus.PENDING: TransactionStatus.VERIFIED,
    TransactionStatus.VERIFIED: TransactionStatus.SETTLED,
}


def _nonce_key(payer: str, nonce: str) -> str:
    return f"{payer.lower()}:{nonce.lower()}"


def derive_payment_id(payer: str, nonce: str, resource_id: str) -> str:
    """
    Ledger key of an "exact" payment: keccak256(abi.encode(payer, nonce, resourceId)).

    Retries of the same proof for the same resource collapse onto one record.
    Raises ValueError if payer or nonce are not valid hex.
    """
    nonce_raw = to_bytes(hexstr=nonce)
    if len(nonce_raw) != 32:
        raise ValueError(f"Nonce must be 32 bytes, got {len(nonce_raw)}")
    encoded = encode(
        ["address", "bytes32", "string"],
        [to_checksum_address(payer), nonce_raw, resource_id],
    )
    return to_hex(keccak(encoded))


def normalize_payment_id(payment_id: str) -> str:
    """
    Canonical spelling of a bytes32 paymentId: 0x-prefixed lowercase hex.

    Every hex spelling of the same 32 bytes names the same on-chain payment,
    so ids coming from clients go through here before touching the ledger.
    Raises ValueError if the value is not 32 bytes of hex.
    """
    raw = to_bytes(hexstr=payment_id)
    if len(raw) != 32:
        raise ValueError(f"paymentId must be 32 bytes, got {len(raw)}")
    return to_hex(raw)


class LedgerStore:
    """Storage interface for ledger records. Implementations must be thread-safe."""

    def get(self, payment_id: str) -> Optional[Transaction]:
        raise NotImplementedError

    def put(self, transaction: Transaction) -> None:
        raise NotImplementedError

    def find_by_nonce(self, payer: str, nonce: str) -> Optional[Transaction]:
        raise NotImplementedError


class InMemoryLedgerStore(LedgerStore):

    def __init__(self):
        self._records: Dict[str, Transaction] = {}
        self._by_nonce: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, payment_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._records.get(payment_id)

    def put(self, transaction: Transaction) -> None:
        with self._lock:
            self._index(transaction)

    def find_by_nonce(self, payer: str, nonce: str) -> Optional[Transaction]:
        with self._lock:
            payment_id = self._by_nonce.get(_nonce_key(payer, nonce))
            return self._records.get(payment_id) if payment_id else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _index(self, transaction: Transaction) -> None:
        self._records[transaction.id] = transaction
        if transaction.nonce:
            self._by_nonce[_nonce_key(transaction.payer, transaction.nonce)] = transaction.id


class JsonlLedgerStore(InMemoryLedgerStore):
    """
    Durable ledger store.

    Each put appends the full record as one JSON line. On start the file is
    replayed and the last line for an id wins, so a restarted proxy keeps
    refusing nonces it has already consumed.
    """

    def __init__(self, path: str):
        super().__init__()
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._replay()

    @property
    def path(self) -> Path:
        return self._path

    def put(self, transaction: Transaction) -> None:
        line = json.dumps(transaction.model_dump(mode="json"))
        with self._lock:
            with open(self._path, "a") as f:
                f.write(line + "\n")
            self._index(transaction)

    def _replay(self) -> None:
        if not self._path.exists():
            return

        replayed = 0
        with open(self._path, "r") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    transaction = Transaction.model_validate(json.loads(line))
                except ValueError as e:
                    # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
                    logger.warning(f"x402: Skipping unreadable ledger line {line_number}: {e}")
                    continue
                self._index(transaction)
                replayed += 1

        logger.info(f"x402: Replayed {replayed} ledger entries from {self._path}")


class TransactionLedger:
    """
    Records payment attempts and enforces at-most-once settlement per paymentId.

    No lock is ever held across a remote call: callers record the attempt,
    release, do their remote work, then advance.
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        clock: Callable[[], float] = time.time,
        cleanup_interval: float = 300.0,
    ):
        self._store = store if store is not None else InMemoryLedgerStore()
        self._clock = clock
        self._conditions: Dict[str, threading.Condition] = defaultdict(threading.Condition)
        self._nonce_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = clock()

    @property
    def store(self) -> LedgerStore:
        return self._store

    def _condition(self, payment_id: str) -> threading.Condition:
        with self._registry_lock:
            self._maybe_cleanup()
            return self._conditions[payment_id]

    def _nonce_lock(self, payer: str, nonce: str) -> threading.Lock:
        with self._registry_lock:
            self._maybe_cleanup()
            return self._nonce_locks[_nonce_key(payer, nonce)]

    def record_attempt(
        self,
        payment_id: str,
        resource_id: str,
        payer: str,
        amount: int,
        method: PaymentMethod,
        nonce: Optional[str] = None,
        network: Optional[str] = None,
    ) -> Tuple[Transaction, bool]:
        """
        Create a pending record unless one already exists for payment_id.

        Returns:
            (transaction, created): the stored record and whether this call created it

        Raises:
            ReplayedPayment: If (payer, nonce) was already consumed by another paymentId
        """
        if nonce is None:
            return self._create_if_absent(payment_id, resource_id, payer, amount, method, None, network)

        with self._nonce_lock(payer, nonce):
            existing = self._store.find_by_nonce(payer, nonce)
            if existing is not None and existing.id != payment_id:
                raise ReplayedPayment(
                    f"Nonce {nonce} of {payer} already used by payment {existing.id}"
                )
            return self._create_if_absent(payment_id, resource_id, payer, amount, method, nonce, network)

    def _create_if_absent(self, payment_id, resource_id, payer, amount, method, nonce, network):
        condition = self._condition(payment_id)
        with condition:
            existing = self._store.get(payment_id)
            if existing is not None:
                return existing, False

            now = self._clock()
            transaction = Transaction(
                id=payment_id,
                resourceId=resource_id,
                payer=payer,
                amount=amount,
                method=method,
                status=TransactionStatus.PENDING,
                timestamp=now,
                updatedAt=now,
                paymentId=payment_id,
                nonce=nonce,
                network=network,
            )
            self._store.put(transaction)
            logger.info(f"x402: Ledger recorded {payment_id} as pending ({method.value}, {amount})")
            return transaction, True

    def advance(self, payment_id: str, status: TransactionStatus, **changes) -> Transaction:
        """
        Move a record one step forward, or to failed from any non-terminal state.

        Extra keyword arguments (transactionHash, failureReason, ...) are stored
        on the new record.

        Raises:
            KeyError: If no record exists for payment_id
            InvalidTransition: If the move is not allowed by the status lattice
        """
        condition = self._condition(payment_id)
        with condition:
            current = self._store.get(payment_id)
            if current is None:
                raise KeyError(f"No ledger record for payment {payment_id}")

            allowed = _NEXT_STATUS.get(current.status)
            if current.status.is_terminal or (
                status != allowed and status != TransactionStatus.FAILED
            ):
                raise InvalidTransition(payment_id, current.status.value, status.value)

            updated = current.model_copy(
                update={**changes, "status": status, "updatedAt": self._clock()}
            )
            self._store.put(updated)
            condition.notify_all()

        logger.info(f"x402: Ledger {payment_id} {current.status.value} -> {status.value}")
        return updated

    def lookup(self, payment_id: str) -> Optional[Transaction]:
        return self._store.get(payment_id)

    def is_nonce_consumed(self, payer: str, nonce: str) -> bool:
        return self._store.find_by_nonce(payer, nonce) is not None

    def wait_for_terminal(self, payment_id: str, timeout: float) -> Optional[Transaction]:
        """Block up to timeout seconds for the record to become settled or failed."""
        condition = self._condition(payment_id)
        with condition:
            condition.wait_for(
                lambda: self._is_terminal(payment_id),
                timeout=timeout,
            )
            return self._store.get(payment_id)

    def _is_terminal(self, payment_id: str) -> bool:
        transaction = self._store.get(payment_id)
        return transaction is not None and transaction.status.is_terminal

    def claim_delivery(self, payment_id: str) -> bool:
        """
        Redeem a settled payment for one forwarded request.

        Returns True exactly once per settled record.
        """
        condition = self._condition(payment_id)
        with condition:
            current = self._store.get(payment_id)
            if current is None or current.status != TransactionStatus.SETTLED or current.delivered:
                return False
            self._store.put(current.model_copy(update={"delivered": True, "updatedAt": self._clock()}))
            return True

    def _maybe_cleanup(self) -> None:
        """
        Periodically drop locks that can no longer guard a state change.

        Runs at most every cleanup_interval seconds, with _registry_lock held.
        A condition is dropped once its record is failed, or settled and
        delivered: every later operation on such a record is a read. A nonce
        lock is dropped once its record exists, since later attempts with the
        same nonce find that record and stop there.
        """
        now = self._clock()
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now

        stale_ids = [payment_id for payment_id in self._conditions if self._is_finished(payment_id)]
        for payment_id in stale_ids:
            del self._conditions[payment_id]

        stale_nonces = [
            key for key in self._nonce_locks
            if self._store.find_by_nonce(*key.split(":", 1)) is not None
        ]
        for key in stale_nonces:
            del self._nonce_locks[key]

        if stale_ids or stale_nonces:
            logger.debug(f"x402: Ledger cleanup dropped {len(stale_ids)} conditions, {len(stale_nonces)} nonce locks")

    def _is_finished(self, payment_id: str) -> bool:
        transaction = self._store.get(payment_id)
        if transaction is None:
            return False
        return transaction.status == TransactionStatus.FAILED or (
            transaction.status == TransactionStatus.SETTLED and transaction.delivered
        )
