# paygate/agent/submitter.py
"""
Signs user operations, hands them to the relay and follows them to a receipt.

    BUILT -> SIGNED -> SUBMITTED -> INCLUDED | TIMED_OUT | REJECTED

INCLUDED carries the execution result: an included operation can still have
reverted (success=False). REJECTED means the relay refused it. TIMED_OUT
means the outcome is unknown; the operation is never resubmitted
automatically and query_receipt() can still resolve it later.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_hex

from paygate.agent.operation import Operation, user_operation_hash
from paygate.agent.relay import RelayClient
from paygate.core.errors import PaygateError, PendingOperationError, RelayError, RelayTimeout

logger = logging.getLogger(__name__)


class OperationState(Enum):
    BUILT = "built"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    INCLUDED = "included"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"


@dataclass(frozen=True)
class OperationReceipt:
    operation_hash: str
    transaction_hash: Optional[str]
    success: bool
    revert_reason: Optional[str] = None
    logs: Tuple[Dict[str, Any], ...] = ()

    @classmethod
    def from_rpc(cls, operation_hash: str, payload: Dict[str, Any]) -> "OperationReceipt":
        receipt = payload.get("receipt") or {}
        return cls(
            operation_hash=operation_hash,
            transaction_hash=receipt.get("transactionHash"),
            success=bool(payload.get("success")),
            revert_reason=payload.get("reason") or None,
            logs=tuple(payload.get("logs") or receipt.get("logs") or ()),
        )


@dataclass
class Submission:
    """Where one operation ended up."""
    state: OperationState
    operation: Operation
    operation_hash: Optional[str] = None
    receipt: Optional[OperationReceipt] = None
    error: Optional[PaygateError] = None
    history: list = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == OperationState.INCLUDED and self.receipt is not None and self.receipt.success


def sign_operation(operation: Operation, owner_key: str, entry_point: str, chain_id: int) -> Operation:
    """EIP-191 personal-sign of the user-operation hash by the account owner."""
    digest = user_operation_hash(operation, entry_point, chain_id)
    signed = Account.sign_message(encode_defunct(primitive=digest), private_key=owner_key)
    return operation.with_signature(to_hex(signed.signature))


class OperationSubmitter:
    """
    Drives one operation at a time per sender to a terminal state.

    Args:
        relay: Bundler/node client
        chain_id: Chain the EntryPoint lives on
        receipt_timeout: Maximum seconds to poll for a receipt
        poll_interval: Seconds between receipt queries
        clock: Monotonic time source
        sleep: Called between polls
    """

    def __init__(
        self,
        relay: RelayClient,
        chain_id: int,
        receipt_timeout: float = 180.0,
        poll_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._relay = relay
        self._chain_id = chain_id
        self._receipt_timeout = receipt_timeout
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        # sender (lowercase) -> (nonce, operation hash) of an operation without a receipt
        self._pending: Dict[str, Tuple[int, str]] = {}
        self._lock = threading.Lock()

    def pending_for(self, sender: str) -> Optional[Tuple[int, str]]:
        with self._lock:
            return self._pending.get(sender.lower())

    def submit(self, operation: Operation, owner_key: str) -> Submission:
        """
        Sign, send and poll.

        Raises:
            PendingOperationError: If an earlier operation for this sender and
                nonce was submitted and still has no receipt
        """
        submission = Submission(state=OperationState.BUILT, operation=operation)
        self._check_pending(operation)

        signed = sign_operation(operation, owner_key, self._relay.entry_point, self._chain_id)
        self._move(submission, OperationState.SIGNED)
        submission.operation = signed

        try:
            operation_hash = self._relay.send_user_operation(signed.to_rpc())
        except RelayError as e:
            logger.warning(f"UserOperation for {signed.sender} nonce {signed.nonce} rejected: {e.message}")
            submission.error = e
            self._move(submission, OperationState.REJECTED)
            return submission

        submission.operation_hash = operation_hash
        self._move(submission, OperationState.SUBMITTED)
        with self._lock:
            self._pending[signed.sender.lower()] = (signed.nonce, operation_hash)

        receipt = self.wait_for_receipt(operation_hash)
        if receipt is None:
            submission.error = RelayTimeout(operation_hash, self._receipt_timeout)
            self._move(submission, OperationState.TIMED_OUT)
            return submission

        submission.receipt = receipt
        self._move(submission, OperationState.INCLUDED)
        return submission

    def wait_for_receipt(self, operation_hash: str, timeout: Optional[float] = None) -> Optional[OperationReceipt]:
        """Poll until a receipt arrives or timeout elapses. Returns None on timeout."""
        timeout = self._receipt_timeout if timeout is None else timeout
        deadline = self._clock() + timeout
        while True:
            receipt = self._try_query(operation_hash)
            if receipt is not None:
                return receipt
            if self._clock() + self._poll_interval > deadline:
                return None
            self._sleep(self._poll_interval)

    def query_receipt(self, operation_hash: str) -> Optional[OperationReceipt]:
        """
        Ask the relay once for the receipt of a previously submitted operation.

        Raises:
            RelayError: If the relay answers with an error
        """
        payload = self._relay.get_user_operation_receipt(operation_hash)
        if payload is None:
            return None
        receipt = OperationReceipt.from_rpc(operation_hash, payload)
        self._clear_pending(operation_hash)
        return receipt

    def _try_query(self, operation_hash: str) -> Optional[OperationReceipt]:
        try:
            return self.query_receipt(operation_hash)
        except RelayError as e:
            # Not indexed yet on some bundlers; keep polling
            logger.debug(f"Receipt query for {operation_hash} failed: {e}")
            return None

    def _check_pending(self, operation: Operation) -> None:
        pending = self.pending_for(operation.sender)
        if pending is None or pending[0] != operation.nonce:
            return
        if self._try_query(pending[1]) is None:
            raise PendingOperationError(operation.sender, operation.nonce, pending[1])

    def _clear_pending(self, operation_hash: str) -> None:
        with self._lock:
            for sender, (_, pending_hash) in list(self._pending.items()):
                if pending_hash == operation_hash:
                    del self._pending[sender]

    @staticmethod
    def _move(submission: Submission, state: OperationState) -> None:
        submission.history.append(submission.state)
        submission.state = state
        logger.info(f"UserOperation {submission.operation_hash or '(unsent)'}: {state.value}")
