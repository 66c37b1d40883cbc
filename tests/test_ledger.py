# tests/test_ledger.py
"""
Unit tests for the transaction ledger and its stores.
"""
import json
import threading

import pytest

from paygate.api.models.transaction import PaymentMethod, TransactionStatus
from paygate.core.errors import InvalidTransition, ReplayedPayment
from paygate.x402.ledger import (
    InMemoryLedgerStore,
    JsonlLedgerStore,
    TransactionLedger,
    derive_payment_id,
    normalize_payment_id,
)

from conftest import OTHER_ADDRESS, PAYER_ADDRESS, RESOURCE_ID

NONCE = "0x" + "01" * 32
PAYMENT_ID = "0x" + "cd" * 32


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def record(ledger, payment_id=PAYMENT_ID, nonce=NONCE, payer=PAYER_ADDRESS):
    return ledger.record_attempt(
        payment_id,
        resource_id=RESOURCE_ID,
        payer=payer,
        amount=1_000_000,
        method=PaymentMethod.EXACT,
        nonce=nonce,
        network="eip155:10143",
    )


class TestDerivePaymentId:
    """Test paymentId derivation."""

    def test_deterministic(self):
        """Same payer, nonce and resource always give the same id."""
        assert derive_payment_id(PAYER_ADDRESS, NONCE, RESOURCE_ID) == derive_payment_id(
            PAYER_ADDRESS.lower(), NONCE, RESOURCE_ID
        )

    def test_differs_per_resource(self):
        """The resource is part of the key."""
        assert derive_payment_id(PAYER_ADDRESS, NONCE, RESOURCE_ID) != derive_payment_id(
            PAYER_ADDRESS, NONCE, "other-resource"
        )

    def test_is_bytes32_hex(self):
        """Derived ids are 0x-prefixed bytes32 hex."""
        payment_id = derive_payment_id(PAYER_ADDRESS, NONCE, RESOURCE_ID)
        assert payment_id.startswith("0x")
        assert len(payment_id) == 66

    def test_short_nonce_rejected(self):
        """A nonce that is not 32 bytes raises ValueError."""
        with pytest.raises(ValueError):
            derive_payment_id(PAYER_ADDRESS, "0x1234", RESOURCE_ID)


class TestNormalizePaymentId:
    """Test the canonical paymentId spelling."""

    @pytest.mark.parametrize("spelling", ["0x" + "AB" * 32, "0x" + "aB" * 32, "0X" + "ab" * 32])
    def test_case_variants_collapse(self, spelling):
        """Every hex spelling maps to the lowercase id."""
        assert normalize_payment_id(spelling) == "0x" + "ab" * 32

    def test_leading_zeros_kept(self):
        """A paymentId with leading zero bytes keeps its full width."""
        assert normalize_payment_id("0x" + "00" * 31 + "01") == "0x" + "00" * 31 + "01"

    @pytest.mark.parametrize("value", ["0x1234", "0x" + "zz" * 32, "0x" + "ab" * 33])
    def test_not_bytes32(self, value):
        """Short, long or non-hex values raise ValueError."""
        with pytest.raises(ValueError):
            normalize_payment_id(value)

class TestRecordAttempt:
    """Test attempt recording."""

    def test_creates_pending_record(self):
        """A new attempt is stored as pending."""
        ledger = TransactionLedger()
        transaction, created = record(ledger)

        assert created is True
        assert transaction.status == TransactionStatus.PENDING
        assert transaction.paymentId == PAYMENT_ID
        assert ledger.lookup(PAYMENT_ID) == transaction

    def test_second_attempt_returns_existing(self):
        """Recording the same paymentId twice keeps one record."""
        ledger = TransactionLedger()
        first, _ = record(ledger)
        second, created = record(ledger)

        assert created is False
        assert second == first

    def test_nonce_reuse_under_other_id_is_replay(self):
        """A (payer, nonce) pair can back only one paymentId."""
        ledger = TransactionLedger()
        record(ledger)

        with pytest.raises(ReplayedPayment):
            record(ledger, payment_id="0x" + "ef" * 32)

    def test_same_nonce_other_payer_is_fine(self):
        """Nonces are scoped to their payer."""
        ledger = TransactionLedger()
        record(ledger)
        _, created = record(ledger, payment_id="0x" + "ef" * 32, payer=OTHER_ADDRESS)
        assert created is True

    def test_nonce_consumed(self):
        """Nonce lookups ignore case."""
        ledger = TransactionLedger()
        assert ledger.is_nonce_consumed(PAYER_ADDRESS, NONCE) is False
        record(ledger)
        assert ledger.is_nonce_consumed(PAYER_ADDRESS.lower(), NONCE.upper().replace("0X", "0x")) is True

    def test_concurrent_attempts_create_one_record(self):
        """Racing attempts for one id: exactly one creates the record."""
        ledger = TransactionLedger()
        results = []
        barrier = threading.Barrier(10)

        def attempt():
            barrier.wait()
            results.append(record(ledger)[1])

        threads = [threading.Thread(target=attempt) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1


class TestAdvance:
    """Test status transitions."""

    def test_forward_path(self):
        """Records move pending, verified, settled."""
        ledger = TransactionLedger()
        record(ledger)

        verified = ledger.advance(PAYMENT_ID, TransactionStatus.VERIFIED, transactionHash="0xabc")
        settled = ledger.advance(PAYMENT_ID, TransactionStatus.SETTLED)

        assert verified.transactionHash == "0xabc"
        assert settled.status == TransactionStatus.SETTLED
        assert settled.transactionHash == "0xabc"

    def test_fail_from_pending(self):
        """A pending record can fail."""
        ledger = TransactionLedger()
        record(ledger)
        failed = ledger.advance(PAYMENT_ID, TransactionStatus.FAILED, failureReason="reverted")
        assert failed.status == TransactionStatus.FAILED
        assert failed.failureReason == "reverted"

    def test_cannot_skip_verified(self):
        """Pending cannot jump to settled."""
        ledger = TransactionLedger()
        record(ledger)
        with pytest.raises(InvalidTransition):
            ledger.advance(PAYMENT_ID, TransactionStatus.SETTLED)

    def test_cannot_go_backwards(self):
        """Verified cannot return to pending."""
        ledger = TransactionLedger()
        record(ledger)
        ledger.advance(PAYMENT_ID, TransactionStatus.VERIFIED)
        with pytest.raises(InvalidTransition):
            ledger.advance(PAYMENT_ID, TransactionStatus.PENDING)

    @pytest.mark.parametrize("terminal", [TransactionStatus.SETTLED, TransactionStatus.FAILED])
    def test_terminal_states_are_final(self, terminal):
        """Nothing moves a record out of settled or failed."""
        ledger = TransactionLedger()
        record(ledger)
        ledger.advance(PAYMENT_ID, TransactionStatus.VERIFIED)
        ledger.advance(PAYMENT_ID, terminal)

        for status in TransactionStatus:
            with pytest.raises(InvalidTransition):
                ledger.advance(PAYMENT_ID, status)
        assert ledger.lookup(PAYMENT_ID).status == terminal

    def test_unknown_id(self):
        """Advancing an unknown id raises KeyError."""
        with pytest.raises(KeyError):
            TransactionLedger().advance(PAYMENT_ID, TransactionStatus.VERIFIED)

    def test_concurrent_advances_apply_once(self):
        """Only one of many racing pending -> verified advances wins."""
        ledger = TransactionLedger()
        record(ledger)
        outcomes = []
        barrier = threading.Barrier(8)

        def advance():
            barrier.wait()
            try:
                ledger.advance(PAYMENT_ID, TransactionStatus.VERIFIED)
                outcomes.append("ok")
            except InvalidTransition:
                outcomes.append("refused")

        threads = [threading.Thread(target=advance) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("refused") == 7


class TestWaitAndDelivery:
    """Test waiting for terminal states and single redemption."""

    def test_wait_returns_when_settled(self):
        """A waiter wakes when the record settles."""
        ledger = TransactionLedger()
        record(ledger)
        ledger.advance(PAYMENT_ID, TransactionStatus.VERIFIED)

        timer = threading.Timer(0.1, ledger.advance, args=(PAYMENT_ID, TransactionStatus.SETTLED))
        timer.start()
        transaction = ledger.wait_for_terminal(PAYMENT_ID, timeout=5)
        timer.join()

        assert transaction.status == TransactionStatus.SETTLED

    def test_wait_times_out_with_current_record(self):
        """A timed-out wait returns the record as it stands."""
        ledger = TransactionLedger()
        record(ledger)
        transaction = ledger.wait_for_terminal(PAYMENT_ID, timeout=0.05)
        assert transaction.status == TransactionStatus.PENDING

    def test_claim_delivery_once(self):
        """A settled payment is delivered once."""
        ledger = TransactionLedger()
        record(ledger)
        assert ledger.claim_delivery(PAYMENT_ID) is False  # not settled yet

        ledger.advance(PAYMENT_ID, TransactionStatus.VERIFIED)
        ledger.advance(PAYMENT_ID, TransactionStatus.SETTLED)

        assert ledger.claim_delivery(PAYMENT_ID) is True
        assert ledger.claim_delivery(PAYMENT_ID) is False
        assert ledger.lookup(PAYMENT_ID).delivered is True


class TestLockCleanup:
    """Test that per-payment locks do not outlive the payments they guard."""

    def make_ledger(self):
        clock = FakeClock()
        return TransactionLedger(clock=clock, cleanup_interval=300), clock

    def test_delivered_payment_locks_dropped(self):
        """Conditions and nonce locks of a settled, delivered payment are removed."""
        ledger, clock = self.make_ledger()
        record(ledger)
        ledger.advance(PAYMENT_ID, TransactionStatus.VERIFIED)
        ledger.advance(PAYMENT_ID, TransactionStatus.SETTLED)
        ledger.claim_delivery(PAYMENT_ID)
        assert PAYMENT_ID in ledger._conditions

        clock.now += 301
        other_id = "0x" + "99" * 32
        assert ledger.wait_for_terminal(other_id, timeout=0) is None

        assert PAYMENT_ID not in ledger._conditions
        assert ledger._nonce_locks == {}
        assert ledger.claim_delivery(PAYMENT_ID) is False
        assert ledger.is_nonce_consumed(PAYER_ADDRESS, NONCE) is True

    def test_failed_payment_locks_dropped(self):
        """A failed record no longer needs its condition."""
        ledger, clock = self.make_ledger()
        for i in range(5):
            payment_id = "0x" + f"{i:064x}"
            record(ledger, payment_id=payment_id, nonce="0x" + f"{i + 100:064x}")
            ledger.advance(payment_id, TransactionStatus.FAILED, failureReason="reverted")
        assert len(ledger._conditions) == 5

        clock.now += 301
        record(ledger, payment_id=PAYMENT_ID)

        assert list(ledger._conditions) == [PAYMENT_ID]
        assert len(ledger._nonce_locks) == 1

    def test_in_flight_payment_locks_kept(self):
        """Pending and undelivered settled records keep their conditions."""
        ledger, clock = self.make_ledger()
        record(ledger)
        settled_id = "0x" + "ee" * 32
        record(ledger, payment_id=settled_id, nonce="0x" + "02" * 32)
        ledger.advance(settled_id, TransactionStatus.VERIFIED)
        ledger.advance(settled_id, TransactionStatus.SETTLED)

        clock.now += 301
        ledger.wait_for_terminal(PAYMENT_ID, timeout=0)

        assert set(ledger._conditions) == {PAYMENT_ID, settled_id}
        assert ledger.claim_delivery(settled_id) is True

    def test_no_cleanup_before_interval(self):
        """Locks stay until the cleanup interval has passed."""
        ledger, clock = self.make_ledger()
        record(ledger)
        ledger.advance(PAYMENT_ID, TransactionStatus.FAILED)

        clock.now += 10
        ledger.lookup(PAYMENT_ID)
        ledger.wait_for_terminal(PAYMENT_ID, timeout=0)

        assert PAYMENT_ID in ledger._conditions


class TestStores:
    """Test the injectable stores."""

    def test_in_memory_store_is_default(self):
        """Without a store the ledger keeps records in memory."""
        ledger = TransactionLedger()
        assert isinstance(ledger.store, InMemoryLedgerStore)

    def test_jsonl_store_replays_after_restart(self, tmp_path):
        """A restarted ledger still knows consumed nonces and final states."""
        path = tmp_path / "ledger" / "ledger.jsonl"
        ledger = TransactionLedger(JsonlLedgerStore(str(path)))
        record(ledger)
        ledger.advance(PAYMENT_ID, TransactionStatus.VERIFIED, transactionHash="0xabc")
        ledger.advance(PAYMENT_ID, TransactionStatus.SETTLED)

        restarted = TransactionLedger(JsonlLedgerStore(str(path)))

        assert restarted.lookup(PAYMENT_ID).status == TransactionStatus.SETTLED
        assert restarted.lookup(PAYMENT_ID).transactionHash == "0xabc"
        assert restarted.is_nonce_consumed(PAYER_ADDRESS, NONCE) is True
        with pytest.raises(InvalidTransition):
            restarted.advance(PAYMENT_ID, TransactionStatus.FAILED)

    def test_jsonl_store_skips_unreadable_lines(self, tmp_path):
        """Corrupt lines are skipped on replay."""
        path = tmp_path / "ledger.jsonl"
        ledger = TransactionLedger(JsonlLedgerStore(str(path)))
        record(ledger)
        with open(path, "a") as f:
            f.write("not json\n")
            f.write(json.dumps({"id": "missing-fields"}) + "\n")

        restarted = JsonlLedgerStore(str(path))

        assert len(restarted) == 1
        assert restarted.get(PAYMENT_ID).status == TransactionStatus.PENDING
