"""Tests for the payment ledger: initialize, finalize and payment history."""

import asyncio
import re
import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import InvalidTransition, PaymentNotFound, ValidationError
from app.models.payment_model import Dispute, GatewayTruth, Refund
from app.services.payment_ledger import AMOUNT_MISMATCH_REASON, PAYMENT_TRANSITIONS, generate_reference

from fakes import make_draft, paystack_transaction


def truth(reference, amount, order_id, status="success", currency="NGN", source="webhook") -> GatewayTruth:
    data = paystack_transaction(reference, amount, {"order_id": order_id}, status=status, currency=currency)
    return GatewayTruth.from_paystack(data, source=source)


@pytest.fixture
def placed(order_ledger, buyer):
    return order_ledger.checkout(buyer, make_draft())


@pytest.fixture
def reference(payment_ledger, placed):
    hosted = asyncio.run(payment_ledger.initialize(placed, "buyer@example.com", "https://mlfor.ng/order/x"))
    return hosted.reference


class TestReference:
    def test_format(self):
        assert re.fullmatch(r"MLF_[0-9A-Z]+_[0-9A-Z]{9}", generate_reference())

    def test_unique(self):
        assert len({generate_reference() for _ in range(200)}) == 200


class TestInitialize:
    def test_writes_one_pending_payment(self, payment_ledger, payments_store, gateway, placed, reference):
        assert list(payments_store.docs) == [reference]
        payment = payment_ledger.get(reference)
        assert payment.status == "pending"
        assert payment.amount == 12000
        assert payment.order_id == placed.id
        assert payment.retry_count == 0
        assert payment.authorization_url.endswith(reference)

        sent = gateway.initialized[0]
        assert sent["amount"] == 12000
        assert sent["currency"] == "NGN"
        assert sent["metadata"]["order_id"] == placed.id
        assert sent["metadata"]["user_id"] == placed.user_id

    def test_rejects_paid_order(self, payment_ledger, placed, reference):
        payment_ledger.finalize(truth(reference, 12000, placed.id))
        paid = payment_ledger.orders.get(placed.id)
        with pytest.raises(ValidationError, match="already paid"):
            asyncio.run(payment_ledger.initialize(paid, "buyer@example.com"))

    def test_rejects_cancelled_order(self, payment_ledger, order_ledger, placed):
        cancelled = order_ledger.cancel(placed.id)
        with pytest.raises(ValidationError):
            asyncio.run(payment_ledger.initialize(cancelled, "buyer@example.com"))

    def test_retry_count_and_limit(self, payment_ledger, placed):
        references = [
            asyncio.run(payment_ledger.initialize(placed, "buyer@example.com")).reference
            for _ in range(4)
        ]
        assert [payment_ledger.get(r).retry_count for r in references] == [0, 1, 2, 3]
        with pytest.raises(ValidationError, match="Maximum payment retries"):
            asyncio.run(payment_ledger.initialize(placed, "buyer@example.com"))


class TestFinalizeSuccess:
    def test_matching_amount_pays_order(self, payment_ledger, placed, reference):
        result = payment_ledger.finalize(truth(reference, 12000, placed.id))

        assert result.outcome == "paid"
        assert result.performed_side_effects is True
        assert result.payment.status == "success"
        assert result.payment.paid_at == datetime(2026, 10, 17, 10, 15, tzinfo=timezone.utc)
        assert result.payment.channel == "card"
        assert result.payment.webhook_verified is True
        assert result.order.is_paid is True
        assert result.order.status == "Processing"
        assert result.order.payment_reference == reference

    def test_amount_mismatch_fails_payment(self, payment_ledger, order_ledger, placed, reference, caplog):
        with caplog.at_level("ERROR", logger="mlfor.security"):
            result = payment_ledger.finalize(truth(reference, 11000, placed.id))

        assert result.outcome == "amount_mismatch"
        assert result.payment.status == "failed"
        assert result.payment.failure_reason == AMOUNT_MISMATCH_REASON
        order = order_ledger.get(placed.id)
        assert order.is_paid is False
        assert order.status == "Pending"
        assert "AMOUNT MISMATCH" in caplog.text

    def test_currency_mismatch_fails_payment(self, payment_ledger, placed, reference):
        result = payment_ledger.finalize(truth(reference, 12000, placed.id, currency="USD"))
        assert result.outcome == "amount_mismatch"
        assert result.payment.status == "failed"

    def test_mismatch_then_correct_amount_never_succeeds(self, payment_ledger, order_ledger, placed, reference):
        payment_ledger.finalize(truth(reference, 11000, placed.id))
        result = payment_ledger.finalize(truth(reference, 12000, placed.id))
        assert result.payment.status == "failed"
        assert order_ledger.get(placed.id).is_paid is False

    def test_repeated_finalize_is_idempotent(self, payment_ledger, payments_store, placed, reference):
        outcomes = [payment_ledger.finalize(truth(reference, 12000, placed.id)).outcome for _ in range(5)]
        assert outcomes == ["paid"] + ["already_final"] * 4
        assert [d["status"] for d in payments_store.docs.values()] == ["success"]

    def test_concurrent_finalize_has_one_winner(self, payment_ledger, placed, reference):
        results = []
        barrier = threading.Barrier(10)
        incoming = truth(reference, 12000, placed.id)

        def race():
            barrier.wait()
            results.append(payment_ledger.finalize(incoming))

        threads = [threading.Thread(target=race) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r.performed_side_effects]
        assert len(winners) == 1
        assert all(r.payment.status == "success" for r in results)
        assert all(r.order.is_paid for r in results)


class TestFinalizeOtherOutcomes:
    def test_pending_truth_changes_nothing(self, payment_ledger, placed, reference):
        result = payment_ledger.finalize(truth(reference, 12000, placed.id, status="ongoing"))
        assert result.outcome == "pending"
        assert payment_ledger.get(reference).status == "pending"

    def test_failed_truth_fails_payment_only(self, payment_ledger, order_ledger, placed, reference):
        result = payment_ledger.finalize(truth(reference, 12000, placed.id, status="failed"))
        assert result.outcome == "failed"
        assert result.payment.status == "failed"
        assert result.payment.failure_reason == "Declined"
        assert order_ledger.get(placed.id).status == "Pending"

    def test_abandoned_truth_keeps_payment_open(self, payment_ledger, placed, reference):
        result = payment_ledger.finalize(truth(reference, 12000, placed.id, status="abandoned", source="client_verify"))
        assert result.outcome == "pending"
        assert payment_ledger.get(reference).status == "pending"
        assert payment_ledger.get(reference).abandoned_at is None

    def test_success_after_local_failure_is_flagged_not_applied(self, payment_ledger, order_ledger, placed, reference, caplog):
        payment_ledger.finalize(truth(reference, 12000, placed.id, status="failed"))
        with caplog.at_level("ERROR", logger="mlfor.security"):
            result = payment_ledger.finalize(truth(reference, 12000, placed.id))
        assert result.outcome == "ignored"
        assert result.payment.status == "failed"
        assert order_ledger.get(placed.id).is_paid is False
        assert "manual reconciliation" in caplog.text

    def test_echoed_order_must_match(self, payment_ledger, placed, reference, caplog):
        with caplog.at_level("ERROR", logger="mlfor.security"):
            result = payment_ledger.finalize(truth(reference, 12000, "MLF-20260101-OTHER1"))
        assert result.outcome == "ignored"
        assert payment_ledger.get(reference).status == "pending"


class TestFinalizeWithoutLocalRecord:
    def test_webhook_first_creates_payment_from_metadata(self, payment_ledger, placed):
        result = payment_ledger.finalize(truth("MLF_REMOTE_ONLY", 12000, placed.id))
        assert result.outcome == "paid"
        assert result.payment.id == "MLF_REMOTE_ONLY"
        assert result.payment.order_id == placed.id
        assert result.payment.user_id == placed.user_id

    def test_missing_order_id_in_metadata(self, payment_ledger):
        data = paystack_transaction("MLF_NO_META", 12000, metadata={})
        with pytest.raises(ValidationError):
            payment_ledger.finalize(GatewayTruth.from_paystack(data, source="webhook"))

    def test_string_metadata_is_treated_as_empty(self, payment_ledger):
        data = paystack_transaction("MLF_STR_META", 12000)
        data["metadata"] = ""
        with pytest.raises(ValidationError):
            payment_ledger.finalize(GatewayTruth.from_paystack(data, source="webhook"))


class TestConfirm:
    def test_replays_order_update_after_partial_failure(self, payment_ledger, order_ledger, placed, reference):
        # Simulate a crash between the payment CAS and the order update
        payment_ledger._transition(reference, "success", {"paid_at": datetime.now(timezone.utc)})
        assert order_ledger.get(placed.id).is_paid is False

        result = payment_ledger.finalize(truth(reference, 12000, placed.id))
        assert result.outcome == "paid"
        assert order_ledger.get(placed.id).is_paid is True

        again = payment_ledger.confirm(payment_ledger.get(reference))
        assert again.outcome == "already_final"


class TestTransitions:
    def test_table(self):
        assert PAYMENT_TRANSITIONS["success"] == frozenset({"refunded"})
        for terminal in ("failed", "abandoned", "cancelled", "refunded"):
            assert PAYMENT_TRANSITIONS[terminal] == frozenset()

    def test_cancel_pending(self, payment_ledger, placed, reference, buyer):
        cancelled = payment_ledger.cancel_pending(placed.id, buyer.id)
        assert [p.id for p in cancelled] == [reference]
        assert payment_ledger.get(reference).status == "cancelled"
        with pytest.raises(PaymentNotFound):
            payment_ledger.cancel_pending(placed.id, buyer.id)

    def test_cancel_pending_ignores_other_users(self, payment_ledger, placed, reference, stranger):
        with pytest.raises(PaymentNotFound):
            payment_ledger.cancel_pending(placed.id, stranger.id)
        assert payment_ledger.get(reference).status == "pending"

    def test_mark_abandoned_skips_finalized(self, payment_ledger, placed, reference):
        payment_ledger.finalize(truth(reference, 12000, placed.id))
        assert payment_ledger.mark_abandoned(reference) is None
        assert payment_ledger.get(reference).status == "success"

    def test_stale_pending(self, payment_ledger, reference):
        future = datetime.now(timezone.utc) + timedelta(minutes=1)
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        assert [p.id for p in payment_ledger.stale_pending(future)] == [reference]
        assert payment_ledger.stale_pending(past) == []


class TestHistory:
    def test_webhook_events_are_appended(self, payment_ledger, reference):
        payment_ledger.record_webhook_event(reference, "charge.success")
        payment = payment_ledger.record_webhook_event(reference, "charge.success")
        assert [e.event for e in payment.webhook_events] == ["charge.success", "charge.success"]
        assert payment.webhook_verified is True

    def test_partial_then_full_refund(self, payment_ledger, placed, reference):
        payment_ledger.finalize(truth(reference, 12000, placed.id))

        payment = payment_ledger.add_refund(reference, Refund(id="rf_1", amount=5000, status="processed"))
        assert payment.status == "success"
        assert payment.refunded_amount == 5000

        payment = payment_ledger.add_refund(reference, Refund(id="rf_2", amount=7000, status="pending"))
        assert payment.status == "success"

        payment = payment_ledger.add_refund(reference, Refund(id="rf_2", amount=7000, status="processed"))
        assert payment.status == "refunded"
        assert payment.refunded_amount == 12000
        assert len(payment.refunds) == 2

    def test_refund_requires_success(self, payment_ledger, reference):
        with pytest.raises(InvalidTransition):
            payment_ledger.add_refund(reference, Refund(id="rf_1", amount=12000, status="processed"))

    def test_dispute_updated_by_id(self, payment_ledger, placed, reference):
        payment_ledger.finalize(truth(reference, 12000, placed.id))
        payment_ledger.add_dispute(reference, Dispute(id="dsp_1", status="awaiting-merchant-feedback"))
        payment = payment_ledger.add_dispute(reference, Dispute(id="dsp_1", status="resolved", resolution="merchant-accepted"))
        assert len(payment.disputes) == 1
        assert payment.disputes[0].status == "resolved"

    def test_dispute_unknown_payment(self, payment_ledger):
        with pytest.raises(PaymentNotFound):
            payment_ledger.add_dispute("MLF_NOPE", Dispute(id="dsp_1", status="pending"))


class TestPaymentsForUser:
    def test_lists_only_the_buyers_attempts(self, payment_ledger, order_ledger, placed, reference, stranger):
        second = asyncio.run(payment_ledger.initialize(placed, "buyer@example.com")).reference
        theirs = order_ledger.checkout(stranger, make_draft(qty=1))
        asyncio.run(payment_ledger.initialize(theirs, "stranger@example.com"))

        history = payment_ledger.for_user(placed.user_id)

        assert {p.id for p in history} == {reference, second}
        assert all(p.user_id == placed.user_id for p in history)

    def test_empty_for_new_buyer(self, payment_ledger):
        assert payment_ledger.for_user("nobody") == []
