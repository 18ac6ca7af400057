import threading
from decimal import Decimal

import pytest
from sqlalchemy import update

from checkout_service.application.checkout import CheckoutCoordinator
from checkout_service.application.inventory import InventoryStore
from checkout_service.application.orders import OrderLedger
from checkout_service.application.settlement import SettlementProcessor, StaleSettlement
from checkout_service.domain.errors import (
    InsufficientOnHand, InvalidSignature, InvalidStateTransition, InvalidRefundAmount, OrderNotFound,
)
from checkout_service.domain.models import Order
from checkout_service.infrastructure.paystack import RefundUnavailable


@pytest.fixture
def placed(db, seed, settings, shipping):
    """A pending order for 2 x 1000 with 5 on hand."""
    pid = seed.product(price="1000", on_hand=5)
    seed.cart(7, (pid, 2))
    order = CheckoutCoordinator(db, settings).create_order(7, shipping)
    db.close()
    return pid, order.id, order.payment_reference


@pytest.fixture
def processor(db, gateway, settings, metrics):
    return SettlementProcessor(db, gateway, settings, metrics)


def notes(order):
    return [entry.note for entry in order.timeline]


class TestVerify:
    def test_success_confirms_and_deducts(self, placed, processor, gateway, seed, metrics):
        pid, order_id, reference = placed
        gateway.succeed(reference, transaction_id="T1", amount=350000)

        result = processor.verify_payment(reference)

        assert result.applied
        order = result.order
        assert (order.status, order.payment_status) == ("confirmed", "completed")
        assert order.transaction_id == "T1"
        assert order.paid_at is not None
        assert notes(order) == ["Order created", "Payment confirmed"]
        stock = seed.stock(pid)
        assert (stock.on_hand, stock.reserved) == (3, 0)
        assert seed.cart_size(7) == 0
        assert metrics.snapshot()["settlements_applied"] == 1

    def test_second_success_is_a_noop(self, placed, processor, gateway, seed, metrics):
        pid, order_id, reference = placed
        gateway.succeed(reference)
        processor.verify_payment(reference)

        again = processor.verify_payment(reference)

        assert not again.applied
        assert again.order.payment_status == "completed"
        assert notes(again.order) == ["Order created", "Payment confirmed"]
        assert seed.stock(pid).on_hand == 3
        assert metrics.snapshot()["duplicate_events"] == 1

    def test_failure_releases_reservation(self, placed, processor, gateway, seed):
        pid, order_id, reference = placed
        gateway.fail(reference, reason="Insufficient funds")

        result = processor.verify_payment(reference)

        assert result.applied
        assert result.reason == "Insufficient funds"
        assert (result.order.status, result.order.payment_status) == ("failed", "failed")
        assert notes(result.order)[-1] == "Insufficient funds"
        stock = seed.stock(pid)
        assert (stock.on_hand, stock.reserved) == (5, 0)
        # Cart survives a failed payment
        assert seed.cart_size(7) == 1

    def test_abandoned_counts_as_failure(self, placed, processor, gateway):
        pid, order_id, reference = placed
        gateway.fail(reference, reason=None, status="abandoned")
        result = processor.verify_payment(reference)
        assert result.order.payment_status == "failed"
        assert result.reason == "Payment abandoned"

    def test_success_after_failure_is_stale(self, placed, processor, gateway, seed, metrics):
        pid, order_id, reference = placed
        gateway.fail(reference)
        processor.verify_payment(reference)
        gateway.succeed(reference)

        result = processor.verify_payment(reference)

        assert not result.applied
        assert result.order.payment_status == "failed"
        assert seed.stock(pid).on_hand == 5
        assert metrics.snapshot()["stale_events"] == 1

    def test_unknown_reference(self, processor, gateway):
        gateway.succeed("PAY-unknown")
        with pytest.raises(OrderNotFound):
            processor.verify_payment("PAY-unknown")


class TestWebhook:
    def test_charge_success_applied_once(self, placed, processor, gateway, seed, metrics):
        pid, order_id, reference = placed
        body = gateway.event("charge.success", reference=reference, id=4099260516, status="success")

        assert processor.handle_webhook(body, gateway.sign(body)) == {"success": True}
        assert processor.handle_webhook(body, gateway.sign(body)) == {"success": True}

        order = OrderLedger(processor.db).get(order_id)
        assert order.payment_status == "completed"
        assert order.transaction_id == "4099260516"
        assert seed.stock(pid).on_hand == 3
        snapshot = metrics.snapshot()
        assert (snapshot["settlements_applied"], snapshot["duplicate_events"]) == (1, 1)

    def test_charge_failed(self, placed, processor, gateway, seed):
        pid, order_id, reference = placed
        body = gateway.event("charge.failed", reference=reference, gateway_response="Declined")
        processor.handle_webhook(body, gateway.sign(body))
        order = OrderLedger(processor.db).get(order_id)
        assert order.status == "failed"
        assert notes(order)[-1] == "Declined"
        assert seed.stock(pid).reserved == 0

    def test_invalid_signature_rejected(self, placed, processor, gateway, metrics):
        pid, order_id, reference = placed
        body = gateway.event("charge.success", reference=reference)
        with pytest.raises(InvalidSignature):
            processor.handle_webhook(body, "0" * 128)
        with pytest.raises(InvalidSignature):
            processor.handle_webhook(body, None)
        assert OrderLedger(processor.db).get(order_id).payment_status == "pending"
        assert metrics.snapshot()["invalid_signatures"] == 2

    def test_signature_over_different_body_rejected(self, placed, processor, gateway):
        pid, order_id, reference = placed
        body = gateway.event("charge.success", reference=reference)
        tampered = gateway.event("charge.success", reference=reference, amount=1)
        with pytest.raises(InvalidSignature):
            processor.handle_webhook(tampered, gateway.sign(body))

    def test_unhandled_events_acknowledged(self, processor, gateway, metrics):
        for name in ("subscription.create", "refund.processed"):
            body = gateway.event(name, reference="PAY-x")
            assert processor.handle_webhook(body, gateway.sign(body)) == {"success": True}
        assert metrics.snapshot()["ignored_events"] == 2

    def test_processing_errors_still_acknowledged(self, processor, gateway, metrics):
        body = gateway.event("charge.success", reference="PAY-does-not-exist")
        assert processor.handle_webhook(body, gateway.sign(body)) == {"success": True}
        malformed = b"{not json"
        assert processor.handle_webhook(malformed, gateway.sign(malformed)) == {"success": True}
        assert metrics.snapshot()["webhook_errors"] == 2


class TestCancel:
    def test_cancel_pending_order_releases_stock(self, placed, processor, seed):
        pid, order_id, reference = placed
        order = processor.cancel_order(order_id, "Changed my mind", user_id=7)
        assert order.status == "cancelled"
        assert order.payment_status == "pending"
        assert notes(order)[-1] == "Changed my mind"
        assert seed.stock(pid).reserved == 0

    def test_cancel_of_other_users_order(self, placed, processor):
        pid, order_id, reference = placed
        with pytest.raises(OrderNotFound):
            processor.cancel_order(order_id, user_id=8)

    def test_cancel_twice_rejected(self, placed, processor, seed):
        pid, order_id, reference = placed
        processor.cancel_order(order_id)
        with pytest.raises(InvalidStateTransition):
            processor.cancel_order(order_id)
        assert seed.stock(pid).reserved == 0

    def test_cannot_cancel_paid_order(self, placed, processor, gateway):
        pid, order_id, reference = placed
        gateway.succeed(reference)
        processor.verify_payment(reference)
        with pytest.raises(InvalidStateTransition):
            processor.cancel_order(order_id)

    def test_success_after_cancel_is_not_applied(self, placed, processor, gateway, seed):
        pid, order_id, reference = placed
        processor.cancel_order(order_id)
        gateway.succeed(reference)
        body = gateway.event("charge.success", reference=reference, id=1)
        processor.handle_webhook(body, gateway.sign(body))
        order = OrderLedger(processor.db).get(order_id)
        assert (order.status, order.payment_status) == ("cancelled", "pending")
        stock = seed.stock(pid)
        assert (stock.on_hand, stock.reserved) == (5, 0)


class TestInitialize:
    def test_initialize_sends_total_and_reference(self, placed, processor, gateway):
        pid, order_id, reference = placed
        data = processor.initialize_payment(order_id, 7, "buyer@example.com")
        assert data["reference"] == reference
        call = gateway.initialized[0]
        assert call["amount"] == Decimal("3500")
        assert call["metadata"]["order_id"] == str(order_id)

    def test_initialize_paid_order_rejected(self, placed, processor, gateway):
        pid, order_id, reference = placed
        gateway.succeed(reference)
        processor.verify_payment(reference)
        with pytest.raises(InvalidStateTransition):
            processor.initialize_payment(order_id, 7, "buyer@example.com")


class TestRefund:
    @pytest.fixture
    def paid(self, placed, processor, gateway):
        pid, order_id, reference = placed
        gateway.succeed(reference, transaction_id="T9")
        processor.verify_payment(reference)
        return order_id

    def test_full_refund(self, paid, processor, gateway, seed, metrics):
        result = processor.initiate_refund(paid, reason="Damaged")
        assert result.refunded
        assert (result.order.status, result.order.payment_status) == ("cancelled", "refunded")
        assert notes(result.order)[-1] == "Refunded: Damaged"
        assert gateway.refunds == [{"transaction": "T9", "amount": Decimal("3500"), "reason": "Damaged"}]
        assert metrics.snapshot()["refunds_completed"] == 1

    def test_second_refund_is_a_noop(self, paid, processor, gateway):
        processor.initiate_refund(paid)
        again = processor.initiate_refund(paid)
        assert again.refunded
        assert again.message == "Order already refunded"
        assert len(gateway.refunds) == 1

    def test_gateway_refusal_returns_manual_instructions(self, paid, processor, gateway, metrics):
        gateway.refund_error = RefundUnavailable("Automatic refunds not available", upstream_status=404)
        result = processor.initiate_refund(paid)
        assert not result.refunded
        assert any("T9" in step for step in result.instructions)
        assert result.order.payment_status == "completed"
        assert result.order.refund_requested_at is None
        assert metrics.snapshot()["refunds_manual"] == 1

        gateway.refund_error = None
        assert processor.initiate_refund(paid).refunded

    def test_refund_in_progress_rejected(self, paid, processor):
        order = processor.ledger.get(paid)
        processor.ledger.compare_and_set(order, {"refund_requested_at": None}, refund_requested_at=order.paid_at)
        processor.db.commit()
        with pytest.raises(InvalidStateTransition):
            processor.initiate_refund(paid)

    def test_refund_unpaid_order(self, placed, processor):
        pid, order_id, reference = placed
        with pytest.raises(InvalidStateTransition):
            processor.initiate_refund(order_id)

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("3500.01")])
    def test_refund_amount_bounds(self, paid, processor, amount):
        with pytest.raises(InvalidRefundAmount):
            processor.initiate_refund(paid, amount=amount)

    def test_refund_does_not_restock(self, paid, processor, seed, placed):
        pid = placed[0]
        processor.initiate_refund(paid)
        assert seed.stock(pid).on_hand == 3

    def test_order_moved_during_refund_is_reported(self, paid, processor, gateway, session_factory, metrics):
        def refund_while_row_changes(transaction_id, amount, reason=None):
            with session_factory() as other:
                other.execute(update(Order).where(Order.id == paid).values(payment_status="failed"))
                other.commit()
            gateway.refunds.append({"transaction": transaction_id, "amount": amount, "reason": reason})
            return {"status": "pending"}

        gateway.refund = refund_while_row_changes
        with pytest.raises(StaleSettlement) as exc:
            processor.initiate_refund(paid, reason="Damaged")
        assert exc.value.details["transaction_id"] == "T9"

        with session_factory() as other:
            order = OrderLedger(other).get(paid)
            assert (order.status, order.payment_status) == ("confirmed", "failed")
            assert order.refund_requested_at is not None
            assert "Refunded: Damaged" not in notes(order)
        assert len(gateway.refunds) == 1
        snapshot = metrics.snapshot()
        assert (snapshot["refunds_completed"], snapshot["stale_events"]) == (0, 1)


def test_failed_deduction_rolls_back_whole_settlement(db, seed, settings, shipping, gateway, metrics, monkeypatch):
    first = seed.product(name="P1", price="1000", on_hand=5)
    second = seed.product(name="P2", price="500", on_hand=5)
    seed.cart(4, (first, 2), (second, 1))
    order = CheckoutCoordinator(db, settings).create_order(4, shipping)
    reference = order.payment_reference
    db.close()

    original = InventoryStore.deduct

    def deduct(self, product_id, qty):
        if product_id == second:
            raise InsufficientOnHand(product_id, requested=qty, on_hand=0)
        return original(self, product_id, qty)

    monkeypatch.setattr(InventoryStore, "deduct", deduct)
    gateway.succeed(reference)
    processor = SettlementProcessor(db, gateway, settings, metrics)
    with pytest.raises(InsufficientOnHand):
        processor.verify_payment(reference)

    order = OrderLedger(db).get_by_reference(reference)
    assert (order.status, order.payment_status) == ("pending", "pending")
    assert order.transaction_id is None
    assert notes(order) == ["Order created"]
    stock = seed.stock(first)
    assert (stock.on_hand, stock.reserved) == (5, 2)
    assert seed.cart_size(4) == 2
    assert metrics.snapshot()["settlements_applied"] == 0


def test_concurrent_verify_and_webhooks_settle_once(session_factory, db, seed, settings, shipping, gateway, metrics):
    pid = seed.product(price="1000", on_hand=5)
    seed.cart(3, (pid, 3))
    order = CheckoutCoordinator(db, settings).create_order(3, shipping)
    reference = order.payment_reference
    db.close()

    gateway.succeed(reference, transaction_id="4099260516")
    body = gateway.event("charge.success", reference=reference, id=4099260516, status="success")
    signature = gateway.sign(body)
    barrier = threading.Barrier(4)
    errors = []

    def settle(via):
        with session_factory() as session:
            processor = SettlementProcessor(session, gateway, settings, metrics)
            barrier.wait()
            try:
                if via == "verify":
                    processor.verify_payment(reference)
                else:
                    processor.handle_webhook(body, signature)
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=settle, args=(via,)) for via in ("verify", "verify", "webhook", "webhook")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    stock = seed.stock(pid)
    assert (stock.on_hand, stock.reserved) == (2, 0)
    snapshot = metrics.snapshot()
    assert (snapshot["settlements_applied"], snapshot["duplicate_events"]) == (1, 3)
    assert snapshot["webhook_errors"] == 0
    with session_factory() as session:
        settled = OrderLedger(session).get_by_reference(reference)
        assert settled.payment_status == "completed"
        assert notes(settled).count("Payment confirmed") == 1


def test_checkout_then_verify_twice(db, seed, settings, shipping, gateway, metrics):
    pid = seed.product(name="P1", price="1000", on_hand=5)
    seed.cart(3, (pid, 3))

    order = CheckoutCoordinator(db, settings).create_order(3, shipping)
    assert order.subtotal == Decimal("3000")
    assert seed.stock(pid).reserved == 3

    gateway.succeed(order.payment_reference)
    processor = SettlementProcessor(db, gateway, settings, metrics)
    first = processor.verify_payment(order.payment_reference)
    second = processor.verify_payment(order.payment_reference)

    assert first.order.status == second.order.status == "confirmed"
    assert (first.applied, second.applied) == (True, False)
    stock = seed.stock(pid)
    assert (stock.on_hand, stock.reserved) == (2, 0)
