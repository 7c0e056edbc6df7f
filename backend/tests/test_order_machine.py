"""Order state machine: lifecycle scenarios, races and failure handling.

Runs against MemoryStore with the fake gateway / notifier from conftest.
"""

import asyncio

import pytest
from bson import ObjectId

from models.order import CompletionPath, OrderStatus
from models.payment import EscrowStatus, Payment, PaymentStatus, RefundPurpose
from utils.errors import ErrorCode
from utils.escrow_service import EscrowLedger
from utils.order_guards import Party
from utils.order_machine import OrderStateMachine

from conftest import FailingNotifier, order_total


async def _payment(store, order_id):
    return Payment.from_doc(await store.get_payment_for_order(order_id))


async def _stock(store, product_id):
    return (await store.get_product(product_id))["stock"]


async def _events(store, order_id):
    return [e["event"] for e in await store.list_timeline(order_id)]


async def _status(store, order_id):
    return (await store.get_order(order_id))["status"]


async def _eventually(read, expected, attempts=200):
    for _ in range(attempts):
        if await read() == expected:
            return True
        await asyncio.sleep(0.01)
    return False


def assert_flag_invariants(order):
    if order.buyer_confirmed_receipt:
        assert order.seller_shipped
    if order.seller_shipped:
        assert order.seller_confirmed
        assert order.status in (OrderStatus.SHIPPED, OrderStatus.COMPLETED, OrderStatus.DISPUTED)
    if order.dispute_resolved:
        assert order.dispute_raised
        assert order.status == OrderStatus.COMPLETED


# ---------------------------------------------------------------------------
# Lifecycle scenarios
# ---------------------------------------------------------------------------

class TestHappyPath:

    async def test_full_lifecycle_releases_escrow(self, machine, store, buyer, seller, make_product):
        """Pending -> Accepted -> Confirmed -> Shipped -> Completed."""
        product = await make_product(stock=5)

        created = await machine.create_order(buyer, product.id, 3)
        assert created.ok
        order = created.value
        assert order.status == OrderStatus.PENDING
        assert order.total_minor == 30000
        assert await _stock(store, product.id) == 2
        assert_flag_invariants(order)

        accepted = await machine.accept_order(seller, order.id)
        assert accepted.ok
        assert accepted.value.seller_confirmed
        assert_flag_invariants(accepted.value)

        paid = await machine.pay(buyer, order.id, "300.00", "card")
        assert paid.ok
        assert paid.value.is_held
        assert paid.value.reference == "pay_1"

        shipped = await machine.ship_order(seller, order.id, "LBC-123456")
        assert shipped.ok
        assert shipped.value.seller_shipped
        assert shipped.value.shipment_proof == "LBC-123456"
        assert_flag_invariants(shipped.value)

        completed = await machine.complete_order(buyer, order.id)
        assert completed.ok
        final = completed.value
        assert final.status == OrderStatus.COMPLETED
        assert final.buyer_confirmed_receipt
        assert final.completed_by == CompletionPath.BUYER
        assert_flag_invariants(final)

        payment = await _payment(store, order.id)
        assert payment.escrow_status == EscrowStatus.RELEASED

        product_doc = await store.get_product(product.id)
        assert product_doc["stock"] == 2
        assert product_doc["reserved_stock"] == 0

        assert await _events(store, order.id) == [
            "ORDER_CREATED",
            "ORDER_ACCEPTED",
            "PAYMENT_INTENT_OPENED",
            "PAYMENT_CAPTURED",
            "ORDER_SHIPPED",
            "ORDER_COMPLETED",
        ]

    async def test_manual_method_skips_the_gateway(self, machine, gateway, order_in, buyer):
        order, _ = await order_in(OrderStatus.CONFIRMED, method="cod")

        payment = await _payment(machine.store, order.id)
        assert payment.is_held
        assert payment.reference.startswith("COD-")
        assert gateway.captures == []

    async def test_parties_are_notified_and_chat_is_threaded(self, machine, notifier, conversations, buyer, seller, make_product):
        product = await make_product()
        order = (await machine.create_order(buyer, product.id, 1)).value

        assert order.conversation_id == conversations.threads[0]
        assert notifier.sent[0]["user_id"] == seller.user_id
        assert notifier.sent[0]["title"] == "New Order Request"
        assert conversations.messages

    async def test_seller_cannot_buy_own_product(self, machine, seller, make_product):
        product = await make_product()
        result = await machine.create_order(seller, product.id, 1)
        assert not result.ok
        assert result.code == ErrorCode.PRECONDITION_FAILED

    async def test_insufficient_stock_creates_nothing(self, machine, store, buyer, make_product):
        product = await make_product(stock=5)
        result = await machine.create_order(buyer, product.id, 6)

        assert result.code == ErrorCode.INSUFFICIENT_STOCK
        assert store.tables["orders"] == {}
        assert await _stock(store, product.id) == 5

    async def test_unknown_product(self, machine, buyer):
        result = await machine.create_order(buyer, ObjectId(), 1)
        assert result.code == ErrorCode.NOT_FOUND


class TestCancellation:

    async def test_seller_cancels_accepted_order_before_payment(self, machine, store, order_in, seller):
        order, product = await order_in(OrderStatus.ACCEPTED)

        result = await machine.cancel_order(seller, order.id, "out of stock locally")

        assert result.ok
        assert result.value.status == OrderStatus.CANCELLED
        assert result.value.cancelled_by == "seller"
        assert await _stock(store, product.id) == 5
        assert await _payment(store, order.id) is None

    async def test_seller_cancel_refunds_held_gateway_payment(self, machine, store, gateway, order_in, seller):
        order, product = await order_in(OrderStatus.CONFIRMED)

        result = await machine.cancel_order(seller, order.id)

        assert result.ok
        assert result.value.status == OrderStatus.CANCELLED
        payment = await _payment(store, order.id)
        assert payment.escrow_status == EscrowStatus.REFUNDED
        assert payment.refund_id == "ref_1"
        assert not payment.refund_in_flight
        assert len(gateway.refunds) == 1
        assert gateway.refunds[0]["reference"] == "pay_1"
        assert await _stock(store, product.id) == 5
        assert "REFUND_REQUESTED" in await _events(store, order.id)

    async def test_seller_cancel_of_manual_payment_has_no_gateway_call(self, machine, store, gateway, order_in, seller):
        order, _ = await order_in(OrderStatus.CONFIRMED, method="bank")

        result = await machine.cancel_order(seller, order.id)

        assert result.ok
        assert (await _payment(store, order.id)).escrow_status == EscrowStatus.REFUNDED
        assert gateway.refunds == []

    async def test_buyer_cancels_pending_order(self, machine, store, order_in, buyer, notifier, seller):
        order, product = await order_in(OrderStatus.PENDING)

        result = await machine.cancel_order(buyer, order.id, "ordered by mistake")

        assert result.ok
        assert result.value.cancelled_by == "buyer"
        assert await _stock(store, product.id) == 5
        assert notifier.sent[-1]["user_id"] == seller.user_id
        assert notifier.sent[-1]["title"] == "Order Cancelled"

    async def test_buyer_cannot_cancel_after_accept(self, machine, order_in, buyer):
        order, _ = await order_in(OrderStatus.ACCEPTED)
        result = await machine.cancel_order(buyer, order.id)
        assert result.code == ErrorCode.PRECONDITION_FAILED

    async def test_seller_cannot_cancel_after_shipping(self, machine, order_in, seller):
        order, _ = await order_in(OrderStatus.SHIPPED)
        result = await machine.cancel_order(seller, order.id)
        assert result.code == ErrorCode.PRECONDITION_FAILED
        assert result.reason == "already shipped"

    async def test_stranger_sees_not_found(self, machine, order_in, stranger):
        order, _ = await order_in(OrderStatus.PENDING)
        assert (await machine.cancel_order(stranger, order.id)).code == ErrorCode.NOT_FOUND
        assert (await machine.accept_order(stranger, order.id)).code == ErrorCode.NOT_FOUND
        assert (await machine.get_order(stranger, order.id)).code == ErrorCode.NOT_FOUND

    async def test_cancel_twice_restores_stock_once(self, machine, store, order_in, seller):
        order, product = await order_in(OrderStatus.ACCEPTED)

        assert (await machine.cancel_order(seller, order.id)).ok
        assert not (await machine.cancel_order(seller, order.id)).ok
        assert await _stock(store, product.id) == 5


class TestPaymentFailures:

    async def test_amount_off_by_two_cents_is_rejected(self, machine, store, order_in, buyer):
        order, _ = await order_in(OrderStatus.ACCEPTED)

        result = await machine.pay(buyer, order.id, "300.02", "card")

        assert result.code == ErrorCode.AMOUNT_MISMATCH
        assert await _payment(store, order.id) is None
        assert (await machine.get_order(buyer, order.id)).value.status == OrderStatus.ACCEPTED

    async def test_non_finite_amount_is_a_mismatch(self, machine, store, order_in, buyer):
        order, _ = await order_in(OrderStatus.ACCEPTED)

        for amount in ("NaN", "Infinity"):
            result = await machine.pay(buyer, order.id, amount, "card")
            assert result.code == ErrorCode.AMOUNT_MISMATCH

        assert await _payment(store, order.id) is None

    async def test_one_cent_tolerance(self, machine, order_in, buyer):
        order, _ = await order_in(OrderStatus.ACCEPTED)
        assert (await machine.pay(buyer, order.id, "299.99", "cod")).ok

    async def test_unsupported_method(self, machine, store, order_in, buyer):
        order, _ = await order_in(OrderStatus.ACCEPTED)
        result = await machine.pay(buyer, order.id, order_total(order), "bitcoin")
        assert result.code == ErrorCode.PRECONDITION_FAILED
        assert await _payment(store, order.id) is None

    async def test_declined_capture_leaves_order_payable(self, machine, store, gateway, order_in, buyer):
        order, _ = await order_in(OrderStatus.ACCEPTED)
        gateway.fail_capture = "card declined"

        result = await machine.pay(buyer, order.id, order_total(order), "card")

        assert result.code == ErrorCode.GATEWAY_ERROR
        assert result.failure.retryable
        assert await _payment(store, order.id) is None
        assert (await machine.get_order(buyer, order.id)).value.status == OrderStatus.ACCEPTED
        assert "PAYMENT_FAILED" in await _events(store, order.id)

        gateway.fail_capture = None
        retry = await machine.pay(buyer, order.id, order_total(order), "card")
        assert retry.ok
        assert retry.value.is_held

    async def test_double_payment_is_rejected(self, machine, store, order_in, buyer):
        order, _ = await order_in(OrderStatus.ACCEPTED)
        total = order_total(order)

        results = await asyncio.gather(
            machine.pay(buyer, order.id, total, "cod"),
            machine.pay(buyer, order.id, total, "cod"),
        )

        assert sum(1 for r in results if r.ok) == 1
        assert len(store.tables["payments"]) == 1


# ---------------------------------------------------------------------------
# Races
# ---------------------------------------------------------------------------

class TestConcurrency:

    async def test_accept_and_buyer_cancel_race(self, machine, order_in, buyer, seller):
        order, _ = await order_in(OrderStatus.PENDING)

        accepted, cancelled = await asyncio.gather(
            machine.accept_order(seller, order.id),
            machine.cancel_order(buyer, order.id),
        )

        assert accepted.ok != cancelled.ok
        final = (await machine.get_order(buyer, order.id)).value
        assert final.status == (OrderStatus.ACCEPTED if accepted.ok else OrderStatus.CANCELLED)

    async def test_cancel_during_capture_refunds_the_capture(self, machine, store, gateway, order_in, buyer, seller):
        order, product = await order_in(OrderStatus.ACCEPTED)
        gateway.capture_gate = asyncio.Event()

        paying = asyncio.create_task(machine.pay(buyer, order.id, order_total(order), "card"))
        await gateway.capture_started.wait()

        cancelled = await machine.cancel_order(seller, order.id, "changed plans")
        assert cancelled.ok

        gateway.capture_gate.set()
        paid = await paying

        assert not paid.ok
        assert paid.code == ErrorCode.PRECONDITION_FAILED
        assert "refunded" in paid.reason
        assert gateway.refunds[0]["reference"] == "pay_1"

        final = (await machine.get_order(seller, order.id)).value
        assert final.status == OrderStatus.CANCELLED
        payment = await _payment(store, order.id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.escrow_status is None
        assert await _stock(store, product.id) == 5

    async def test_refund_in_flight_blocks_shipping(self, machine, store, gateway, order_in, seller):
        order, _ = await order_in(OrderStatus.CONFIRMED)
        gateway.refund_gate = asyncio.Event()

        cancelling = asyncio.create_task(machine.cancel_order(seller, order.id))
        await gateway.refund_started.wait()

        blocked = await machine.ship_order(seller, order.id)
        assert blocked.code == ErrorCode.PRECONDITION_FAILED
        assert blocked.reason == "refund in progress"
        assert blocked.failure.retryable

        gateway.refund_gate.set()
        cancelled = await cancelling

        assert cancelled.ok
        assert cancelled.value.status == OrderStatus.CANCELLED
        assert (await _payment(store, order.id)).escrow_status == EscrowStatus.REFUNDED

    async def test_cancelled_caller_does_not_strand_the_refund(self, machine, store, gateway, order_in, seller):
        order, product = await order_in(OrderStatus.CONFIRMED)
        gateway.refund_gate = asyncio.Event()

        cancelling = asyncio.create_task(machine.cancel_order(seller, order.id, "client went away"))
        await gateway.refund_started.wait()
        cancelling.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cancelling

        gateway.refund_gate.set()
        assert await _eventually(lambda: _status(store, order.id), OrderStatus.CANCELLED)

        payment = await _payment(store, order.id)
        assert payment.escrow_status == EscrowStatus.REFUNDED
        assert payment.refund_id == "ref_1"
        assert not payment.refund_in_flight
        assert payment.refund_context is None
        assert await _stock(store, product.id) == 5

    async def test_refund_marker_records_what_to_finish(self, machine, store, gateway, order_in, seller):
        order, _ = await order_in(OrderStatus.CONFIRMED)
        gateway.refund_gate = asyncio.Event()

        cancelling = asyncio.create_task(machine.cancel_order(seller, order.id, "damaged"))
        await gateway.refund_started.wait()

        marked = await _payment(store, order.id)
        assert marked.refund_context.purpose == RefundPurpose.SELLER_CANCEL
        assert marked.refund_context.actor_id == seller.user_id
        assert marked.refund_context.reason == "damaged"
        assert gateway.refunds[0]["idempotency_key"] == f"refund-{marked.id}"

        gateway.refund_gate.set()
        assert (await cancelling).ok

    async def test_failed_refund_keeps_order_and_clears_marker(self, machine, store, gateway, order_in, seller):
        order, _ = await order_in(OrderStatus.CONFIRMED)
        gateway.fail_refund = "refund declined"

        result = await machine.cancel_order(seller, order.id)

        assert result.code == ErrorCode.GATEWAY_ERROR
        assert (await machine.get_order(seller, order.id)).value.status == OrderStatus.CONFIRMED
        payment = await _payment(store, order.id)
        assert payment.is_held
        assert not payment.refund_in_flight

        assert (await machine.ship_order(seller, order.id)).ok


# ---------------------------------------------------------------------------
# Side effects and reads
# ---------------------------------------------------------------------------

class TestSideEffects:

    async def test_notification_failure_does_not_fail_transition(self, store, gateway, conversations, buyer, seller, make_product):
        machine = OrderStateMachine(store, EscrowLedger(gateway), FailingNotifier(), conversations)
        product = await make_product()

        created = await machine.create_order(buyer, product.id, 1)
        assert created.ok
        accepted = await machine.accept_order(seller, created.value.id)
        assert accepted.ok
        assert accepted.value.status == OrderStatus.ACCEPTED


class TestReads:

    async def test_escrow_view_hints(self, machine, order_in, buyer, seller):
        order, _ = await order_in(OrderStatus.CONFIRMED)

        view = (await machine.get_escrow(buyer, order.id)).value
        assert view["can_refund"] is True
        assert view["can_release"] is False

        await machine.ship_order(seller, order.id)
        view = (await machine.get_escrow(buyer, order.id)).value
        assert view["can_refund"] is False
        assert view["can_release"] is True

    async def test_escrow_view_without_payment(self, machine, order_in, buyer):
        order, _ = await order_in(OrderStatus.ACCEPTED)
        result = await machine.get_escrow(buyer, order.id)
        assert result.code == ErrorCode.NOT_FOUND

    async def test_admin_can_read_any_order(self, machine, order_in, admin):
        order, _ = await order_in(OrderStatus.PENDING)
        assert (await machine.get_order(admin, order.id)).ok
        assert (await machine.get_timeline(admin, order.id)).ok

    async def test_list_orders_by_role(self, machine, order_in, buyer, seller):
        order, _ = await order_in(OrderStatus.PENDING)

        as_buyer = (await machine.list_orders(buyer, "buyer")).value
        as_seller = (await machine.list_orders(seller, "seller")).value

        assert [o.id for o in as_buyer] == [order.id]
        assert [o.id for o in as_seller] == [order.id]
        assert (await machine.list_orders(seller, "buyer")).value == []

    async def test_conversation_order_with_action_hints(self, machine, order_in, buyer, seller):
        order, _ = await order_in(OrderStatus.CONFIRMED)

        as_seller = (await machine.get_conversation_order(seller, order.conversation_id)).value
        assert as_seller["order"].id == order.id
        assert as_seller["party"] == Party.SELLER
        assert as_seller["payment"].is_held
        assert as_seller["actions"]["can_ship"] is True
        assert as_seller["actions"]["can_seller_cancel"] is True
        assert as_seller["actions"]["can_complete"] is False

        as_buyer = (await machine.get_conversation_order(buyer, order.conversation_id)).value
        assert as_buyer["party"] == Party.BUYER
        assert as_buyer["actions"]["can_dispute"] is True
        assert as_buyer["actions"]["can_pay"] is False
        assert as_buyer["actions"]["can_ship"] is False

    async def test_accepted_order_can_be_paid_from_the_thread(self, machine, order_in, buyer):
        order, _ = await order_in(OrderStatus.ACCEPTED)
        view = (await machine.get_conversation_order(buyer, order.conversation_id)).value
        assert view["payment"] is None
        assert view["actions"]["can_pay"] is True
        assert view["actions"]["can_buyer_cancel"] is False

    async def test_conversation_without_open_order(self, machine, order_in, buyer, stranger):
        done, _ = await order_in(OrderStatus.COMPLETED)
        assert (await machine.get_conversation_order(buyer, done.conversation_id)).value is None

        pending, _ = await order_in(OrderStatus.PENDING)
        assert (await machine.get_conversation_order(stranger, pending.conversation_id)).value is None
        assert (await machine.get_conversation_order(buyer, ObjectId())).value is None

    async def test_payment_history_lists_both_sides(self, machine, order_in, buyer, seller, stranger):
        order, _ = await order_in(OrderStatus.CONFIRMED)

        as_buyer = (await machine.list_payment_history(buyer)).value
        assert [e["payment"].order_id for e in as_buyer] == [order.id]
        assert as_buyer[0]["role"] == Party.BUYER
        assert as_buyer[0]["order"].product_name == "Vintage Camera"

        as_seller = (await machine.list_payment_history(seller)).value
        assert as_seller[0]["role"] == Party.SELLER
        assert (await machine.list_payment_history(stranger)).value == []

    async def test_receipt_only_for_the_parties(self, machine, store, order_in, buyer, seller, stranger):
        order, _ = await order_in(OrderStatus.CONFIRMED)
        payment = await _payment(store, order.id)

        receipt = (await machine.get_receipt(buyer, payment.id)).value
        assert receipt["order"].id == order.id
        assert receipt["payment"].id == payment.id
        assert (await machine.get_receipt(seller, payment.id)).ok

        hidden = await machine.get_receipt(stranger, payment.id)
        assert hidden.code == ErrorCode.NOT_FOUND
        assert hidden.reason == "receipt not found"
        assert (await machine.get_receipt(buyer, ObjectId())).code == ErrorCode.NOT_FOUND
