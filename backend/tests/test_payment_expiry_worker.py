"""Payment-timeout and stale-refund sweeps."""

from datetime import datetime, timedelta

from models.order import OrderStatus
from models.payment import EscrowStatus, Payment, PaymentStatus, RefundContext, RefundPurpose
from workers.payment_expiry_worker import sweep_expired_payments, sweep_stale_refunds


async def _open_intent(store, order, age_minutes):
    intent = Payment(
        order_id=order.id,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        amount_minor=order.total_minor,
        method="card",
        created_at=datetime.utcnow() - timedelta(minutes=age_minutes),
    )
    async with store.transaction() as tx:
        await tx.insert_payment(intent.to_doc())
    return intent


async def test_stale_intent_cancels_order_and_restocks(machine, store, order_in, buyer):
    order, product = await order_in(OrderStatus.ACCEPTED)
    await _open_intent(store, order, age_minutes=30)

    expired = await sweep_expired_payments(machine, intent_timeout_minutes=15, unpaid_timeout_hours=0)

    assert expired == 1
    final = (await machine.get_order(buyer, order.id)).value
    assert final.status == OrderStatus.CANCELLED
    assert final.cancelled_by == "system"
    assert final.cancel_reason == "PAYMENT_TIMEOUT"

    payment = Payment.from_doc(await store.get_payment_for_order(order.id))
    assert payment.status == PaymentStatus.FAILED
    assert (await store.get_product(product.id))["stock"] == 5

    events = [e["event"] for e in await store.list_timeline(order.id)]
    assert events[-1] == "ORDER_PAYMENT_TIMEOUT"


async def test_second_sweep_is_a_no_op(machine, store, order_in):
    order, product = await order_in(OrderStatus.ACCEPTED)
    await _open_intent(store, order, age_minutes=30)

    assert await sweep_expired_payments(machine, intent_timeout_minutes=15, unpaid_timeout_hours=0) == 1
    assert await sweep_expired_payments(machine, intent_timeout_minutes=15, unpaid_timeout_hours=0) == 0
    assert (await store.get_product(product.id))["stock"] == 5


async def test_fresh_intent_is_left_alone(machine, store, order_in, buyer):
    order, _ = await order_in(OrderStatus.ACCEPTED)
    await _open_intent(store, order, age_minutes=1)

    assert await sweep_expired_payments(machine, intent_timeout_minutes=15, unpaid_timeout_hours=0) == 0
    assert (await machine.get_order(buyer, order.id)).value.status == OrderStatus.ACCEPTED


async def test_unpaid_order_timeout(machine, order_in, buyer):
    order, _ = await order_in(OrderStatus.ACCEPTED)
    later = datetime.utcnow() + timedelta(hours=2)

    assert await sweep_expired_payments(machine, now=later, unpaid_timeout_hours=0) == 0
    assert await sweep_expired_payments(machine, now=later, unpaid_timeout_hours=1) == 1

    final = (await machine.get_order(buyer, order.id)).value
    assert final.status == OrderStatus.CANCELLED
    assert final.cancel_reason == "UNPAID_ORDER_TIMEOUT"


async def test_paid_orders_are_never_expired(machine, order_in, buyer):
    order, _ = await order_in(OrderStatus.CONFIRMED)
    much_later = datetime.utcnow() + timedelta(days=3)

    assert await sweep_expired_payments(machine, now=much_later, unpaid_timeout_hours=1) == 0
    assert (await machine.get_order(buyer, order.id)).value.status == OrderStatus.CONFIRMED


# ---------------------------------------------------------------------------
# Stale refund recovery
# ---------------------------------------------------------------------------

async def _mark_refund(machine, store, order, purpose, actor_id, reason, gateway_reason):
    """Leave the state a crashed refund leaves behind: marker set, no gateway call settled."""
    context = RefundContext(purpose=purpose, actor_id=actor_id, reason=reason, gateway_reason=gateway_reason)
    async with store.transaction() as tx:
        payment = await machine.escrow.get(tx, order.id)
        return await machine.escrow.mark_refund_pending(tx, payment, context)


def _later(minutes=30):
    return datetime.utcnow() + timedelta(minutes=minutes)


async def test_stale_seller_cancel_refund_is_finished(machine, store, gateway, order_in, seller):
    order, product = await order_in(OrderStatus.CONFIRMED)
    payment = await _mark_refund(
        machine, store, order, RefundPurpose.SELLER_CANCEL, seller.user_id, "out of stock", "ORDER_CANCELLED_BY_SELLER: out of stock",
    )

    blocked = await machine.ship_order(seller, order.id)
    assert blocked.reason == "refund in progress"

    assert await sweep_stale_refunds(machine, now=_later(), refund_timeout_minutes=10) == 1

    final = (await machine.get_order(seller, order.id)).value
    assert final.status == OrderStatus.CANCELLED
    assert final.cancelled_by == "seller"
    assert final.cancel_reason == "out of stock"

    settled = Payment.from_doc(await store.get_payment_for_order(order.id))
    assert settled.escrow_status == EscrowStatus.REFUNDED
    assert not settled.refund_in_flight
    assert gateway.refunds[-1]["idempotency_key"] == f"refund-{payment.id}"
    assert (await store.get_product(product.id))["stock"] == 5


async def test_stale_dispute_refund_closes_the_dispute(machine, store, order_in, buyer, admin):
    order, _ = await order_in(OrderStatus.SHIPPED)
    assert (await machine.raise_dispute(buyer, order.id, "never arrived")).ok
    await _mark_refund(
        machine, store, order, RefundPurpose.DISPUTE_RESOLUTION, admin.user_id, "lost in transit", "DISPUTE_RESOLVED_FOR_BUYER: lost in transit",
    )

    blocked = await machine.resolve_dispute(admin, order.id, "seller", "changed my mind")
    assert blocked.reason == "refund in progress"

    assert await sweep_stale_refunds(machine, now=_later(), refund_timeout_minutes=10) == 1

    final = (await machine.get_order(admin, order.id)).value
    assert final.status == OrderStatus.COMPLETED
    assert final.dispute.winner == "buyer"
    assert final.dispute.resolution == "lost in transit"
    assert final.dispute.resolved_by == admin.user_id
    settled = Payment.from_doc(await store.get_payment_for_order(order.id))
    assert settled.escrow_status == EscrowStatus.REFUNDED


async def test_failed_recovery_clears_the_marker(machine, store, gateway, order_in, seller):
    order, _ = await order_in(OrderStatus.CONFIRMED)
    await _mark_refund(machine, store, order, RefundPurpose.SELLER_CANCEL, seller.user_id, None, "ORDER_CANCELLED_BY_SELLER")
    gateway.fail_refund = "refund declined"

    assert await sweep_stale_refunds(machine, now=_later(), refund_timeout_minutes=10) == 0

    payment = Payment.from_doc(await store.get_payment_for_order(order.id))
    assert payment.is_held
    assert not payment.refund_in_flight
    assert (await machine.ship_order(seller, order.id)).ok


async def test_marker_without_context_is_cleared(machine, store, order_in, seller):
    order, _ = await order_in(OrderStatus.CONFIRMED)
    async with store.transaction() as tx:
        payment = await machine.escrow.get(tx, order.id)
        payment.refund_pending_since = datetime.utcnow()
        await tx.save_payment(payment.to_doc(), payment.version)

    result = await machine.recover_refund(order.id)

    assert not result.ok
    assert not Payment.from_doc(await store.get_payment_for_order(order.id)).refund_in_flight
    assert (await machine.ship_order(seller, order.id)).ok


async def test_fresh_refund_marker_is_left_alone(machine, store, gateway, order_in, seller):
    order, _ = await order_in(OrderStatus.CONFIRMED)
    await _mark_refund(machine, store, order, RefundPurpose.SELLER_CANCEL, seller.user_id, None, "ORDER_CANCELLED_BY_SELLER")

    assert await sweep_stale_refunds(machine, refund_timeout_minutes=10) == 0
    assert gateway.refunds == []
    assert Payment.from_doc(await store.get_payment_for_order(order.id)).refund_in_flight


async def test_recover_without_marker_is_rejected(machine, order_in):
    order, _ = await order_in(OrderStatus.CONFIRMED)
    result = await machine.recover_refund(order.id)
    assert result.reason == "no refund in progress"
