import asyncio
import logging
from datetime import datetime

from bson import ObjectId

from config.constants import (
    ALLOWED_PAYMENT_METHODS,
    COMPENSATION_REFUND_REASON,
    FINAL_PHASE_ATTEMPTS,
    GATEWAY_PAYMENT_METHODS,
    PAYMENT_METHOD_LABELS,
    PAYMENT_TIMEOUT_REASON,
)
from models.order import CompletionPath, Order, OrderStatus
from models.payment import Payment, PaymentStatus, RefundContext, RefundPurpose
from models.product import Product
from models.user import SYSTEM_IDENTITY, Identity
from utils import inventory
from utils import notifications as notice
from utils.errors import (
    ConcurrentUpdate,
    Err,
    Ok,
    Result,
    TransitionAborted,
    gateway_error,
    not_found,
    precondition_failed,
    unauthorized,
)
from utils.dispute_service import DisputeResolver
from utils.escrow_service import EscrowLedger, RefundRequired, manual_reference
from utils.money import format_amount
from utils.order_guards import Party, Transition, allowed_actions, evaluate, party_for
from utils.order_locks import OrderLockRegistry
from utils.order_timeline import (
    ORDER_ACCEPTED,
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_CREATED,
    ORDER_PAYMENT_TIMEOUT,
    ORDER_SHIPPED,
    PAYMENT_CAPTURED,
    PAYMENT_FAILED,
    PAYMENT_INTENT_OPENED,
    REFUND_REQUESTED,
    record_order_event,
)

logger = logging.getLogger(__name__)


class SideEffects:
    """
    Notifications and chat messages queued during a transition.
    Flushed only after the transaction committed; failures are logged and dropped.
    """

    def __init__(self, notifier, conversations):
        self.notifier = notifier
        self.conversations = conversations
        self._queue = []

    def notify(self, user_id, title, message, category, order_id):
        self._queue.append(("NOTIFY", self.notifier.notify, (user_id, title, message, category, order_id, "order")))

    def notify_admins(self, title, message, category):
        self._queue.append(("NOTIFY_ADMINS", self.notifier.notify_admins, (title, message, category)))

    def chat(self, order: Order, author_id, text):
        if order.conversation_id is None:
            return
        self._queue.append(("CHAT", self.conversations.append_system_message, (order.conversation_id, author_id, text)))

    async def flush(self, order_id):
        queue, self._queue = self._queue, []
        for tag, send, args in queue:
            try:
                await send(*args)
            except Exception:
                logger.exception("%s_ERROR order=%s", tag, order_id)


class OrderStateMachine:
    """
    Every mutation of an order goes through run(): per-order lock, one store
    transaction, guard table, mutation, commit, then side effects.
    Returns Ok/Err; business failures never raise out of here.
    """

    def __init__(self, store, escrow: EscrowLedger, notifier, conversations, locks: OrderLockRegistry | None = None):
        self.store = store
        self.escrow = escrow
        self.notifier = notifier
        self.conversations = conversations
        self.locks = locks or OrderLockRegistry()
        self.disputes = DisputeResolver(self)
        self._settling = set()

    # ==============================
    # Transition runner
    # ==============================

    async def save(self, tx, order: Order) -> Order:
        expected = order.version
        order.version = expected + 1
        order.updated_at = datetime.utcnow()
        if not await tx.save_order(order.to_doc(), expected):
            raise ConcurrentUpdate(f"order {order.id}")
        return order

    async def run(self, order_id: ObjectId, transition: Transition, actor: Identity, mutate, **ctx) -> Result:
        effects = SideEffects(self.notifier, self.conversations)
        try:
            async with self.locks.hold(order_id):
                async with self.store.transaction() as tx:
                    order = Order.from_doc(await tx.get_order(order_id))
                    if order is None:
                        raise TransitionAborted(not_found())

                    payment = await self.escrow.get(tx, order_id)
                    failure = evaluate(transition, order, actor, payment=payment, **ctx)
                    if failure:
                        raise TransitionAborted(failure)

                    value = await mutate(tx, order, payment, effects)
        except TransitionAborted as e:
            logger.info(
                "ORDER_TRANSITION_REJECTED order=%s transition=%s code=%s reason=%s",
                order_id, transition.value, e.failure.code.value, e.failure.reason,
            )
            return Err(e.failure)
        except ConcurrentUpdate as e:
            logger.warning("ORDER_CONCURRENT_UPDATE order=%s transition=%s detail=%s", order_id, transition.value, e)
            return Err(precondition_failed("order was modified concurrently, retry", retryable=True))

        await effects.flush(order_id)
        return Ok(value)

    async def _write(self, order_id: ObjectId, tag: str, write):
        """Small bookkeeping write under the order lock, outside the guard table."""
        try:
            async with self.locks.hold(order_id):
                async with self.store.transaction() as tx:
                    return await write(tx)
        except ConcurrentUpdate:
            logger.error("%s_CONFLICT order=%s", tag, order_id)
            return None

    async def _with_retries(self, attempt, order_id: ObjectId, tag: str) -> Result:
        result = None
        for n in range(1, FINAL_PHASE_ATTEMPTS + 1):
            result = await attempt()
            if result.ok or not result.failure.retryable:
                return result
            logger.warning("%s_RETRY order=%s attempt=%s reason=%s", tag, order_id, n, result.reason)
        return result

    # ==============================
    # Create / Accept
    # ==============================

    async def create_order(self, actor: Identity, product_id: ObjectId, quantity: int) -> Result:
        order_id = ObjectId()
        effects = SideEffects(self.notifier, self.conversations)

        try:
            async with self.store.transaction() as tx:
                product = Product.from_doc(await tx.get_product(product_id))
                if product is None:
                    raise TransitionAborted(not_found("product"))
                if product.seller_id == actor.user_id:
                    raise TransitionAborted(precondition_failed("cannot order your own product"))

                await inventory.reserve(tx, product_id, quantity, order_id)

                order = Order(
                    id=order_id,
                    buyer_id=actor.user_id,
                    seller_id=product.seller_id,
                    product_id=product.id,
                    product_name=product.name,
                    quantity=quantity,
                    unit_price_minor=product.price_minor,
                    total_minor=product.price_minor * quantity,
                )
                await tx.insert_order(order.to_doc())

                await record_order_event(
                    tx,
                    order_id=order.id,
                    event=ORDER_CREATED,
                    actor_role=Party.BUYER.value,
                    actor_id=actor.user_id,
                    metadata={"quantity": quantity, "total_minor": order.total_minor},
                )
        except TransitionAborted as e:
            logger.info("ORDER_CREATE_REJECTED product=%s code=%s reason=%s", product_id, e.failure.code.value, e.failure.reason)
            return Err(e.failure)
        except ConcurrentUpdate:
            logger.warning("ORDER_CREATE_CONFLICT product=%s", product_id)
            return Err(precondition_failed("product stock was modified concurrently, retry", retryable=True))

        logger.info("ORDER_CREATED order=%s product=%s qty=%s", order.id, product_id, quantity)

        order = await self._attach_conversation(order)

        effects.notify(
            order.seller_id,
            "New Order Request",
            f"New order for {order.product_name} (Qty: {order.quantity}) - Total: {format_amount(order.total_minor)}",
            notice.NEW_ORDER,
            order.id,
        )
        effects.chat(
            order,
            order.buyer_id,
            f"New order placed for {order.product_name} (Qty: {order.quantity}). Waiting for the seller to accept.",
        )
        await effects.flush(order.id)
        return Ok(order)

    async def _attach_conversation(self, order: Order) -> Order:
        try:
            conversation_id = await self.conversations.open_thread(order.buyer_id, order.seller_id)
        except Exception:
            logger.exception("CHAT_THREAD_ERROR order=%s", order.id)
            return order
        if conversation_id is None:
            return order

        async def attach(tx):
            current = Order.from_doc(await tx.get_order(order.id))
            current.conversation_id = conversation_id
            return await self.save(tx, current)

        return await self._write(order.id, "ORDER_CONVERSATION", attach) or order

    async def accept_order(self, actor: Identity, order_id: ObjectId) -> Result:
        async def mutate(tx, order, payment, effects):
            order.status = OrderStatus.ACCEPTED
            order.accepted_at = datetime.utcnow()
            await self.save(tx, order)

            await record_order_event(
                tx, order_id=order.id, event=ORDER_ACCEPTED,
                actor_role=Party.SELLER.value, actor_id=actor.user_id,
            )

            effects.notify(
                order.buyer_id,
                "Order Accepted",
                f"Your order for {order.product_name} has been accepted by the seller.",
                notice.ORDER_ACCEPTED,
                order.id,
            )
            effects.chat(order, actor.user_id, f"Order accepted. Please pay {format_amount(order.total_minor)} to continue.")
            return order

        return await self.run(order_id, Transition.ACCEPT, actor, mutate)

    # ==============================
    # Pay (three phases for gateway methods)
    # ==============================

    async def pay(
        self,
        actor: Identity,
        order_id: ObjectId,
        amount,
        method: str,
        reference: str | None = None,
        method_details: dict | None = None,
    ) -> Result:
        method = (method or "").strip().lower()

        async def begin(tx, order, payment, effects):
            if method not in ALLOWED_PAYMENT_METHODS:
                raise TransitionAborted(precondition_failed(f"unsupported payment method: {method}"))

            if method in GATEWAY_PAYMENT_METHODS:
                intent = await self.escrow.open_intent(tx, order, method)
                await record_order_event(
                    tx, order_id=order.id, event=PAYMENT_INTENT_OPENED,
                    actor_role=Party.BUYER.value, actor_id=actor.user_id,
                    metadata={"payment_id": str(intent.id), "method": method},
                )
                return intent

            held = await self.escrow.create_held(tx, order, method, reference or manual_reference(method))
            await self._confirm(tx, order, held, effects, actor)
            return held

        result = await self.run(order_id, Transition.PAY, actor, begin, amount=amount)
        if not result.ok or result.value.status != PaymentStatus.PENDING:
            return result

        intent = result.value
        capture = await self.escrow.capture(intent, method_details)

        if not capture.success:
            logger.warning("ORDER_CAPTURE_FAILED order=%s payment=%s error=%s", order_id, intent.id, capture.error)
            await self._discard_intent(order_id, intent, capture.error)
            return Err(gateway_error(capture.error or "payment capture failed"))

        async def confirm(tx, order, payment, effects):
            held = await self.escrow.create_held(tx, order, method, capture.reference, intent_id=intent.id)
            await self._confirm(tx, order, held, effects, actor)
            return held

        result = await self._with_retries(
            lambda: self.run(order_id, Transition.CONFIRM_PAYMENT, actor, confirm, intent_id=intent.id),
            order_id,
            "ORDER_CONFIRM_PAYMENT",
        )
        if result.ok:
            return result

        return await self._compensate_capture(order_id, intent, capture.reference, result.reason)

    async def _confirm(self, tx, order: Order, payment: Payment, effects: SideEffects, actor: Identity):
        order.status = OrderStatus.CONFIRMED
        order.paid_at = datetime.utcnow()
        await self.save(tx, order)

        await record_order_event(
            tx, order_id=order.id, event=PAYMENT_CAPTURED,
            actor_role=Party.BUYER.value, actor_id=actor.user_id,
            metadata={
                "payment_id": str(payment.id),
                "method": payment.method,
                "amount_minor": payment.amount_minor,
                "reference": payment.reference,
            },
        )

        amount = format_amount(payment.amount_minor)
        label = PAYMENT_METHOD_LABELS.get(payment.method, payment.method)
        effects.notify(
            order.seller_id,
            "Payment Received",
            f"Payment of {amount} via {label} received for {order.product_name}. "
            f"Funds are held in escrow until the buyer confirms receipt.",
            notice.PAYMENT_RECEIVED,
            order.id,
        )
        effects.notify(
            order.buyer_id,
            "Order Confirmed",
            f"Your payment of {amount} for {order.product_name} is held in escrow.",
            notice.ORDER_CONFIRMED,
            order.id,
        )
        effects.chat(order, actor.user_id, f"Payment of {amount} sent via {label}. Funds are held in escrow.")

    async def _discard_intent(self, order_id: ObjectId, intent: Payment, error: str | None):
        async def discard(tx):
            await self.escrow.discard_intent(tx, order_id, intent.id)
            await record_order_event(
                tx, order_id=order_id, event=PAYMENT_FAILED,
                actor_role=Party.BUYER.value, actor_id=intent.buyer_id,
                metadata={"payment_id": str(intent.id), "error": error},
            )

        await self._write(order_id, "ORDER_DISCARD_INTENT", discard)

    async def _compensate_capture(self, order_id: ObjectId, intent: Payment, reference: str | None, cause: str) -> Result:
        refund = await self.escrow.request_refund(intent, COMPENSATION_REFUND_REASON, reference=reference)

        async def record(tx):
            await self.escrow.expire_intent(tx, order_id, "CAPTURE_REFUNDED")
            await record_order_event(
                tx, order_id=order_id, event=REFUND_REQUESTED,
                actor_role=Party.SYSTEM.value,
                metadata={
                    "payment_id": str(intent.id),
                    "reference": reference,
                    "refund_id": refund.refund_id,
                    "success": refund.success,
                    "cause": cause,
                },
            )

        await self._write(order_id, "ORDER_COMPENSATION", record)

        if not refund.success:
            logger.error(
                "ORDER_CAPTURE_COMPENSATION_FAILED order=%s reference=%s error=%s",
                order_id, reference, refund.error,
            )
            return Err(gateway_error(f"{cause}; refund of the captured amount failed"))

        logger.warning("ORDER_CAPTURE_COMPENSATED order=%s refund=%s cause=%s", order_id, refund.refund_id, cause)
        return Err(precondition_failed(f"{cause}; captured amount refunded"))

    # ==============================
    # Ship / Complete
    # ==============================

    async def ship_order(self, actor: Identity, order_id: ObjectId, proof: str | None = None) -> Result:
        async def mutate(tx, order, payment, effects):
            order.status = OrderStatus.SHIPPED
            order.shipped_at = datetime.utcnow()
            order.shipment_proof = proof
            await self.save(tx, order)

            await record_order_event(
                tx, order_id=order.id, event=ORDER_SHIPPED,
                actor_role=Party.SELLER.value, actor_id=actor.user_id,
                metadata={"proof": proof} if proof else None,
            )

            effects.notify(
                order.buyer_id,
                "Order Shipped",
                f"Your order for {order.product_name} has been shipped. Confirm receipt once it arrives.",
                notice.ORDER_SHIPPED,
                order.id,
            )
            effects.chat(order, actor.user_id, "Order shipped. Please confirm receipt once it arrives.")
            return order

        return await self.run(order_id, Transition.SHIP, actor, mutate)

    async def complete_order(self, actor: Identity, order_id: ObjectId) -> Result:
        async def mutate(tx, order, payment, effects):
            order.status = OrderStatus.COMPLETED
            order.completed_by = CompletionPath.BUYER
            order.completion_date = datetime.utcnow()
            await self.save(tx, order)

            released = await self.escrow.release(tx, order.id)
            await inventory.commit(tx, order.product_id, order.quantity, order.id)

            await record_order_event(
                tx, order_id=order.id, event=ORDER_COMPLETED,
                actor_role=Party.BUYER.value, actor_id=actor.user_id,
                metadata={"escrow": "released" if released else "none"},
            )

            message = f"The buyer confirmed receipt of {order.product_name}."
            if released:
                message += f" {format_amount(released.amount_minor)} has been released to you."
            effects.notify(order.seller_id, "Order Completed", message, notice.ORDER_COMPLETED, order.id)
            effects.chat(order, actor.user_id, "Order received. Thank you!")
            return order

        return await self.run(order_id, Transition.COMPLETE, actor, mutate)

    # ==============================
    # Cancel
    # ==============================

    async def cancel_order(self, actor: Identity, order_id: ObjectId, reason: str | None = None) -> Result:
        order = Order.from_doc(await self.store.get_order(order_id))
        party = party_for(order, actor) if order else None

        if party == Party.BUYER:
            return await self._buyer_cancel(actor, order_id, reason)
        if party == Party.SELLER:
            return await self._seller_cancel(actor, order_id, reason)
        return Err(not_found())

    async def _buyer_cancel(self, actor: Identity, order_id: ObjectId, reason: str | None) -> Result:
        async def mutate(tx, order, payment, effects):
            return await self.finish_cancel(
                tx, order, payment, effects,
                actor=actor, cancelled_by=Party.BUYER.value, reason=reason,
            )

        return await self.run(order_id, Transition.BUYER_CANCEL, actor, mutate)

    async def _seller_cancel(self, actor: Identity, order_id: ObjectId, reason: str | None) -> Result:
        async def begin(tx, order, payment, effects):
            if payment is not None and payment.is_held and payment.is_gateway_backed:
                context = RefundContext(
                    purpose=RefundPurpose.SELLER_CANCEL,
                    actor_id=actor.user_id,
                    reason=reason,
                    gateway_reason=f"ORDER_CANCELLED_BY_SELLER: {reason}" if reason else "ORDER_CANCELLED_BY_SELLER",
                )
                await self.begin_gateway_refund(tx, order, payment, actor, Party.SELLER, context)
                return RefundRequired(payment)

            return await self.finish_cancel(
                tx, order, payment, effects,
                actor=actor, cancelled_by=Party.SELLER.value, reason=reason,
            )

        result = await self.run(order_id, Transition.SELLER_CANCEL, actor, begin)
        if not result.ok or not isinstance(result.value, RefundRequired):
            return result

        return await self.settle_gateway_refund(order_id, result.value.payment)

    async def finish_cancel(
        self,
        tx,
        order: Order,
        payment: Payment | None,
        effects: SideEffects,
        *,
        actor: Identity,
        cancelled_by: str,
        reason: str | None,
        refund_id: str | None = None,
        event: str = ORDER_CANCELLED,
    ) -> Order:
        escrow_outcome = "none"
        if payment is not None:
            if payment.is_held:
                await self.escrow.refund(tx, order.id, reason=reason or f"ORDER_CANCELLED_BY_{cancelled_by.upper()}", refund_id=refund_id)
                escrow_outcome = "refunded"
            elif payment.status == PaymentStatus.PENDING:
                await self.escrow.expire_intent(tx, order.id, reason or "ORDER_CANCELLED")
                escrow_outcome = "intent_failed"

        order.status = OrderStatus.CANCELLED
        order.cancelled_at = datetime.utcnow()
        order.cancelled_by = cancelled_by
        order.cancel_reason = reason
        await self.save(tx, order)

        await inventory.restore(tx, order.product_id, order.quantity, order.id, reason=event)

        await record_order_event(
            tx, order_id=order.id, event=event,
            actor_role=cancelled_by, actor_id=None if actor.is_system else actor.user_id,
            metadata={"reason": reason, "escrow": escrow_outcome, "refund_id": refund_id},
        )

        message = f"Your order for {order.product_name} was cancelled by the {cancelled_by}."
        if reason:
            message += f" Reason: {reason}"
        if escrow_outcome == "refunded":
            message += " The escrowed payment has been refunded."
        for user_id in (order.buyer_id, order.seller_id):
            if user_id != actor.user_id:
                effects.notify(user_id, "Order Cancelled", message, notice.ORDER_CANCELLED, order.id)
        effects.chat(order, actor.user_id, f"Order cancelled by the {cancelled_by}." + (f" Reason: {reason}" if reason else ""))
        return order

    # ==============================
    # Gateway refunds (three phases)
    # ==============================

    async def begin_gateway_refund(
        self,
        tx,
        order: Order,
        payment: Payment,
        actor: Identity,
        party: Party,
        context: RefundContext,
    ):
        await self.escrow.mark_refund_pending(tx, payment, context)
        await record_order_event(
            tx, order_id=order.id, event=REFUND_REQUESTED,
            actor_role=party.value, actor_id=actor.user_id,
            metadata={
                "payment_id": str(payment.id),
                "amount_minor": payment.amount_minor,
                "purpose": context.purpose.value,
            },
        )

    async def settle_gateway_refund(self, order_id: ObjectId, payment: Payment) -> Result:
        """
        Phases two and three of a gateway refund: call the gateway with no lock
        held, then finish the transition stored in payment.refund_context.

        Runs as its own task: a caller cancelled mid-refund stops waiting, but
        the marker is still settled or cleared.
        """
        task = asyncio.ensure_future(self._settle_refund(order_id, payment))
        self._settling.add(task)
        task.add_done_callback(self._settling.discard)
        return await asyncio.shield(task)

    async def _settle_refund(self, order_id: ObjectId, payment: Payment) -> Result:
        context = payment.refund_context
        refund = await self.escrow.request_refund(payment, context.gateway_reason)

        if not refund.success:
            logger.warning("ORDER_REFUND_FAILED order=%s payment=%s error=%s", order_id, payment.id, refund.error)
            await self._clear_refund_marker(order_id)
            return Err(gateway_error(refund.error or "refund failed"))

        result = await self._with_retries(
            lambda: self._finish_refund(order_id, context, refund.refund_id),
            order_id,
            "ORDER_REFUND_SETTLE",
        )
        if result.ok:
            return result

        if result.failure.retryable:
            # marker stays; the refund sweep finishes it with the same idempotency key
            logger.error(
                "ORDER_REFUND_SETTLE_DEFERRED order=%s refund=%s reason=%s",
                order_id, refund.refund_id, result.reason,
            )
            return result

        # the money is back with the buyer even though the transition no longer applies
        logger.error(
            "ORDER_REFUND_SETTLE_FAILED order=%s refund=%s reason=%s",
            order_id, refund.refund_id, result.reason,
        )
        await self._write(
            order_id,
            "ORDER_REFUND_RECORD",
            lambda tx: self.escrow.refund(tx, order_id, reason=context.gateway_reason, refund_id=refund.refund_id),
        )
        return result

    async def _finish_refund(self, order_id: ObjectId, context: RefundContext, refund_id: str | None) -> Result:
        if context.purpose == RefundPurpose.DISPUTE_RESOLUTION:
            return await self.disputes.finish_refund(order_id, context, refund_id)

        actor = Identity(user_id=context.actor_id)

        async def mutate(tx, order, payment, effects):
            return await self.finish_cancel(
                tx, order, payment, effects,
                actor=actor, cancelled_by=Party.SELLER.value, reason=context.reason, refund_id=refund_id,
            )

        return await self.run(order_id, Transition.SELLER_CANCEL, actor, mutate, settling_refund=True)

    async def _clear_refund_marker(self, order_id: ObjectId):
        async def clear(tx):
            await self.escrow.clear_refund_pending(tx, order_id)

        await self._write(order_id, "ORDER_REFUND_MARKER", clear)

    async def recover_refund(self, order_id: ObjectId) -> Result:
        """
        Re-drive a gateway refund whose marker outlived its caller (process
        crash, exhausted settle retries). The gateway call is re-issued under
        the payment's idempotency key, so an already-executed refund is not
        paid out twice.
        """
        payment = Payment.from_doc(await self.store.get_payment_for_order(order_id))
        if payment is None or not payment.refund_in_flight:
            return Err(precondition_failed("no refund in progress"))

        if payment.refund_context is None or not payment.is_held:
            logger.error("ORDER_REFUND_UNRECOVERABLE order=%s payment=%s", order_id, payment.id)
            await self._clear_refund_marker(order_id)
            return Err(precondition_failed("refund cannot be resumed; marker cleared"))

        logger.warning(
            "ORDER_REFUND_RECOVERING order=%s payment=%s purpose=%s since=%s",
            order_id, payment.id, payment.refund_context.purpose.value, payment.refund_pending_since,
        )
        return await self.settle_gateway_refund(order_id, payment)

    # ==============================
    # Disputes
    # ==============================

    async def raise_dispute(self, actor: Identity, order_id: ObjectId, reason: str) -> Result:
        return await self.disputes.raise_dispute(actor, order_id, reason)

    async def resolve_dispute(self, admin: Identity, order_id: ObjectId, winner, resolution: str) -> Result:
        return await self.disputes.resolve(admin, order_id, winner, resolution)

    # ==============================
    # Payment timeout (system)
    # ==============================

    async def expire_payment(self, order_id: ObjectId, reason: str = PAYMENT_TIMEOUT_REASON) -> Result:
        async def mutate(tx, order, payment, effects):
            return await self.finish_cancel(
                tx, order, payment, effects,
                actor=SYSTEM_IDENTITY,
                cancelled_by=Party.SYSTEM.value,
                reason=reason,
                event=ORDER_PAYMENT_TIMEOUT,
            )

        return await self.run(order_id, Transition.EXPIRE_PAYMENT, SYSTEM_IDENTITY, mutate)

    # ==============================
    # Reads
    # ==============================

    async def _readable(self, actor: Identity, order_id: ObjectId) -> Order | None:
        order = Order.from_doc(await self.store.get_order(order_id))
        if order is None:
            return None
        if actor.is_admin or party_for(order, actor) in (Party.BUYER, Party.SELLER):
            return order
        return None

    async def get_order(self, actor: Identity, order_id: ObjectId) -> Result:
        order = await self._readable(actor, order_id)
        return Ok(order) if order else Err(not_found())

    async def get_escrow(self, actor: Identity, order_id: ObjectId) -> Result:
        order = await self._readable(actor, order_id)
        if order is None:
            return Err(not_found())

        payment = Payment.from_doc(await self.store.get_payment_for_order(order_id))
        if payment is None:
            return Err(not_found("payment"))

        settled_by_escrow = payment.is_held and not payment.refund_in_flight
        return Ok({
            "order": order,
            "payment": payment,
            "can_release": settled_by_escrow and order.status in (OrderStatus.SHIPPED, OrderStatus.DISPUTED),
            "can_refund": settled_by_escrow and order.status in (OrderStatus.CONFIRMED, OrderStatus.DISPUTED),
        })

    async def get_timeline(self, actor: Identity, order_id: ObjectId) -> Result:
        order = await self._readable(actor, order_id)
        if order is None:
            return Err(not_found())
        return Ok(await self.store.list_timeline(order_id))

    async def get_conversation_order(self, actor: Identity, conversation_id: ObjectId) -> Result:
        """
        Active order on a chat thread, with what the caller may do next.
        Ok(None) when the thread has no open order visible to the caller.
        """
        order = Order.from_doc(await self.store.find_latest_order_for_conversation(conversation_id, actor.user_id))
        if order is None or order.is_terminal:
            return Ok(None)

        payment = Payment.from_doc(await self.store.get_payment_for_order(order.id))
        return Ok({
            "order": order,
            "payment": payment,
            "party": party_for(order, actor),
            "actions": allowed_actions(order, actor, payment),
        })

    async def list_payment_history(self, actor: Identity, limit: int = 50) -> Result:
        history = []
        for doc in await self.store.list_payments_for_user(actor.user_id, limit=limit):
            payment = Payment.from_doc(doc)
            history.append({
                "payment": payment,
                "order": Order.from_doc(await self.store.get_order(payment.order_id)),
                "role": Party.BUYER if payment.buyer_id == actor.user_id else Party.SELLER,
            })
        return Ok(history)

    async def get_receipt(self, actor: Identity, payment_id: ObjectId) -> Result:
        payment = Payment.from_doc(await self.store.get_payment(payment_id))
        if payment is None or actor.user_id not in (payment.buyer_id, payment.seller_id):
            return Err(not_found("receipt"))

        order = Order.from_doc(await self.store.get_order(payment.order_id))
        return Ok({"payment": payment, "order": order})

    async def list_orders(self, actor: Identity, role: str = "buyer") -> Result:
        if role == Party.SELLER.value:
            docs = await self.store.list_orders(seller_id=actor.user_id)
        else:
            docs = await self.store.list_orders(buyer_id=actor.user_id)
        return Ok([Order.from_doc(d) for d in docs])

    async def list_disputes(self, actor: Identity, resolved: bool | None = None) -> Result:
        if not actor.is_admin:
            return Err(unauthorized())
        docs = await self.store.list_disputed_orders(resolved=resolved)
        return Ok([Order.from_doc(d) for d in docs])


# ==============================
# App-wide instance
# ==============================

_machine: OrderStateMachine | None = None


def build_order_machine() -> OrderStateMachine:
    from config.env import STORE_BACKEND
    from database import get_db, get_store
    from utils.payment_gateway import PayMongoGateway

    if STORE_BACKEND == "memory":
        notifier = notice.LoggingNotificationDispatcher()
        conversations = notice.LoggingConversationService()
    else:
        db = get_db()
        notifier = notice.MongoNotificationDispatcher(db)
        conversations = notice.MongoConversationService(db)

    return OrderStateMachine(
        store=get_store(),
        escrow=EscrowLedger(PayMongoGateway()),
        notifier=notifier,
        conversations=conversations,
    )


def get_order_machine() -> OrderStateMachine:
    global _machine
    if _machine is None:
        _machine = build_order_machine()
    return _machine
