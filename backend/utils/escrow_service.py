import logging
from datetime import datetime

from bson import ObjectId

from models.order import Order
from models.payment import EscrowStatus, Payment, PaymentStatus, RefundContext
from utils.errors import ConcurrentUpdate, TransitionAborted, duplicate_payment
from utils.payment_gateway import CaptureResult, PaymentGateway, RefundResult

logger = logging.getLogger(__name__)


def manual_reference(method: str) -> str:
    """Reference for payments settled outside the gateway (bank transfer, COD)."""
    return f"{method.upper()}-{int(datetime.utcnow().timestamp() * 1000)}"


class RefundRequired:
    """Outcome of a first phase that marked a gateway refund as in flight."""

    __slots__ = ("payment",)

    def __init__(self, payment: Payment):
        self.payment = payment


class EscrowLedger:
    """
    Payment records, 1:1 with orders.

    Every method taking `tx` runs inside the caller's store transaction and
    commits or rolls back with the order change. The gateway wrappers
    (capture / request_refund) must be called with no transaction open.
    """

    def __init__(self, gateway: PaymentGateway):
        self.gateway = gateway

    # ==============================
    # Reads
    # ==============================

    async def get(self, tx, order_id: ObjectId) -> Payment | None:
        return Payment.from_doc(await tx.get_payment_for_order(order_id))

    async def _save(self, tx, payment: Payment) -> Payment:
        expected = payment.version
        payment.version = expected + 1
        payment.updated_at = datetime.utcnow()
        if not await tx.save_payment(payment.to_doc(), expected):
            raise ConcurrentUpdate(f"payment {payment.id}")
        return payment

    async def _claim_slot(self, tx, order_id: ObjectId):
        # a failed attempt frees the slot; anything else is a duplicate
        existing = await self.get(tx, order_id)
        if existing is None:
            return
        if existing.status != PaymentStatus.FAILED:
            raise TransitionAborted(duplicate_payment())
        await tx.delete_payment(existing.id)

    # ==============================
    # Intent lifecycle
    # ==============================

    async def open_intent(self, tx, order: Order, method: str) -> Payment:
        await self._claim_slot(tx, order.id)

        payment = Payment(
            order_id=order.id,
            buyer_id=order.buyer_id,
            seller_id=order.seller_id,
            amount_minor=order.total_minor,
            method=method,
        )
        await tx.insert_payment(payment.to_doc())

        logger.info("ESCROW_INTENT_OPENED order=%s payment=%s method=%s", order.id, payment.id, method)
        return payment

    async def create_held(
        self,
        tx,
        order: Order,
        method: str,
        reference: str,
        intent_id: ObjectId | None = None,
    ) -> Payment:
        """
        Record a confirmed capture as held funds.
        With intent_id, promotes the pending intent; without, inserts a fresh
        record (manual methods skip the intent phase).
        """
        now = datetime.utcnow()

        if intent_id is not None:
            payment = await self.get(tx, order.id)
            if payment is None or payment.id != intent_id or payment.status != PaymentStatus.PENDING:
                raise ConcurrentUpdate(f"payment intent {intent_id}")

            payment.status = PaymentStatus.COMPLETED
            payment.escrow_status = EscrowStatus.HELD
            payment.reference = reference
            payment.completed_at = now
            await self._save(tx, payment)
        else:
            await self._claim_slot(tx, order.id)
            payment = Payment(
                order_id=order.id,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                amount_minor=order.total_minor,
                method=method,
                reference=reference,
                status=PaymentStatus.COMPLETED,
                escrow_status=EscrowStatus.HELD,
                completed_at=now,
            )
            await tx.insert_payment(payment.to_doc())

        logger.info("ESCROW_HELD order=%s payment=%s amount=%s", order.id, payment.id, payment.amount_minor)
        return payment

    async def discard_intent(self, tx, order_id: ObjectId, intent_id: ObjectId) -> None:
        payment = await self.get(tx, order_id)
        if payment and payment.id == intent_id and payment.status == PaymentStatus.PENDING:
            await tx.delete_payment(payment.id)
            logger.info("ESCROW_INTENT_DISCARDED order=%s payment=%s", order_id, intent_id)

    async def expire_intent(self, tx, order_id: ObjectId, reason: str) -> Payment | None:
        payment = await self.get(tx, order_id)
        if payment is None or payment.status != PaymentStatus.PENDING:
            return None

        payment.status = PaymentStatus.FAILED
        payment.failure_reason = reason
        payment.failed_at = datetime.utcnow()
        await self._save(tx, payment)

        logger.info("ESCROW_INTENT_FAILED order=%s payment=%s reason=%s", order_id, payment.id, reason)
        return payment

    # ==============================
    # Disposition
    # ==============================

    async def release(self, tx, order_id: ObjectId) -> Payment | None:
        payment = await self.get(tx, order_id)
        if payment is None or not payment.is_held:
            logger.warning("ESCROW_RELEASE_SKIPPED order=%s no held record", order_id)
            return None

        payment.escrow_status = EscrowStatus.RELEASED
        payment.released_at = datetime.utcnow()
        await self._save(tx, payment)

        logger.info("ESCROW_RELEASED order=%s payment=%s amount=%s", order_id, payment.id, payment.amount_minor)
        return payment

    async def refund(
        self,
        tx,
        order_id: ObjectId,
        reason: str,
        refund_id: str | None = None,
    ) -> Payment | None:
        payment = await self.get(tx, order_id)
        if payment is None or not payment.is_held:
            logger.warning("ESCROW_REFUND_SKIPPED order=%s no held record", order_id)
            return None

        payment.escrow_status = EscrowStatus.REFUNDED
        payment.refunded_at = datetime.utcnow()
        payment.refund_reason = reason
        payment.refund_id = refund_id
        payment.refund_pending_since = None
        payment.refund_context = None
        await self._save(tx, payment)

        logger.info("ESCROW_REFUNDED order=%s payment=%s refund=%s", order_id, payment.id, refund_id)
        return payment

    async def mark_refund_pending(self, tx, payment: Payment, context: RefundContext) -> Payment:
        payment.refund_pending_since = datetime.utcnow()
        payment.refund_context = context
        return await self._save(tx, payment)

    async def clear_refund_pending(self, tx, order_id: ObjectId) -> None:
        payment = await self.get(tx, order_id)
        if payment and payment.refund_in_flight:
            payment.refund_pending_since = None
            payment.refund_context = None
            await self._save(tx, payment)

    # ==============================
    # Gateway (never under a lock)
    # ==============================

    async def capture(self, payment: Payment, method_details: dict | None) -> CaptureResult:
        try:
            return await self.gateway.capture(payment.amount_minor, payment.method, method_details or {})
        except Exception as e:
            logger.exception("ESCROW_CAPTURE_ERROR order=%s payment=%s", payment.order_id, payment.id)
            return CaptureResult(success=False, error=str(e))

    async def request_refund(
        self,
        payment: Payment,
        reason: str,
        reference: str | None = None,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        reference = reference or payment.reference
        idempotency_key = idempotency_key or payment.refund_idempotency_key
        try:
            return await self.gateway.refund(reference, payment.amount_minor, reason, idempotency_key=idempotency_key)
        except Exception as e:
            logger.exception("ESCROW_REFUND_ERROR order=%s payment=%s", payment.order_id, payment.id)
            return RefundResult(success=False, error=str(e))
