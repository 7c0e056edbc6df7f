import logging
from datetime import datetime

from bson import ObjectId

from models.order import CompletionPath, Dispute, DisputeParty, OrderStatus
from models.payment import PaymentStatus, RefundContext, RefundPurpose
from models.user import Identity, UserRole
from utils import inventory
from utils import notifications as notice
from utils.audit import log_audit
from utils.errors import Result
from utils.escrow_service import RefundRequired
from utils.money import format_amount
from utils.order_guards import Party, Transition, party_for
from utils.order_timeline import DISPUTE_RAISED, DISPUTE_RESOLVED, record_order_event

logger = logging.getLogger(__name__)


def _as_party(value) -> DisputeParty | str | None:
    if isinstance(value, DisputeParty) or value is None:
        return value
    try:
        return DisputeParty(str(value).strip().lower())
    except ValueError:
        # left as-is; the guard reports it
        return value


class DisputeResolver:
    """
    Raise / resolve on top of the order state machine's transition runner.
    A raised dispute freezes Ship, Complete and Cancel until an admin resolves it.
    """

    def __init__(self, machine):
        self.machine = machine

    # ==============================
    # Raise
    # ==============================

    async def raise_dispute(self, actor: Identity, order_id: ObjectId, reason: str) -> Result:
        async def mutate(tx, order, payment, effects):
            party = party_for(order, actor)
            raised_by = DisputeParty.BUYER if party == Party.BUYER else DisputeParty.SELLER
            text = reason.strip()

            order.dispute = Dispute(raised_by=raised_by, reason=text, raised_at=datetime.utcnow())
            order.status = OrderStatus.DISPUTED
            await self.machine.save(tx, order)

            await record_order_event(
                tx, order_id=order.id, event=DISPUTE_RAISED,
                actor_role=raised_by.value, actor_id=actor.user_id,
                metadata={"reason": text},
            )

            other = order.seller_id if raised_by == DisputeParty.BUYER else order.buyer_id
            effects.notify(
                other,
                "Order Dispute Raised",
                f"A dispute has been raised for order: {order.product_name}. Admin will review the case.",
                notice.ORDER_DISPUTED,
                order.id,
            )
            effects.notify_admins(
                "Order Dispute",
                f"Order #{order.id} - {order.product_name} disputed by {raised_by.value}. Reason: {text}",
                notice.ORDER_DISPUTED,
            )
            effects.chat(
                order,
                actor.user_id,
                f"Dispute raised.\n\nReason: {text}\n\nAdmin will review and mediate.",
            )

            logger.info("DISPUTE_RAISED order=%s by=%s", order.id, raised_by.value)
            return order

        return await self.machine.run(order_id, Transition.RAISE_DISPUTE, actor, mutate, reason=reason)

    # ==============================
    # Resolve
    # ==============================

    async def resolve(self, admin: Identity, order_id: ObjectId, winner, resolution: str) -> Result:
        winner = _as_party(winner)
        ctx = {"winner": winner, "resolution": resolution}

        async def begin(tx, order, payment, effects):
            if (
                winner == DisputeParty.BUYER
                and payment is not None
                and payment.is_held
                and payment.is_gateway_backed
            ):
                text = resolution.strip()
                context = RefundContext(
                    purpose=RefundPurpose.DISPUTE_RESOLUTION,
                    actor_id=admin.user_id,
                    reason=text,
                    gateway_reason=f"DISPUTE_RESOLVED_FOR_BUYER: {text}",
                )
                await self.machine.begin_gateway_refund(tx, order, payment, admin, Party.ADMIN, context)
                return RefundRequired(payment)

            return await self._close(tx, order, payment, effects, admin, winner, resolution)

        result = await self.machine.run(order_id, Transition.RESOLVE_DISPUTE, admin, begin, **ctx)
        if not result.ok or not isinstance(result.value, RefundRequired):
            return result

        return await self.machine.settle_gateway_refund(order_id, result.value.payment)

    async def finish_refund(self, order_id: ObjectId, context: RefundContext, refund_id: str | None) -> Result:
        """Close a buyer-won dispute once its gateway refund went through."""
        admin = Identity(user_id=context.actor_id, role=UserRole.ADMIN)

        async def mutate(tx, order, payment, effects):
            return await self._close(
                tx, order, payment, effects, admin, DisputeParty.BUYER, context.reason, refund_id=refund_id,
            )

        return await self.machine.run(
            order_id,
            Transition.RESOLVE_DISPUTE,
            admin,
            mutate,
            settling_refund=True,
            winner=DisputeParty.BUYER,
            resolution=context.reason,
        )

    async def _close(self, tx, order, payment, effects, admin: Identity, winner: DisputeParty, resolution: str, refund_id=None):
        text = resolution.strip()
        now = datetime.utcnow()

        escrow_outcome = await self._settle_escrow(tx, order, payment, winner, text, refund_id)

        # goods never left the seller: the units go back on sale
        if winner == DisputeParty.BUYER and not order.seller_shipped:
            await inventory.restore(tx, order.product_id, order.quantity, order.id, reason=DISPUTE_RESOLVED)
        else:
            await inventory.commit(tx, order.product_id, order.quantity, order.id)

        order.dispute.resolved = True
        order.dispute.winner = winner
        order.dispute.resolution = text
        order.dispute.resolved_at = now
        order.dispute.resolved_by = admin.user_id
        order.status = OrderStatus.COMPLETED
        order.completed_by = CompletionPath.DISPUTE
        order.completion_date = now
        await self.machine.save(tx, order)

        metadata = {"winner": winner.value, "resolution": text, "escrow": escrow_outcome, "refund_id": refund_id}
        await record_order_event(
            tx, order_id=order.id, event=DISPUTE_RESOLVED,
            actor_role=Party.ADMIN.value, actor_id=admin.user_id,
            metadata=metadata,
        )
        await log_audit(
            tx,
            actor_id=str(admin.user_id),
            actor_role=Party.ADMIN.value,
            action=DISPUTE_RESOLVED,
            metadata={"order_id": str(order.id), **metadata},
        )

        self._queue_resolution_notices(effects, order, winner, text, admin)
        logger.info("DISPUTE_RESOLVED order=%s winner=%s escrow=%s", order.id, winner.value, escrow_outcome)
        return order

    async def _settle_escrow(self, tx, order, payment, winner: DisputeParty, text: str, refund_id) -> str:
        if payment is None or payment.status == PaymentStatus.FAILED:
            logger.info("DISPUTE_RESOLVED_WITHOUT_ESCROW order=%s", order.id)
            return "none"

        if payment.status == PaymentStatus.PENDING:
            # capture still in flight; its confirm step will find the order closed and refund it
            await self.machine.escrow.expire_intent(tx, order.id, "DISPUTE_RESOLVED")
            logger.info("DISPUTE_RESOLVED_WITHOUT_ESCROW order=%s intent=%s", order.id, payment.id)
            return "none"

        if winner == DisputeParty.SELLER:
            released = await self.machine.escrow.release(tx, order.id)
            return "released" if released else "none"

        refunded = await self.machine.escrow.refund(
            tx, order.id, reason=f"DISPUTE_RESOLVED_FOR_BUYER: {text}", refund_id=refund_id,
        )
        return "refunded" if refunded else "none"

    def _queue_resolution_notices(self, effects, order, winner: DisputeParty, text: str, admin: Identity):
        amount = format_amount(order.total_minor)

        if winner == DisputeParty.BUYER:
            buyer_title, seller_title = "Dispute Resolved - Refund Issued", "Dispute Resolved"
            buyer_msg = f"Your dispute has been resolved in your favor. Refund of {amount} will be processed."
            seller_msg = "Dispute resolved in buyer's favor. Payment will be refunded to buyer."
        else:
            buyer_title, seller_title = "Dispute Resolved", "Dispute Resolved - Payment Released"
            buyer_msg = "Dispute resolved in seller's favor. Payment has been released to seller."
            seller_msg = f"Your dispute has been resolved in your favor. Payment of {amount} has been released."

        effects.notify(order.buyer_id, buyer_title, buyer_msg, notice.DISPUTE_RESOLVED, order.id)
        effects.notify(order.seller_id, seller_title, seller_msg, notice.DISPUTE_RESOLVED, order.id)

        outcome = "Refund will be processed to buyer." if winner == DisputeParty.BUYER else "Payment released to seller."
        effects.chat(
            order,
            admin.user_id,
            f"Dispute resolved by admin.\n\nDecision: {winner.value.upper()} WINS\n\nReason: {text}\n\n{outcome}",
        )
