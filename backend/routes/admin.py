from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models.user import Identity
from utils.errors import unwrap_or_raise
from utils.order_guards import parse_object_id
from utils.order_machine import OrderStateMachine, get_order_machine
from utils.security import require_admin
from utils.serializers import serialize_order


router = APIRouter(prefix="/api/admin", tags=["Admin"])


# =====================================================
# SCHEMAS
# =====================================================

class ResolveDispute(BaseModel):
    winner: Literal["buyer", "seller"]
    resolution: str = Field(..., max_length=2000)


# =====================================================
# DISPUTES
# =====================================================

@router.get("/disputes")
async def list_disputes(
    resolved: Optional[bool] = None,
    admin: Identity = Depends(require_admin),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    orders = unwrap_or_raise(await machine.list_disputes(admin, resolved))
    return [serialize_order(o) for o in orders]


@router.post("/disputes/{order_id}/resolve")
async def resolve_dispute(
    order_id: str,
    payload: ResolveDispute,
    admin: Identity = Depends(require_admin),
    machine: OrderStateMachine = Depends(get_order_machine),
):
    order = unwrap_or_raise(
        await machine.resolve_dispute(
            admin,
            parse_object_id(order_id, "order_id"),
            payload.winner,
            payload.resolution,
        )
    )
    return {
        "message": f"Dispute resolved in favor of {payload.winner}",
        "order": serialize_order(order),
    }
