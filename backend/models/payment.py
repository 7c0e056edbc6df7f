from datetime import datetime
from enum import Enum
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

from config.constants import GATEWAY_PAYMENT_METHODS


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class EscrowStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class RefundPurpose(str, Enum):
    SELLER_CANCEL = "seller_cancel"
    DISPUTE_RESOLUTION = "dispute_resolution"


class RefundContext(BaseModel):
    """
    What a gateway refund was started for, stored with the in-flight marker
    so a sweep can finish the transition after a crash.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    purpose: RefundPurpose
    actor_id: ObjectId
    reason: Optional[str] = None
    gateway_reason: str


class Payment(BaseModel):
    """
    Escrow record, 1:1 with an order once the buyer starts paying.
    escrow_status stays None while the capture is in flight; after that it
    only ever moves held -> released or held -> refunded.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    order_id: ObjectId
    buyer_id: ObjectId
    seller_id: ObjectId
    amount_minor: int = Field(..., ge=0)
    method: str
    reference: Optional[str] = None

    status: PaymentStatus = PaymentStatus.PENDING
    escrow_status: Optional[EscrowStatus] = None

    refund_id: Optional[str] = None
    refund_reason: Optional[str] = None
    refund_pending_since: Optional[datetime] = None
    refund_context: Optional[RefundContext] = None
    failure_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    version: int = 0

    @property
    def is_gateway_backed(self) -> bool:
        return self.method in GATEWAY_PAYMENT_METHODS

    @property
    def is_held(self) -> bool:
        return self.status == PaymentStatus.COMPLETED and self.escrow_status == EscrowStatus.HELD

    @property
    def refund_in_flight(self) -> bool:
        return self.refund_pending_since is not None

    @property
    def refund_idempotency_key(self) -> str:
        # one refund per escrow record, however often it is re-issued
        return f"refund-{self.id}"

    @classmethod
    def from_doc(cls, doc: dict | None) -> Optional["Payment"]:
        if not doc:
            return None
        return cls.model_validate(doc)

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True)
