from datetime import datetime
from enum import Enum
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, computed_field


class OrderStatus(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    CONFIRMED = "Confirmed"
    SHIPPED = "Shipped"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    DISPUTED = "Disputed"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


class DisputeParty(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    NONE = "none"


class CompletionPath(str, Enum):
    BUYER = "buyer"          # buyer confirmed receipt
    DISPUTE = "dispute"      # admin verdict


class Dispute(BaseModel):
    raised_by: DisputeParty
    reason: str
    raised_at: datetime
    resolved: bool = False
    winner: DisputeParty = DisputeParty.NONE
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[ObjectId] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class Order(BaseModel):
    """
    Order document.

    Only lifecycle facts (status, timestamps, embedded dispute) are stored as
    writable fields. The legacy boolean columns (seller_shipped, dispute_raised,
    ...) are computed from them and persisted read-only for querying.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    buyer_id: ObjectId
    seller_id: ObjectId
    product_id: ObjectId
    product_name: str
    quantity: int = Field(..., gt=0)
    unit_price_minor: int = Field(..., ge=0)
    total_minor: int = Field(..., ge=0)

    status: OrderStatus = OrderStatus.PENDING
    conversation_id: Optional[ObjectId] = None

    shipment_proof: Optional[str] = None
    completed_by: Optional[CompletionPath] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    dispute: Optional[Dispute] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    accepted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    version: int = 0

    # -------------------------------
    # Derived flags
    # -------------------------------

    @computed_field
    @property
    def seller_confirmed(self) -> bool:
        return self.accepted_at is not None

    @computed_field
    @property
    def seller_shipped(self) -> bool:
        return self.shipped_at is not None

    @computed_field
    @property
    def buyer_confirmed_receipt(self) -> bool:
        return self.status == OrderStatus.COMPLETED and self.completed_by == CompletionPath.BUYER

    @computed_field
    @property
    def dispute_raised(self) -> bool:
        return self.dispute is not None

    @computed_field
    @property
    def dispute_resolved(self) -> bool:
        return self.dispute is not None and self.dispute.resolved

    @computed_field
    @property
    def dispute_raised_by(self) -> DisputeParty:
        return self.dispute.raised_by if self.dispute else DisputeParty.NONE

    @computed_field
    @property
    def dispute_winner(self) -> DisputeParty:
        return self.dispute.winner if self.dispute else DisputeParty.NONE

    @computed_field
    @property
    def dispute_reason(self) -> Optional[str]:
        return self.dispute.reason if self.dispute else None

    @computed_field
    @property
    def dispute_resolution(self) -> Optional[str]:
        return self.dispute.resolution if self.dispute else None

    @computed_field
    @property
    def can_cancel_buyer(self) -> bool:
        return self.status == OrderStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # -------------------------------
    # Persistence
    # -------------------------------

    @classmethod
    def from_doc(cls, doc: dict | None) -> Optional["Order"]:
        if not doc:
            return None
        return cls.model_validate(doc)

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True)
