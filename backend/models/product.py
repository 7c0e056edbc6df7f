from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime
from enum import Enum

from bson import ObjectId


class ProductStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class Product(BaseModel):
    """
    Stock view of a product. Only the inventory ledger writes stock fields.
    track_inventory=False means the seller does not count units (unlimited).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    seller_id: ObjectId
    name: str
    price_minor: int = Field(..., ge=0)

    stock: int = Field(0, ge=0)
    reserved_stock: int = Field(0, ge=0)
    track_inventory: bool = True
    status: ProductStatus = ProductStatus.AVAILABLE

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict | None) -> Optional["Product"]:
        if not doc:
            return None
        return cls.model_validate(doc)

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True)
