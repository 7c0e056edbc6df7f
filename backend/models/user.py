from pydantic import BaseModel, ConfigDict
from enum import Enum

from bson import ObjectId


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


class Identity(BaseModel):
    """
    Caller identity resolved from a bearer token. Whether a user acts as
    buyer or seller is decided per order, by comparing ids.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    user_id: ObjectId
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == UserRole.SYSTEM


# Actor used by background workers
SYSTEM_IDENTITY = Identity(user_id=ObjectId("000000000000000000000000"), role=UserRole.SYSTEM)
