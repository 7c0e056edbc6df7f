from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from models.user import Identity, UserRole
from utils.errors import ErrorCode
from utils.jwt import decode_token

security = HTTPBearer(auto_error=False)

# tokens may only carry these roles; "system" is reserved for workers
_TOKEN_ROLES = {UserRole.USER.value, UserRole.ADMIN.value}


def _unauthenticated(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": ErrorCode.UNAUTHENTICATED.value, "reason": reason, "retryable": False},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Identity:
    if credentials is None:
        raise _unauthenticated("Missing bearer token")

    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise _unauthenticated("Invalid or expired token")

    role = payload.get("role", UserRole.USER.value)
    if role not in _TOKEN_ROLES:
        raise _unauthenticated("Invalid token payload")

    try:
        user_id = ObjectId(payload.get("sub"))
    except (InvalidId, TypeError):
        raise _unauthenticated("Invalid token payload")

    return Identity(user_id=user_id, role=UserRole(role))


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": ErrorCode.UNAUTHORIZED.value, "reason": "admin access required", "retryable": False},
        )
    return identity
