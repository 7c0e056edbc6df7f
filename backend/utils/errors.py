from enum import Enum
from typing import Any, Generic, TypeVar, Union

from fastapi import HTTPException
from pydantic import BaseModel

T = TypeVar("T")


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"
    INSUFFICIENT_STOCK = "insufficient_stock"
    DUPLICATE_PAYMENT = "duplicate_payment"
    AMOUNT_MISMATCH = "amount_mismatch"
    GATEWAY_ERROR = "gateway_error"
    UNAUTHORIZED = "unauthorized"
    UNAUTHENTICATED = "unauthenticated"


HTTP_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.PRECONDITION_FAILED: 409,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.DUPLICATE_PAYMENT: 409,
    ErrorCode.AMOUNT_MISMATCH: 400,
    ErrorCode.GATEWAY_ERROR: 502,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.UNAUTHENTICATED: 401,
}


class OrderFailure(BaseModel):
    code: ErrorCode
    reason: str
    retryable: bool = False


class TransitionAborted(Exception):
    """
    Raised inside a store transaction to roll it back.
    Never escapes the state machine: it is turned into Err at the boundary.
    """

    def __init__(self, failure: OrderFailure):
        super().__init__(failure.reason)
        self.failure = failure


class ConcurrentUpdate(Exception):
    """A versioned save lost a race with another writer."""


class Ok(Generic[T]):
    ok = True
    __slots__ = ("value",)

    def __init__(self, value: T = None):
        self.value = value

    def __repr__(self):
        return f"Ok({self.value!r})"


class Err:
    ok = False
    __slots__ = ("failure",)

    def __init__(self, failure: OrderFailure):
        self.failure = failure

    @property
    def code(self) -> ErrorCode:
        return self.failure.code

    @property
    def reason(self) -> str:
        return self.failure.reason

    def __repr__(self):
        return f"Err({self.failure.code.value}: {self.failure.reason})"


Result = Union[Ok[Any], Err]


# -------------------------------
# Failure constructors
# -------------------------------

def not_found(what: str = "order") -> OrderFailure:
    return OrderFailure(code=ErrorCode.NOT_FOUND, reason=f"{what} not found")


def precondition_failed(reason: str, retryable: bool = False) -> OrderFailure:
    return OrderFailure(code=ErrorCode.PRECONDITION_FAILED, reason=reason, retryable=retryable)


def insufficient_stock(available: int) -> OrderFailure:
    return OrderFailure(
        code=ErrorCode.INSUFFICIENT_STOCK,
        reason=f"insufficient stock: only {available} available",
    )


def duplicate_payment() -> OrderFailure:
    return OrderFailure(code=ErrorCode.DUPLICATE_PAYMENT, reason="payment already exists for this order")


def amount_mismatch(submitted, expected: str) -> OrderFailure:
    return OrderFailure(
        code=ErrorCode.AMOUNT_MISMATCH,
        reason=f"payment amount {submitted} does not match order total {expected}",
    )


def gateway_error(reason: str) -> OrderFailure:
    return OrderFailure(code=ErrorCode.GATEWAY_ERROR, reason=reason, retryable=True)


def unauthorized(reason: str = "admin access required") -> OrderFailure:
    return OrderFailure(code=ErrorCode.UNAUTHORIZED, reason=reason)


def unwrap_or_raise(result: Result):
    """
    Route-side translation of a state machine result into an HTTP response.
    """
    if result.ok:
        return result.value

    failure = result.failure
    raise HTTPException(
        status_code=HTTP_STATUS_BY_CODE[failure.code],
        detail={
            "code": failure.code.value,
            "reason": failure.reason,
            "retryable": failure.retryable,
        },
    )
