"""
Explicit result objects for the booking/billing core.

Expected business outcomes (not found, wrong state, capability denied,
conflicts) come back as a failed ServiceResult. Only unexpected infrastructure
errors propagate as exceptions. Routes turn failed results into HTTP errors
with `result_to_http`.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from fastapi import HTTPException

T = TypeVar("T")


class FailureKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    CAPABILITY_DENIED = "capability_denied"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    VALIDATION = "validation"
    PAYMENT_FAILED = "payment_failed"
    INTERNAL = "internal"


# HTTP-equivalent status codes suggested to callers, per failure kind.
STATUS_FOR_KIND: dict[FailureKind, int] = {
    FailureKind.NOT_FOUND: 404,
    FailureKind.INVALID_STATE: 400,
    FailureKind.CAPABILITY_DENIED: 403,
    FailureKind.CONFLICT: 409,
    FailureKind.UNAVAILABLE: 409,
    FailureKind.VALIDATION: 400,
    FailureKind.PAYMENT_FAILED: 502,
    FailureKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    kind: Optional[FailureKind] = None
    status_code: int = 200

    @classmethod
    def ok(cls, value: Any = None, status_code: int = 200) -> "ServiceResult":
        return cls(success=True, value=value, status_code=status_code)

    @classmethod
    def fail(cls, kind: FailureKind, error: str, status_code: int | None = None, value: Any = None) -> "ServiceResult":
        return cls(
            success=False,
            value=value,
            error=error,
            kind=kind,
            status_code=status_code if status_code is not None else STATUS_FOR_KIND[kind],
        )


def result_to_http(result: ServiceResult) -> HTTPException:
    """
    Map a failed ServiceResult into an HTTPException.
    The detail carries the machine-readable kind so UIs can branch on it.
    """
    kind = result.kind or FailureKind.INTERNAL
    return HTTPException(
        status_code=result.status_code or STATUS_FOR_KIND[kind],
        detail={"message": result.error or "Request failed", "reason": kind.value},
    )
