"""Typed success/failure result returned by every public service operation.

Expected failures (business rules, gateway rejections) come back as a
failed ``ServiceResult`` carrying an ``ErrorKind`` and a stable error code.
Domain exceptions never cross the service boundary.

Usage:
    result = await engine.release_payment(payment_id, actor=actor)
    if result.success:
        payment = result.data
    else:
        print(f"{result.error_kind}: {result.error} ({result.error_code})")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from service_escrow.domain.enums import ErrorKind

if TYPE_CHECKING:
    from service_escrow.domain.exceptions import EscrowError

T = TypeVar("T")


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: str,
        error_kind: ErrorKind = ErrorKind.TECHNICAL_ERROR,
    ) -> ServiceResult[T]:
        return cls(success=False, error=error, error_code=error_code, error_kind=error_kind)

    @classmethod
    def from_error(cls, exc: EscrowError) -> ServiceResult[T]:
        """Convert a domain exception into a failed result."""
        return cls.fail(exc.message, exc.code, exc.kind)

    def to_response(self) -> dict[str, Any]:
        """Error body for API responses."""
        return {"error": self.error_code, "kind": self.error_kind, "message": self.error}
