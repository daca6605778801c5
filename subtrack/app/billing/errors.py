"""Domain errors raised by the billing engine and its collaborators."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import status


@dataclass
class BillingError(Exception):
    """Represents a billing failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation used as the ``error`` member of responses."""

        return self._payload


class ValidationError(BillingError):
    def __init__(
        self,
        message: str,
        *,
        code: str = "VALIDATION_ERROR",
        detail: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(code, message, status.HTTP_400_BAD_REQUEST, detail)


class NotFoundError(BillingError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND") -> None:
        super().__init__(code, message, status.HTTP_404_NOT_FOUND)


class ConflictError(BillingError):
    def __init__(self, message: str, *, code: str = "CONFLICT") -> None:
        super().__init__(code, message, status.HTTP_409_CONFLICT)


class ProcessorError(BillingError):
    """The external payment processor failed or timed out."""

    def __init__(self, message: str, *, code: str = "PROCESSOR_ERROR") -> None:
        super().__init__(code, message, status.HTTP_500_INTERNAL_SERVER_ERROR)


class SignatureError(BillingError):
    """An inbound processor webhook failed signature verification."""

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__("INVALID_SIGNATURE", message, status.HTTP_400_BAD_REQUEST)


__all__ = [
    "BillingError",
    "ConflictError",
    "NotFoundError",
    "ProcessorError",
    "SignatureError",
    "ValidationError",
]
