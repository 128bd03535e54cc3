"""Service call outcomes, rendered by the API layer into the response envelope."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ServiceResult:
    success: bool
    code: str
    message: str
    status_code: int = 200
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, code: str, message: str, **data: Any) -> "ServiceResult":
        return cls(success=True, code=code, message=message, status_code=200, data=data)

    @classmethod
    def error(cls, code: str, message: str, status_code: int, **data: Any) -> "ServiceResult":
        return cls(success=False, code=code, message=message, status_code=status_code, data=data)


BILLING_PROVIDER_MESSAGE = "The billing provider could not complete the request. Please try again."
