"""Shared model helpers and the action result envelope."""

from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActionError(BaseModel):
    """Error half of an action result."""

    code: str
    category: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ActionResult(BaseModel, Generic[T]):
    """Explicit success/error envelope returned by every hub action."""

    success: bool
    data: Optional[T] = None
    error: Optional[ActionError] = None

    @classmethod
    def ok(cls, data: Any = None) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: str, category: str, message: str, details: Optional[dict[str, Any]] = None) -> "ActionResult":
        return cls(
            success=False,
            error=ActionError(code=code, category=category, message=message, details=details or {}),
        )
