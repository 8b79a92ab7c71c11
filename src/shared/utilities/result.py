"""
Typed success/failure record.

Services and fix functions return a ``Result`` instead of raising for
expected failures. Callers branch on ``ok`` and read either ``value`` or
``error``.

Usage:
    from shared.utilities.result import Result

    def do_work() -> Result[str]:
        if problem:
            return Result.failure("Entity Customer not found")
        return Result.success("done", message="Applied 1 fix")
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of an operation that may fail without raising."""
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: Optional[T] = None, message: str = "", **details: Any) -> "Result[T]":
        return cls(ok=True, value=value, message=message, details=dict(details))

    @classmethod
    def failure(cls, error: str, **details: Any) -> "Result[T]":
        return cls(ok=False, error=error, message=error, details=dict(details))

    def unwrap(self) -> T:
        """Return the value or raise ValueError when the result is a failure."""
        if not self.ok:
            raise ValueError(self.error or "Result is a failure")
        return self.value  # type: ignore[return-value]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.ok}
        if self.message:
            result["message"] = self.message
        if self.error:
            result["error"] = self.error
        if self.details:
            result.update(self.details)
        return result
