from dataclasses import dataclass, field
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a best-effort step whose failure is data, not control flow."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    details: dict = field(default_factory=dict)

    @staticmethod
    def success(value: T = None, **details) -> "Result[T]":
        return Result(ok=True, value=value, details=details)

    @staticmethod
    def failure(error: str, code: str = "unknown", **details) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, details=details)

    @staticmethod
    def from_exception(exc: Exception, code: Optional[str] = None) -> "Result[T]":
        return Result(ok=False, error=str(exc) or exc.__class__.__name__, error_code=code or exc.__class__.__name__)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def __bool__(self) -> bool:
        return self.ok
