from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of an operation whose failure is expected and non-fatal.

    ``skipped`` results are successful no-ops (bot disabled, superseded by a newer
    message, duplicate event) and carry the reason in ``reason``.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def skipped(reason: str) -> "Result[T]":
        return Result(ok=True, reason=reason)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @property
    def is_skipped(self) -> bool:
        return self.ok and self.reason is not None

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok and self.value is not None else default
