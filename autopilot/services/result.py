from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a policy gate: either a value or a reason with a machine-readable code."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap(self) -> T:
        if not self.ok:
            raise ValueError(f"{self.error_code}: {self.error}")
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def __bool__(self) -> bool:
        return self.ok
