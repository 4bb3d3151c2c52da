from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from kommo_bridge.services.errors import BridgeError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a step that may lose a race or run out of options.

    ``error_code`` is the machine-readable reason the pipeline reports back (``busy``,
    ``no_target``, ``delivery_failed``...).
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, code: str = "unknown") -> "Result[T]":
        return cls(ok=False, error=error, error_code=code)

    @classmethod
    def from_error(cls, exc: BridgeError) -> "Result[T]":
        return cls(ok=False, error=str(exc), error_code=exc.code)

    def failed_with(self, *codes: str) -> bool:
        return not self.ok and self.error_code in codes

    def __bool__(self) -> bool:
        return self.ok
