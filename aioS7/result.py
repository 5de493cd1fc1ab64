from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import S7Error


@dataclass
class OperationResult:
    """Outcome of a public client operation.

    Client coroutines never raise for PLC side or connection failures; they
    report them here. ``errors`` maps addresses to failure messages for
    batch operations.
    """

    is_success: bool
    message: str = ""
    value: Any = None
    error: Optional[S7Error] = None
    errors: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def success(cls, value: Any = None, message: str = "OK") -> "OperationResult":
        return cls(is_success=True, message=message, value=value)

    @classmethod
    def failure(
        cls,
        error: S7Error,
        value: Any = None,
        errors: Optional[Dict[str, str]] = None,
    ) -> "OperationResult":
        return cls(
            is_success=False,
            message=str(error),
            value=value,
            error=error,
            errors=dict(errors or {}),
        )

    def __bool__(self) -> bool:
        return self.is_success
