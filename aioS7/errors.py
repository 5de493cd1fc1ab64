"""Custom exceptions for the aioS7 package."""


from typing import Dict, Optional


class S7Error(Exception):
    """Base class for all aioS7 specific exceptions."""

    def __init__(self, message: Optional[str] = None) -> None:  # noqa: D401
        """Initialize the exception with an optional *message*."""
        super().__init__(message)


class S7AddressError(S7Error):
    """Raised when a string address cannot be parsed into an AddressDescriptor."""
    pass


class S7ConnectionError(S7Error):
    """Raised when the connection to the PLC cannot be established or is lost."""
    pass


class S7TimeoutError(S7Error):
    """Raised when the PLC does not answer within the configured window."""
    pass


class S7ProtocolError(S7Error):
    """Raised when a telegram is malformed, truncated or of an unexpected kind."""
    pass


class S7RemoteRejectedError(S7Error):
    """Raised when the PLC answers with a non-success return code."""

    def __init__(
        self,
        message: Optional[str] = None,
        return_code: Optional[int] = None,
        address_missing: bool = False,
    ) -> None:
        super().__init__(message)
        self.return_code = return_code
        self.address_missing = address_missing


class S7ValueError(S7Error):
    """Raised when bytes cannot be interpreted as (or built from) the requested value type."""
    pass


class S7PartialBatchError(S7Error):
    """Raised (or reported) when only some members of a batch operation succeeded."""

    def __init__(self, message: Optional[str] = None, failures: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.failures: Dict[str, str] = dict(failures or {})
