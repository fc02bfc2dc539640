from typing import Optional


class SyncError(Exception):
    """
    Base class for every failure the sync engine reports.
    """

    def __init__(self, message: str, *, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class AddressNotFound(SyncError):
    """No such tracked address, or the provider has no record of it."""


class RateLimited(SyncError):
    """The provider asked us to slow down."""


class ProviderUnavailable(SyncError):
    """Network error, timeout, bad payload or a non-2xx status other than throttling."""


class UnknownSyncError(SyncError):
    """Wraps any other failure, keeping its message."""

    @classmethod
    def wrap(cls, exc: Exception) -> "UnknownSyncError":
        return cls(str(exc) or type(exc).__name__)


class AddressExists(Exception):
    """Raised when the same address string is added twice."""

    def __init__(self, address: str, existing_id: str):
        super().__init__(f"Address {address} already exists (id={existing_id})")
        self.address = address
        self.existing_id = existing_id
