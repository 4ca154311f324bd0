"""
Custom exception hierarchy for the event uploader.

Per-asset errors (unreadable bytes, hash timeouts, server rejections) are
contained by the orchestrator; only an unrecoverable AuthError ends a run.
"""
from typing import Optional


class EventUploaderError(Exception):
    """Base exception for all event uploader errors."""
    pass


class AuthError(EventUploaderError):
    """Raised when no valid bearer token is available and none can be refreshed."""
    pass


class NetworkError(EventUploaderError):
    """Raised when a request fails below the HTTP layer (timeout, connection reset)."""
    pass


class AssetAccessError(EventUploaderError):
    """Raised when the bytes of a local asset cannot be read."""
    pass


class HashTimeout(EventUploaderError):
    """Raised when fingerprinting an asset exceeds its time budget."""
    pass


class ServerRejection(EventUploaderError):
    """Raised when the server refuses a request with an HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PartialInventoryFailure(EventUploaderError):
    """Inventory paging stopped early; the records gathered so far are still usable."""

    def __init__(self, message: str, pages_fetched: int = 0):
        super().__init__(message)
        self.pages_fetched = pages_fetched


class InvalidTransition(EventUploaderError):
    """Raised when an upload job is moved between states it cannot connect."""
    pass
