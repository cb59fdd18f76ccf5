"""Error types raised by the queue and the transient/permanent classifier."""

from typing import Optional

# Remote 400 responses that are really lock contention inside the remote system
TRANSIENT_BAD_REQUEST_MARKERS = (
    "deadlock found when trying to get lock",
    "serialization failure: 1213",
    "could not save source item",
    "couldn't be saved",
    "could not be saved",
)

TRANSIENT_STATUSES = (408, 429)


class OrderCtlError(Exception):
    pass


class PermanentJobError(OrderCtlError):
    """The job can never succeed as queued (bad payload, missing order, unknown type)."""


class RemoteAPIError(OrderCtlError):
    """A call to the remote order system failed.

    ``status`` is the HTTP status of the response, or None when no response
    was received at all (connection refused, DNS failure, read timeout).
    """

    def __init__(self, message: str, status: Optional[int] = None, method: str = "", url: str = ""):
        super().__init__(message)
        self.message = message
        self.status = status
        self.method = method
        self.url = url

    def __str__(self):
        where = f"{self.method} {self.url}".strip()
        status = "no response" if self.status is None else str(self.status)
        prefix = f"{where} -> {status}" if where else status
        return f"{prefix}: {self.message}"


def is_transient(error: BaseException) -> bool:
    """Decide whether a failed job is worth retrying."""
    if not isinstance(error, RemoteAPIError):
        return False

    status = error.status
    if status is None:
        return True
    if status in TRANSIENT_STATUSES:
        return True
    if status >= 500:
        return True
    if status == 400:
        message = (error.message or "").lower()
        return any(marker in message for marker in TRANSIENT_BAD_REQUEST_MARKERS)
    return False
