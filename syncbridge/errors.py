"""Exception types and the single failure-classification policy point."""

import json
from enum import Enum

import requests


class ErrorKind(str, Enum):
    TRANSIENT = "transient"  # network error, remote 5xx/429, timeout: retry with backoff
    PERMANENT = "permanent"  # validation, malformed payload, access denied: fail now


class SyncError(Exception):
    """Base class for errors raised by the sync engine and its adapters."""

    kind = ErrorKind.TRANSIENT


class TransientError(SyncError):
    """A failure that is expected to go away on its own."""

    kind = ErrorKind.TRANSIENT


class PermanentError(SyncError):
    """A failure that will recur unchanged on every retry."""

    kind = ErrorKind.PERMANENT


class InvalidJobError(PermanentError):
    """Job fields are missing or out of range."""


class PayloadTooLargeError(InvalidJobError):
    """Serialized payload exceeds the configured size cap."""

    def __init__(self, size, limit):
        super().__init__(f"Payload is {size} bytes, limit is {limit} bytes")
        self.size = size
        self.limit = limit


class UnknownModuleError(PermanentError):
    """The job's module is disabled or no longer registered."""

    def __init__(self, module):
        super().__init__(f'Module "{module}" not found or not registered.')
        self.module = module


class IdentityConflictError(PermanentError):
    """The remote id is already mapped to a different local record."""


class SyncLockError(RuntimeError):
    """Raised when a run lock is already held by another worker."""


TRANSIENT_HTTP_STATUSES = frozenset({408, 425, 429})


def classify_http_status(status_code):
    """Map an HTTP status code to an ErrorKind."""
    if status_code is None:
        return ErrorKind.TRANSIENT
    if status_code in TRANSIENT_HTTP_STATUSES or status_code >= 500:
        return ErrorKind.TRANSIENT
    if 400 <= status_code < 500:
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


def classify_exception(exc):
    """
    Classify an exception raised while processing a job.

    Unrecognized exceptions are treated as transient so that a network
    blip surfaced through an unexpected type still gets its retry budget.
    """
    if isinstance(exc, SyncError):
        return exc.kind

    if isinstance(exc, requests.exceptions.HTTPError):
        response = getattr(exc, "response", None)
        return classify_http_status(response.status_code if response is not None else None)

    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return ErrorKind.TRANSIENT

    if isinstance(exc, (json.JSONDecodeError, ValueError, TypeError, KeyError, PermissionError)):
        return ErrorKind.PERMANENT

    return ErrorKind.TRANSIENT
