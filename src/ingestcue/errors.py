"""Exceptions raised by ingestcue."""

from __future__ import annotations


class IngestError(Exception):
    """Base class for ingestcue errors."""


class InvalidInput(IngestError, ValueError):
    """Submitted identifiers are empty, malformed, or out of range."""


class InvalidPriority(IngestError, ValueError):
    """Priority is not one of HIGH, MEDIUM, LOW."""


class NotFound(IngestError, LookupError):
    """No request with the given id exists."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Request not found: {request_id}")
        self.request_id = request_id


class ProcessingError(IngestError):
    """The external processor failed on a unit."""


class ProcessingTimeout(ProcessingError):
    """The external processor did not finish within the work timeout."""
