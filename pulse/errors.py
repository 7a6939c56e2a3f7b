"""Error taxonomy shared by the store, the scoring engine and the API layer."""
from __future__ import annotations


class PulseError(Exception):
    """Base class for recoverable Pulse errors."""


class NotFoundError(PulseError):
    """A referenced project or other entity does not exist."""

    def __init__(self, label: str, entity_id: object):
        super().__init__(f"{label} {entity_id} not found")
        self.label = label
        self.entity_id = entity_id


class ValidationError(PulseError):
    """A numeric signal is malformed or outside its expected scale."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class UpstreamError(PulseError):
    """The signal store could not be reached or failed mid-operation."""
