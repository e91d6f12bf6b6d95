"""Exception types raised by the sync engine."""

from __future__ import annotations

from datetime import datetime


class HealthSyncError(Exception):
    """Base class for all sync engine errors."""


class InvalidInterval(HealthSyncError):
    """Raised when a requested interval starts after it ends.

    Attributes:
        start:   Requested start.
        end:     Requested end.
        context: Name of the operation that rejected the interval.
    """

    def __init__(self, start: datetime, end: datetime, context: str = "") -> None:
        self.start = start
        self.end = end
        self.context = context
        where = f" in {context}" if context else ""
        super().__init__(f"Invalid interval{where}: start {start} is after end {end}")


class SourceQueryFailure(HealthSyncError):
    """Raised when the external sample source fails to answer a query.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, metric: str, message: str) -> None:
        self.metric = metric
        super().__init__(f"Query for '{metric}' failed: {message}")


class MalformedSample(HealthSyncError):
    """Raised when a raw sample lacks the fields needed for normalization."""
