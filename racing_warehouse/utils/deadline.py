"""
Caller-supplied deadlines for long-running warehouse work.

A ``Deadline`` is checked between ingestion steps and, through
``SQLiteWarehouse.bounded_by()``, from inside long-running SQL statements via
SQLite's progress handler. Expiry raises ``IngestionTimeoutError``.
"""

from __future__ import annotations

import time
from typing import Optional

from racing_warehouse.errors import IngestionTimeoutError


class Deadline:
    """A monotonic-clock deadline; ``None`` seconds means unbounded."""

    def __init__(self, seconds: Optional[float] = None) -> None:
        if seconds is not None and seconds <= 0:
            raise ValueError(f"Deadline seconds must be > 0, got {seconds}.")
        self.seconds = seconds
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    @property
    def bounded(self) -> bool:
        return self._expires_at is not None

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self) -> Optional[float]:
        """Seconds left before expiry (never negative), or ``None`` if unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def check(self, step: str) -> None:
        """Raise ``IngestionTimeoutError`` if the deadline has passed.

        Args:
            step: Name of the step about to start, included in the error.
        """
        if self.expired:
            raise IngestionTimeoutError(
                f"Deadline of {self.seconds}s exceeded before step '{step}'."
            )
