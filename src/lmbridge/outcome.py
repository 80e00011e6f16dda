"""Per-session outcome accounting used for telemetry and response metadata."""

from __future__ import annotations

from enum import Enum
from typing import Any

from lmbridge.errors import NormalizedError


class SessionStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ChatOutcomeTracker:
    """Accumulates status, chunk count and output size for one chat session.

    ``chunks`` and ``output_chars`` stay ``None`` until something is recorded
    so a buffered session reports ``outputChars`` without a ``chunks`` field.
    Once ``finalize()`` ran the outcome is frozen; later transitions are ignored.
    """

    __slots__ = ("status", "chunks", "output_chars", "error", "_final")

    def __init__(self) -> None:
        self.status: SessionStatus = SessionStatus.COMPLETED
        self.chunks: int | None = None
        self.output_chars: int | None = None
        self.error: NormalizedError | None = None
        self._final = False

    @property
    def is_final(self) -> bool:
        return self._final

    def record_chunk(self, text: str) -> None:
        if self._final:
            return
        self.chunks = (self.chunks or 0) + 1
        self.output_chars = (self.output_chars or 0) + len(text)

    def record_output(self, text: str) -> None:
        if self._final:
            return
        self.output_chars = len(text)

    def complete(self) -> None:
        self._set(SessionStatus.COMPLETED)

    def cancel(self) -> None:
        self._set(SessionStatus.CANCELLED)

    def fail(self, error: NormalizedError | None = None) -> None:
        if self._final:
            return
        self.status = SessionStatus.FAILED
        self.error = error

    def _set(self, status: SessionStatus) -> None:
        if not self._final:
            self.status = status

    def finalize(self) -> bool:
        """Freeze the outcome. Returns False if it was already final."""
        if self._final:
            return False
        self._final = True
        return True

    def to_fields(self) -> dict[str, Any]:
        """Telemetry fields; optional ones only when present."""
        fields: dict[str, Any] = {"status": self.status.value}
        if self.output_chars is not None:
            fields["outputChars"] = self.output_chars
        if self.chunks is not None:
            fields["chunks"] = self.chunks
        if self.error is not None:
            fields["errorStatus"] = self.error.status_code
            fields["errorMessage"] = self.error.message
        return fields
