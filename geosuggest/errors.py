"""
Exception taxonomy for index building, persistence and update checks.

"Not found" is never an exception: lookups return None or an empty list.
"""

from __future__ import annotations

from typing import Optional


class GeosuggestError(Exception):
    """Base class for all engine errors."""


class ParseError(GeosuggestError):
    """A single malformed source row. Non-fatal; the caller decides."""

    def __init__(self, line_no: int, reason: str, line: str = ""):
        self.line_no = line_no
        self.reason = reason
        self.line = line
        super().__init__(f"line {line_no}: {reason}")


class SourceFatalError(GeosuggestError):
    """The primary cities source is missing, empty or unparseable as a whole."""


class DeserializationError(GeosuggestError):
    """A persisted index artifact is corrupt, truncated or of another format."""


class UpdateCheckError(GeosuggestError):
    """A source descriptor could not be retrieved. Neither fresh nor stale."""

    def __init__(self, source: str, reason: str, url: Optional[str] = None):
        self.source = source
        self.url = url
        super().__init__(f"update check failed for {source}: {reason}")
