from __future__ import annotations

from pathlib import Path
from typing import Optional


class LumieError(Exception):
    """Base class for chatbot errors."""


class InvalidInputError(LumieError):
    """Raised when a chat message is missing, empty, or not a string."""

    def __init__(self, message: str = "Please send a non-empty text message.") -> None:
        super().__init__(message)
        self.message = message


class CorpusLoadError(LumieError):
    """Raised when training data cannot be read or validated. Fatal at startup."""

    def __init__(self, reason: str, path: Optional[Path] = None) -> None:
        location = f"{path}: " if path else ""
        super().__init__(f"{location}{reason}")
        self.path = path
        self.reason = reason
