"""Error definitions for the VocabWeave annotation pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


class ErrorCategory(Enum):
    """Categorises runtime errors recorded during a processing pass."""

    CONFIGURATION = auto()
    PROVIDER = auto()
    DOM_CONSISTENCY = auto()
    FILE_IO = auto()
    FORMAT = auto()
    OTHER = auto()


class VocabWeaveError(Exception):
    """Base exception for all custom errors."""


class ConfigurationError(VocabWeaveError):
    """Raised when settings are invalid or provider credentials are missing."""


class ProviderError(VocabWeaveError):
    """Raised when the vocabulary provider fails or answers unusably."""


class DomConsistencyError(VocabWeaveError):
    """Raised when a text range no longer matches the document."""


class UnsupportedFileTypeError(VocabWeaveError):
    """Raised when a given file extension is not supported."""


class OverwriteRefusedError(VocabWeaveError):
    """Raised when attempting to overwrite an output without consent."""


@dataclass
class ErrorRecord:
    """Stores context for a handled error."""

    category: ErrorCategory
    message: str
    details: Optional[str] = None
