"""Core data structures for the VocabWeave pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


@dataclass
class Segment:
    """A block of qualifying document text and the container it came from."""

    container: Any
    text: str
    fingerprint: str
    path: str


@dataclass
class CacheEntry:
    """A cached word translation keyed by ``word:source:target``."""

    key: str
    translation: str
    phonetic: str = ""
    difficulty: str = "B1"


@dataclass
class ReplacementCandidate:
    """A proposed word-level translation awaiting application."""

    original: str
    translation: str
    phonetic: str = ""
    difficulty: str = "B1"
    position: int = 0
    from_cache: bool = False


@dataclass(frozen=True)
class Annotation:
    """The data carried by an annotation unit in the document."""

    original: str
    translation: str
    phonetic: str = ""
    difficulty: str = "B1"


@dataclass
class Viewport:
    scroll_top: float = 0.0
    height: float = 900.0


@dataclass(frozen=True)
class Box:
    """Vertical extent of a node in document coordinates."""

    top: float
    bottom: float


class PassOutcome(Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    DISABLED = "disabled"
    BLACKLISTED = "blacklisted"
    FAILED = "failed"


@dataclass
class PassSummary:
    """Report returned after a processing pass."""

    outcome: PassOutcome
    processed: int = 0
    errors: int = 0
    segments: int = 0
    elapsed_seconds: float = 0.0
    error_messages: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Shape the summary as the result object handed to collaborators."""

        result: Dict[str, Any] = {"processed": self.processed, "errors": self.errors}
        if self.outcome is PassOutcome.FAILED:
            result["error"] = "; ".join(self.error_messages)
        elif self.outcome is not PassOutcome.COMPLETED:
            result[self.outcome.value] = True
        return result
