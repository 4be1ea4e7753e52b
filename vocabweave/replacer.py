"""Reversible in-place word replacement."""

from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from .documents import PROCESSED_ATTRIBUTE, BaseDocument, Node
from .errors import DomConsistencyError
from .segmenter import text_leaves
from .session import ProcessingSession
from .structures import Annotation, ReplacementCandidate
from .text import contains_cjk

logger = logging.getLogger(__name__)

BOUNDARY_CHARACTERS = "\\s.,;:!?\"'()\\[\\]，。、；：“”‘’（）【】"


def boundary_pattern(word: str) -> re.Pattern[str]:
    """Case-insensitive pattern matching ``word`` only as a whole token."""

    return re.compile(
        rf"(?:^|(?<=[{BOUNDARY_CHARACTERS}])){re.escape(word)}(?=[{BOUNDARY_CHARACTERS}]|$)",
        re.IGNORECASE,
    )


def find_word(text: str, word: str) -> int:
    """Start offset of ``word`` as a whole token in ``text``, or -1."""

    match = boundary_pattern(word).search(text)
    if match:
        return match.start()
    if contains_cjk(word):
        # CJK text has no spaces between words.
        return text.find(word)
    return -1


class ReplacementEngine:
    """Applies and undoes annotations on document containers."""

    def __init__(self, document: BaseDocument, session: ProcessingSession) -> None:
        self.document = document
        self.session = session

    def apply(self, container: Node, candidates: Sequence[ReplacementCandidate]) -> int:
        """Annotate ``candidates`` inside ``container``; returns how many landed."""

        if container is None or not candidates:
            return 0

        count = 0
        ordered = sorted(candidates, key=lambda candidate: candidate.position, reverse=True)
        for candidate in ordered:
            if not candidate.original:
                continue
            if self._apply_one(container, candidate):
                count += 1

        if count > 0:
            self.document.set_attribute(container, PROCESSED_ATTRIBUTE, "true")
        return count

    def _apply_one(self, container: Node, candidate: ReplacementCandidate) -> bool:
        original = candidate.original
        for leaf in list(text_leaves(self.document, container)):
            text = self.document.text_of(leaf)
            start = find_word(text, original)
            if start < 0:
                continue
            end = start + len(original)
            matched = text[start:end]
            if matched.lower() != original.lower():
                continue
            try:
                self.document.replace_text_range(
                    leaf,
                    start,
                    end,
                    Annotation(
                        original=matched,
                        translation=candidate.translation,
                        phonetic=candidate.phonetic,
                        difficulty=candidate.difficulty,
                    ),
                )
            except DomConsistencyError as exc:
                logger.warning("Skipping replacement of '%s': %s", original, exc)
                continue
            except Exception:
                logger.exception("Replacing '%s' failed; leaving it untouched", original)
                return False
            return True
        return False

    def restore_one(self, unit: Node) -> Optional[str]:
        """Turn a single annotation unit back into its original text."""

        original = self.document.annotation_data(unit).original
        try:
            self.document.unwrap_annotation(unit, original)
        except DomConsistencyError as exc:
            logger.warning("Could not restore annotation '%s': %s", original, exc)
            return None
        return original

    def restore_all(self) -> int:
        """Undo every annotation in the document and forget processed state."""

        restored = 0
        for unit in self.document.find_annotations():
            if self.restore_one(unit) is not None:
                restored += 1
        for element in self.document.find_marked():
            self.document.remove_attribute(element, PROCESSED_ATTRIBUTE)
        self.document.normalize()
        self.session.processed_fingerprints.clear()
        logger.info("Restored %d annotated words", restored)
        return restored
