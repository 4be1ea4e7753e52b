"""Document segmentation into idempotent processing units."""

from __future__ import annotations

import logging
import re
from typing import Iterator, List

from .documents import ANNOTATION_CLASS, PROCESSED_ATTRIBUTE, BaseDocument, Node
from .session import ProcessingSession
from .structures import Segment
from .text import fingerprint, is_code_text

logger = logging.getLogger(__name__)

BLOCK_TAGS = frozenset(
    {
        "P", "DIV", "ARTICLE", "SECTION", "LI", "TD", "TH",
        "H1", "H2", "H3", "H4", "H5", "H6", "SPAN", "BLOCKQUOTE",
    }
)
SKIP_TAGS = frozenset(
    {
        "SCRIPT", "STYLE", "NOSCRIPT", "IFRAME", "CODE", "PRE", "KBD",
        "TEXTAREA", "INPUT", "SELECT", "BUTTON",
    }
)
SKIP_CLASSES = (ANNOTATION_CLASS, "vocabweave-tooltip", "hljs", "code", "syntax")

MIN_DIRECT_TEXT = 10
MIN_SEGMENT_LENGTH = 50
MAX_SEGMENT_LENGTH = 2000
DEFAULT_MARGIN = 300

_WHITESPACE = re.compile(r"\s+")


def is_skipped_element(document: BaseDocument, node: Node) -> bool:
    """Elements whose whole subtree stays untouched."""

    if document.tag_name(node) in SKIP_TAGS:
        return True
    classes = document.class_names(node)
    if any(name in classes for name in SKIP_CLASSES):
        return True
    if document.get_attribute(node, PROCESSED_ATTRIBUTE) is not None:
        return True
    return document.is_hidden(node)


def text_leaves(document: BaseDocument, container: Node) -> Iterator[Node]:
    """Text nodes under ``container``, pruning skipped subtrees."""

    for child in document.children(container):
        if document.is_text(child):
            yield child
        elif document.is_element(child) and not is_skipped_element(document, child):
            yield from text_leaves(document, child)


def element_path(document: BaseDocument, node: Node) -> str:
    parts: List[str] = []
    current = node
    while current is not None and document.tag_name(current) != "BODY":
        selector = document.tag_name(current).lower()
        element_id = document.element_id(current)
        if element_id:
            selector += f"#{element_id}"
        parts.append(selector)
        current = document.parent(current)
    return ">".join(reversed(parts))


class Segmenter:
    """Turns a document into text segments worth annotating."""

    def __init__(
        self,
        session: ProcessingSession,
        *,
        min_segment_length: int = MIN_SEGMENT_LENGTH,
        max_segment_length: int = MAX_SEGMENT_LENGTH,
    ) -> None:
        self.session = session
        self.min_segment_length = min_segment_length
        self.max_segment_length = max_segment_length

    def segment(
        self,
        document: BaseDocument,
        *,
        viewport_only: bool = False,
        margin: float = DEFAULT_MARGIN,
    ) -> List[Segment]:
        window_top = float("-inf")
        window_bottom = float("inf")
        if viewport_only:
            viewport = document.viewport
            window_top = viewport.scroll_top - margin
            window_bottom = viewport.scroll_top + viewport.height + margin

        segments: List[Segment] = []
        for container in self.find_containers(document, document.root):
            if viewport_only:
                box = document.bounding_box(container)
                if box is not None and (box.bottom < window_top or box.top > window_bottom):
                    continue

            text = self.extract_text(document, container)
            if len(text) < self.min_segment_length or is_code_text(text):
                continue

            path = element_path(document, container)
            digest = fingerprint(text, path)
            if digest in self.session.processed_fingerprints:
                continue

            segments.append(
                Segment(
                    container=container,
                    text=text[: self.max_segment_length],
                    fingerprint=digest,
                    path=path,
                )
            )

        logger.debug(
            "Segmented %s into %d segments (viewport_only=%s)",
            document.hostname or "document",
            len(segments),
            viewport_only,
        )
        return segments

    def find_containers(self, document: BaseDocument, root: Node) -> List[Node]:
        """Top-most block elements with direct text; matches are not descended."""

        containers: List[Node] = []
        stack = list(reversed(document.children(root)))
        while stack:
            node = stack.pop()
            if not document.is_element(node) or is_skipped_element(document, node):
                continue
            if document.tag_name(node) in BLOCK_TAGS and self._has_direct_text(document, node):
                containers.append(node)
                continue
            stack.extend(reversed(document.children(node)))
        return containers

    def extract_text(self, document: BaseDocument, container: Node) -> str:
        parts = []
        for leaf in text_leaves(document, container):
            value = document.text_of(leaf)
            stripped = value.strip()
            if stripped and not is_code_text(stripped):
                parts.append(value)
        return _WHITESPACE.sub(" ", " ".join(parts)).strip()

    @staticmethod
    def _has_direct_text(document: BaseDocument, node: Node) -> bool:
        return any(
            document.is_text(child) and len(document.text_of(child).strip()) > MIN_DIRECT_TEXT
            for child in document.children(node)
        )
