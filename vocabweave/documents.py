"""Host document adapters.

The segmenter and the replacement engine only talk to :class:`BaseDocument`;
:class:`HtmlDocument` implements it on top of BeautifulSoup.
"""

from __future__ import annotations

import math
import pathlib
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from bs4.element import NavigableString, PreformattedString, Tag

from .errors import DomConsistencyError, UnsupportedFileTypeError, VocabWeaveError
from .structures import Annotation, Box, Viewport

PROCESSED_ATTRIBUTE = "data-vocabweave-processed"
ANNOTATION_CLASS = "vocabweave-translated"
ANNOTATION_WORD_CLASS = "vocabweave-word"
ANNOTATION_ORIGINAL_CLASS = "vocabweave-original"

HTML_SUFFIXES = {".html", ".htm", ".xhtml"}

_HIDDEN_STYLE_PATTERN = re.compile(
    r"(?:^|;)\s*(?:display\s*:\s*none|visibility\s*:\s*hidden)\s*(?:;|$|!)",
    re.IGNORECASE,
)

Node = Any


class BaseDocument(ABC):
    """Minimal capabilities the pipeline needs from a host document."""

    def __init__(self, *, url: str | None = None, viewport: Viewport | None = None) -> None:
        self.url = url
        self.viewport = viewport or Viewport()

    @property
    def hostname(self) -> str:
        if not self.url:
            return ""
        return urlparse(self.url).hostname or ""

    def scroll_to(self, scroll_top: float) -> None:
        self.viewport.scroll_top = max(0.0, scroll_top)

    def invalidate_layout(self) -> None:
        """Drop cached geometry after the tree changed underneath us."""

    @property
    @abstractmethod
    def root(self) -> Node:
        """The node segmentation starts from."""

    @abstractmethod
    def children(self, node: Node) -> Sequence[Node]:
        """Child nodes in document order."""

    @abstractmethod
    def parent(self, node: Node) -> Optional[Node]:
        """Parent element, or None at the top of the tree."""

    @abstractmethod
    def is_element(self, node: Node) -> bool:
        ...

    @abstractmethod
    def is_text(self, node: Node) -> bool:
        ...

    @abstractmethod
    def tag_name(self, node: Node) -> str:
        """Upper-case tag name of an element."""

    @abstractmethod
    def class_names(self, node: Node) -> str:
        ...

    @abstractmethod
    def element_id(self, node: Node) -> str:
        ...

    @abstractmethod
    def is_hidden(self, node: Node) -> bool:
        """True for elements that are not rendered or are user-editable."""

    @abstractmethod
    def get_attribute(self, node: Node, name: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_attribute(self, node: Node, name: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_attribute(self, node: Node, name: str) -> None:
        ...

    @abstractmethod
    def text_of(self, leaf: Node) -> str:
        """Text of a single text node."""

    @abstractmethod
    def text_content(self, node: Node) -> str:
        """Concatenated text of a subtree."""

    @abstractmethod
    def bounding_box(self, node: Node) -> Optional[Box]:
        """Vertical extent in document coordinates, None when unknown."""

    @abstractmethod
    def replace_text_range(
        self,
        leaf: Node,
        start: int,
        end: int,
        annotation: Annotation,
    ) -> Node:
        """Replace ``leaf[start:end]`` with an annotation unit and return it."""

    @abstractmethod
    def find_annotations(self) -> List[Node]:
        ...

    @abstractmethod
    def annotation_data(self, unit: Node) -> Annotation:
        ...

    @abstractmethod
    def unwrap_annotation(self, unit: Node, text: str) -> None:
        """Replace an annotation unit with literal text."""

    @abstractmethod
    def find_marked(self) -> List[Node]:
        """Elements carrying the processed marker."""

    @abstractmethod
    def normalize(self) -> None:
        """Merge adjacent text nodes."""


LayoutFunction = Callable[[Tag], Optional[Box]]


class FlowLayout:
    """Estimates element geometry from character offsets in reading order.

    Static markup has no rendering engine behind it, so text is assumed to
    flow at ``chars_per_line`` characters per line of ``line_height`` pixels.
    """

    def __init__(self, *, chars_per_line: int = 80, line_height: float = 24.0) -> None:
        self.chars_per_line = max(1, chars_per_line)
        self.line_height = line_height
        self._offsets: Dict[int, int] | None = None

    def invalidate(self) -> None:
        self._offsets = None

    def box(self, soup: BeautifulSoup, element: Tag) -> Optional[Box]:
        if self._offsets is None:
            self._offsets = self._measure(soup)
        first = next((s for s in element.descendants if _is_text_leaf(s)), None)
        if first is None:
            return None
        start = self._offsets.get(id(first))
        if start is None:
            return None
        length = len(element.get_text())
        top = (start // self.chars_per_line) * self.line_height
        lines = max(1, math.ceil(length / self.chars_per_line))
        return Box(top=top, bottom=top + lines * self.line_height)

    @staticmethod
    def _measure(soup: BeautifulSoup) -> Dict[int, int]:
        offsets: Dict[int, int] = {}
        cursor = 0
        for node in soup.descendants:
            if _is_text_leaf(node):
                offsets[id(node)] = cursor
                cursor += len(node)
        return offsets


def _is_text_leaf(node: Any) -> bool:
    return isinstance(node, NavigableString) and not isinstance(node, PreformattedString)


class HtmlDocument(BaseDocument):
    """BeautifulSoup-backed document."""

    def __init__(
        self,
        markup: str,
        *,
        url: str | None = None,
        viewport: Viewport | None = None,
        layout: LayoutFunction | None = None,
    ) -> None:
        super().__init__(url=url, viewport=viewport)
        self.soup = BeautifulSoup(markup, "html.parser")
        self._layout = layout
        self._flow = FlowLayout()

    @classmethod
    def from_path(cls, path: pathlib.Path, **kwargs: Any) -> "HtmlDocument":
        try:
            markup = path.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            markup = path.read_text(encoding="utf-8", errors="ignore")
        except OSError as exc:
            raise VocabWeaveError(f"Could not read {path}: {exc}") from exc
        return cls(markup, **kwargs)

    def serialize(self) -> str:
        return str(self.soup)

    def save(self, destination: pathlib.Path) -> None:
        destination.write_text(self.serialize(), encoding="utf-8")

    # --- Tree queries -----------------------------------------------------

    @property
    def root(self) -> Node:
        return self.soup.body or self.soup

    def children(self, node: Node) -> Sequence[Node]:
        if isinstance(node, Tag):
            return list(node.children)
        return []

    def parent(self, node: Node) -> Optional[Node]:
        parent = node.parent
        if parent is None or parent is self.soup:
            return None
        return parent

    def is_element(self, node: Node) -> bool:
        return isinstance(node, Tag)

    def is_text(self, node: Node) -> bool:
        return _is_text_leaf(node)

    def tag_name(self, node: Node) -> str:
        return (node.name or "").upper()

    def class_names(self, node: Node) -> str:
        classes = node.get("class") or []
        if isinstance(classes, str):
            return classes
        return " ".join(classes)

    def element_id(self, node: Node) -> str:
        value = node.get("id")
        return value if isinstance(value, str) else ""

    def is_hidden(self, node: Node) -> bool:
        if node.has_attr("hidden"):
            return True
        style = node.get("style")
        if isinstance(style, str) and _HIDDEN_STYLE_PATTERN.search(style):
            return True
        editable = node.get("contenteditable")
        if editable is not None and str(editable).lower() != "false":
            return True
        return False

    def get_attribute(self, node: Node, name: str) -> Optional[str]:
        value = node.get(name)
        if value is None:
            return None
        if isinstance(value, list):
            return " ".join(value)
        return str(value)

    def set_attribute(self, node: Node, name: str, value: str) -> None:
        node[name] = value

    def remove_attribute(self, node: Node, name: str) -> None:
        if node.has_attr(name):
            del node[name]

    def text_of(self, leaf: Node) -> str:
        return str(leaf)

    def text_content(self, node: Node) -> str:
        if isinstance(node, Tag):
            return node.get_text()
        return str(node)

    def invalidate_layout(self) -> None:
        self._flow.invalidate()

    def bounding_box(self, node: Node) -> Optional[Box]:
        if self._layout is not None:
            return self._layout(node)
        return self._flow.box(self.soup, node)

    # --- Mutation ---------------------------------------------------------

    def replace_text_range(
        self,
        leaf: Node,
        start: int,
        end: int,
        annotation: Annotation,
    ) -> Node:
        if not _is_text_leaf(leaf) or leaf.parent is None:
            raise DomConsistencyError("Text node is no longer attached to the document.")
        text = str(leaf)
        if start < 0 or end > len(text) or start >= end:
            raise DomConsistencyError(
                f"Invalid range {start}:{end} for a text node of length {len(text)}."
            )

        unit = self._build_annotation(annotation)
        pieces: List[Any] = []
        if text[:start]:
            pieces.append(NavigableString(text[:start]))
        pieces.append(unit)
        if text[end:]:
            pieces.append(NavigableString(text[end:]))
        leaf.replace_with(*pieces)
        self._flow.invalidate()
        return unit

    def find_annotations(self) -> List[Node]:
        return list(self.soup.find_all(class_=ANNOTATION_CLASS))

    def annotation_data(self, unit: Node) -> Annotation:
        return Annotation(
            original=unit.get("data-original", ""),
            translation=unit.get("data-translation", ""),
            phonetic=unit.get("data-phonetic", ""),
            difficulty=unit.get("data-difficulty", ""),
        )

    def unwrap_annotation(self, unit: Node, text: str) -> None:
        if unit.parent is None:
            raise DomConsistencyError("Annotation unit is detached from the document.")
        unit.replace_with(NavigableString(text))
        self._flow.invalidate()

    def find_marked(self) -> List[Node]:
        return list(self.soup.find_all(attrs={PROCESSED_ATTRIBUTE: True}))

    def normalize(self) -> None:
        self.soup.smooth()
        self._flow.invalidate()

    def _build_annotation(self, annotation: Annotation) -> Tag:
        wrapper = self.soup.new_tag(
            "span",
            attrs={
                "class": ANNOTATION_CLASS,
                "data-original": annotation.original,
                "data-translation": annotation.translation,
                "data-phonetic": annotation.phonetic or "",
                "data-difficulty": annotation.difficulty or "B1",
            },
        )
        word = self.soup.new_tag("span", attrs={"class": ANNOTATION_WORD_CLASS})
        word.string = annotation.translation
        original = self.soup.new_tag("span", attrs={"class": ANNOTATION_ORIGINAL_CLASS})
        original.string = f"({annotation.original})"
        wrapper.append(word)
        wrapper.append(original)
        return wrapper


def load_document(path: pathlib.Path, **kwargs: Any) -> HtmlDocument:
    """Open a supported document file."""

    if path.suffix.lower() in HTML_SUFFIXES:
        return HtmlDocument.from_path(path, **kwargs)
    raise UnsupportedFileTypeError(
        "This file type isn't supported. Please use an .html or .htm file."
    )
