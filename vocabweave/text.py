"""Language detection, tokenisation and fingerprinting helpers."""

from __future__ import annotations

import re
import zlib
from typing import Iterable, List, Sequence

CEFR_LEVELS = ("A1", "A2", "B1", "B2", "C1", "C2")
DEFAULT_DIFFICULTY = "B1"

INTENSITY_LIMITS = {
    "low": 4,
    "medium": 8,
    "high": 14,
}
DEFAULT_INTENSITY_LIMIT = 8

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "need", "dare",
        "ought", "used", "to", "of", "in", "for", "on", "with", "at", "by",
        "from", "as", "into", "through", "during", "before", "after", "above",
        "below", "between", "under", "again", "further", "then", "once",
        "here", "there", "when", "where", "why", "how", "all", "each", "few",
        "more", "most", "other", "some", "such", "no", "nor", "not", "only",
        "own", "same", "so", "than", "too", "very", "just", "and", "but", "if",
        "or", "because", "until", "while", "this", "that", "these", "those",
        "what", "which", "who", "whom", "i", "you", "he", "she", "it", "we",
        "they", "me", "him", "her", "us", "them", "my", "your", "his", "its",
        "our", "their",
    }
)

LATIN_WORD_PATTERN = re.compile(r"\b[a-zA-Z]{3,}\b")
CJK_WORD_PATTERN = re.compile(r"[\u4e00-\u9fff]{2,4}")
SENTENCE_SPLIT_PATTERN = re.compile(r"[.!?]+")

_HAN_PATTERN = re.compile(r"[\u4e00-\u9fff]")
_KANA_PATTERN = re.compile(r"[\u3040-\u309f\u30a0-\u30ff]")
_HANGUL_PATTERN = re.compile(r"[\uac00-\ud7af]")
_LATIN_PATTERN = re.compile(r"[a-zA-Z]")

CODE_PATTERNS = (
    re.compile(r"^(const|let|var|function|class|import|export|return|if|else|for|while)\s"),
    re.compile(r"[{}();]\s*$"),
    re.compile(r"^\s*(//|/\*|\*|#)"),
    re.compile(r"\w+\.\w+\("),
    re.compile(r"console\."),
    re.compile(r"https?://"),
)


def cefr_index(level: str | None) -> int:
    """Position of a CEFR level on the A1..C2 scale (-1 when unknown)."""

    normalized = (level or DEFAULT_DIFFICULTY).strip().upper()
    try:
        return CEFR_LEVELS.index(normalized)
    except ValueError:
        return -1


def is_difficulty_compatible(word_difficulty: str | None, user_difficulty: str) -> bool:
    """Only words at or above the learner's level are surfaced."""

    return cefr_index(word_difficulty) >= cefr_index(user_difficulty)


def max_replacements(intensity: str | None) -> int:
    return INTENSITY_LIMITS.get((intensity or "").strip().lower(), DEFAULT_INTENSITY_LIMIT)


def contains_cjk(text: str) -> bool:
    """Detect whether the text contains CJK characters."""

    for char in text:
        code = ord(char)
        if (
            0x4E00 <= code <= 0x9FFF  # CJK Unified Ideographs
            or 0x3400 <= code <= 0x4DBF  # Extension A
            or 0x3040 <= code <= 0x30FF  # Hiragana/Katakana
            or 0xAC00 <= code <= 0xD7AF  # Hangul syllables
        ):
            return True
    return False


def detect_language(text: str) -> str:
    """Guess the source language from script character ratios."""

    han = len(_HAN_PATTERN.findall(text))
    kana = len(_KANA_PATTERN.findall(text))
    hangul = len(_HANGUL_PATTERN.findall(text))
    latin = len(_LATIN_PATTERN.findall(text))
    total = (han + kana + hangul + latin) or 1

    if kana / total > 0.1:
        return "ja"
    if hangul / total > 0.1:
        return "ko"
    if han / total > 0.3:
        return "zh-CN"
    return "en"


def is_code_text(text: str) -> bool:
    stripped = text.strip()
    return any(pattern.search(stripped) for pattern in CODE_PATTERNS)


def fingerprint(text: str, path: str = "") -> str:
    """Cheap, stable hash of a segment's leading text and structural path."""

    content = text[:100].strip() + path
    return format(zlib.crc32(content.encode("utf-8")), "08x")


def _raw_words(text: str) -> List[str]:
    return LATIN_WORD_PATTERN.findall(text) + CJK_WORD_PATTERN.findall(text)


def tokenize_words(text: str) -> List[str]:
    """Candidate words in first-seen order, deduplicated case-insensitively."""

    seen = set()
    words: List[str] = []
    for word in LATIN_WORD_PATTERN.findall(text):
        lowered = word.lower()
        if lowered in STOP_WORDS or lowered in seen:
            continue
        seen.add(lowered)
        words.append(word)
    for word in CJK_WORD_PATTERN.findall(text):
        if word in seen:
            continue
        seen.add(word)
        words.append(word)
    return words


def reduce_text(text: str, words: Sequence[str]) -> str:
    """Keep only the sentences that mention at least one of ``words``."""

    targets = {word.lower() for word in words}
    sentences = [part for part in SENTENCE_SPLIT_PATTERN.split(text) if part.strip()]
    relevant = [
        sentence
        for sentence in sentences
        if any(word.lower() in targets for word in _raw_words(sentence))
    ]
    if not relevant:
        return ""
    return ". ".join(relevant).strip() + "."


def strip_words(text: str, words: Iterable[str]) -> str:
    """Remove every whole-word occurrence of ``words`` from ``text``."""

    for word in words:
        if not word:
            continue
        text = re.sub(rf"\b{re.escape(word)}\b", "", text, flags=re.IGNORECASE)
    return text
