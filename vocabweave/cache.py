"""Bounded vocabulary cache keyed by word and language pair."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .structures import CacheEntry

logger = logging.getLogger(__name__)

CACHE_MAX_SIZE = 2000


def make_key(word: str, source_language: str, target_language: str) -> str:
    return f"{word.lower()}:{source_language}:{target_language}"


class VocabularyCache:
    """Insertion-ordered word cache with FIFO eviction.

    Eviction removes the earliest-inserted key. Looking a word up does not
    refresh its position, and re-inserting an existing key updates its value
    in place.
    """

    def __init__(self, max_size: int = CACHE_MAX_SIZE) -> None:
        self.max_size = max(1, max_size)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(
        self,
        word: str,
        source_language: str,
        target_language: str,
    ) -> Optional[CacheEntry]:
        return self._entries.get(make_key(word, source_language, target_language))

    def put(self, entry: CacheEntry) -> None:
        """Store an entry, evicting the oldest keys beyond the cap."""

        self._entries[entry.key] = entry
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cached word %s", evicted)

    def keys(self) -> List[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def records(self) -> List[Dict[str, Any]]:
        """Serialise entries, oldest first, for persistence."""

        return [
            {
                "key": entry.key,
                "translation": entry.translation,
                "phonetic": entry.phonetic,
                "difficulty": entry.difficulty,
            }
            for entry in self._entries.values()
        ]

    def load(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Reconstitute entries from persisted records, returning the count kept."""

        loaded = 0
        for record in records:
            key = record.get("key")
            translation = record.get("translation")
            if not isinstance(key, str) or not isinstance(translation, str):
                continue
            self.put(
                CacheEntry(
                    key=key,
                    translation=translation,
                    phonetic=str(record.get("phonetic") or ""),
                    difficulty=str(record.get("difficulty") or "B1"),
                )
            )
            loaded += 1
        return min(loaded, len(self._entries))
