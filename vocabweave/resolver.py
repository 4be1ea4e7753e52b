"""Cache-aware vocabulary resolution."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Set

from .cache import make_key
from .configuration import ProcessingConfig
from .errors import ConfigurationError, VocabWeaveError
from .providers import VocabularyProvider
from .session import ProcessingSession
from .storage import StateStore
from .structures import CacheEntry, ReplacementCandidate
from .text import (
    DEFAULT_DIFFICULTY,
    detect_language,
    is_difficulty_compatible,
    reduce_text,
    tokenize_words,
)

logger = logging.getLogger(__name__)

MIN_PROVIDER_TEXT = 50
CACHE_SUFFICIENT = 3


class CacheStrategy(Enum):
    """When cached words alone are good enough to answer."""

    CACHE_FIRST = "cache_first"
    COMPLETE = "complete"


@dataclass
class _CachedWord:
    word: str
    entry: CacheEntry


class VocabularyResolver:
    """Maps segment text to ranked, difficulty-filtered candidates.

    Cached translations are preferred; the provider is only asked about the
    sentences that still contain unknown words.
    """

    def __init__(
        self,
        session: ProcessingSession,
        provider: VocabularyProvider | None = None,
        state: StateStore | None = None,
        *,
        strategy: CacheStrategy = CacheStrategy.CACHE_FIRST,
    ) -> None:
        self.session = session
        self.provider = provider
        self.state = state
        self.strategy = strategy
        self._background: Set[asyncio.Task] = set()

    async def resolve(self, text: str, config: ProcessingConfig) -> List[ReplacementCandidate]:
        source_language = detect_language(text)
        target_language = (
            config.target_language
            if source_language == config.native_language
            else config.native_language
        )
        limit = config.max_replacements
        level = config.difficulty_level

        cached: List[_CachedWord] = []
        uncached: List[str] = []
        for word in tokenize_words(text):
            entry = self.session.cache.get(word, source_language, target_language)
            if entry is not None:
                cached.append(_CachedWord(word=word, entry=entry))
            else:
                uncached.append(word)

        compatible = [item for item in cached if is_difficulty_compatible(item.entry.difficulty, level)]

        if self._cache_is_enough(compatible, uncached, limit):
            results = [self._from_cache(item, text) for item in compatible[:limit]]
            self._record_stats(cache_hits=len(results))
            return results

        reduced = reduce_text(text, uncached)
        if len(reduced.strip()) < MIN_PROVIDER_TEXT:
            results = [self._from_cache(item, text) for item in compatible[:limit]]
            self._record_stats(cache_hits=len(compatible))
            return results

        if self.provider is None:
            raise ConfigurationError("No vocabulary provider is configured.")

        logger.debug(
            "Asking provider about %d uncached words (%s -> %s)",
            len(uncached),
            source_language,
            target_language,
        )
        items = await self.provider.translate(
            reduced,
            source_language=source_language,
            target_language=target_language,
            difficulty=level,
        )

        for item in items:
            self.session.cache.put(
                CacheEntry(
                    key=make_key(item.original, source_language, target_language),
                    translation=item.translation,
                    phonetic=item.phonetic or "",
                    difficulty=item.difficulty or DEFAULT_DIFFICULTY,
                )
            )
        await self._persist_cache()

        lowered_text = text.lower()
        corrected: List[ReplacementCandidate] = []
        for item in items:
            if not is_difficulty_compatible(item.difficulty, level):
                continue
            index = lowered_text.find(item.original.lower())
            corrected.append(
                ReplacementCandidate(
                    original=item.original,
                    translation=item.translation,
                    phonetic=item.phonetic,
                    difficulty=item.difficulty,
                    position=index if index >= 0 else item.position,
                    from_cache=False,
                )
            )
        self._record_stats(new_words=len(corrected), cache_hits=len(cached), cache_misses=1)

        provided = {candidate.original.lower() for candidate in corrected}
        from_cache = [
            self._from_cache(item, text)
            for item in compatible
            if item.word.lower() not in provided
        ]
        return (from_cache + corrected)[:limit]

    async def drain(self) -> None:
        """Wait for pending background stats writes."""

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- Internal helpers -------------------------------------------------

    def _cache_is_enough(
        self,
        compatible: List[_CachedWord],
        uncached: List[str],
        limit: int,
    ) -> bool:
        if not uncached:
            return True
        if self.strategy is CacheStrategy.COMPLETE:
            return False
        return bool(compatible) or len(compatible) >= min(CACHE_SUFFICIENT, limit)

    @staticmethod
    def _from_cache(item: _CachedWord, text: str) -> ReplacementCandidate:
        return ReplacementCandidate(
            original=item.word,
            translation=item.entry.translation,
            phonetic=item.entry.phonetic,
            difficulty=item.entry.difficulty,
            position=text.lower().find(item.word.lower()),
            from_cache=True,
        )

    async def _persist_cache(self) -> None:
        """Write the cache through; a failed write costs persistence, not results."""

        if self.state is None:
            return
        try:
            await self.state.save_cache_records(self.session.cache.records())
        except VocabWeaveError as exc:
            logger.warning("Could not persist the word cache: %s", exc)

    def _record_stats(
        self,
        *,
        new_words: int = 0,
        cache_hits: int = 0,
        cache_misses: int = 0,
    ) -> None:
        """Update rolling stats without holding up the caller."""

        if self.state is None:
            return
        task = asyncio.get_running_loop().create_task(
            self.state.update_stats(
                new_words=new_words,
                cache_hits=cache_hits,
                cache_misses=cache_misses,
            )
        )
        self._background.add(task)
        task.add_done_callback(self._on_stats_done)

    def _on_stats_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Could not update stats: %s", task.exception())
