"""Process-wide processing state shared by the pipeline components."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Set

from .cache import VocabularyCache
from .storage import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ProcessingSession:
    """Busy flag, processed fingerprints and the word cache.

    One instance lives for the lifetime of a document and is handed to every
    component explicitly.
    """

    cache: VocabularyCache = field(default_factory=VocabularyCache)
    processed_fingerprints: Set[str] = field(default_factory=set)
    is_processing: bool = False

    def try_begin(self) -> bool:
        """Claim the busy flag; False when a pass is already running."""

        if self.is_processing:
            return False
        self.is_processing = True
        return True

    def end(self) -> None:
        self.is_processing = False

    def reset(self) -> None:
        """Forget processed segments and release the busy flag."""

        self.processed_fingerprints.clear()
        self.is_processing = False

    async def load(self, state: StateStore) -> int:
        """Fill the cache from persisted records."""

        records = await state.load_cache_records()
        loaded = self.cache.load(records)
        logger.info("Loaded %d cached words", loaded)
        return loaded
