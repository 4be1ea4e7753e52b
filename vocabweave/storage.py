"""JSON-file persistence for learner state, rolling stats and the word cache."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Sequence

from .errors import VocabWeaveError

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
CACHE_FILENAME = "word_cache.json"

DEFAULT_STATS = {
    "total_words": 0,
    "today_words": 0,
    "last_reset_date": None,
    "cache_hits": 0,
    "cache_misses": 0,
}


def default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "vocabweave"


class StateStore:
    """Stores learned words, the memorize list, stats and cached words.

    File access runs off the event loop; read-modify-write cycles on the
    state file are serialised by a lock.
    """

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = Path(data_dir) if data_dir else default_data_dir()
        self.state_path = self.data_dir / STATE_FILENAME
        self.cache_path = self.data_dir / CACHE_FILENAME
        self._lock = asyncio.Lock()
        self._cache_lock = asyncio.Lock()

    # --- Learner lists ----------------------------------------------------

    async def learned_words(self) -> List[Dict[str, Any]]:
        state = await self._read_state()
        return list(state.get("learned_words", []))

    async def add_learned_word(self, original: str, translation: str) -> bool:
        """Add a word to the learned list; returns False if already present."""

        async with self._lock:
            state = await self._read_state()
            learned = state.setdefault("learned_words", [])
            if any(
                item.get("original") == original
                or (translation and item.get("word") == translation)
                for item in learned
            ):
                return False
            learned.append(
                {"original": original, "word": translation, "added_at": int(time.time() * 1000)}
            )
            await self._write_state(state)
        logger.info("Marked '%s' as learned", original)
        return True

    async def memorize_list(self) -> List[Dict[str, Any]]:
        state = await self._read_state()
        return list(state.get("memorize_list", []))

    async def add_to_memorize(self, word: str) -> bool:
        async with self._lock:
            state = await self._read_state()
            items = state.setdefault("memorize_list", [])
            if any(item.get("word") == word for item in items):
                return False
            items.append({"word": word, "added_at": int(time.time() * 1000)})
            await self._write_state(state)
        return True

    # --- Rolling stats ----------------------------------------------------

    async def stats(self) -> Dict[str, Any]:
        state = await self._read_state()
        return {**DEFAULT_STATS, **state.get("stats", {})}

    async def update_stats(
        self,
        *,
        new_words: int = 0,
        cache_hits: int = 0,
        cache_misses: int = 0,
        today: date | None = None,
    ) -> Dict[str, Any]:
        """Accumulate counters, resetting the daily count on a new day."""

        current_day = (today or date.today()).isoformat()
        async with self._lock:
            state = await self._read_state()
            stats = {**DEFAULT_STATS, **state.get("stats", {})}
            if stats["last_reset_date"] != current_day:
                stats["today_words"] = 0
                stats["last_reset_date"] = current_day
            stats["total_words"] += new_words
            stats["today_words"] += new_words
            stats["cache_hits"] += cache_hits
            stats["cache_misses"] += cache_misses
            state["stats"] = stats
            await self._write_state(state)
        return stats

    # --- Word cache -------------------------------------------------------

    async def load_cache_records(self) -> List[Dict[str, Any]]:
        data = await asyncio.to_thread(_read_json, self.cache_path, [])
        if not isinstance(data, list):
            logger.warning("Ignoring malformed word cache at %s", self.cache_path)
            return []
        return [item for item in data if isinstance(item, dict)]

    async def save_cache_records(self, records: Sequence[Dict[str, Any]]) -> None:
        """Replace the persisted word cache; concurrent saves are applied in call order."""

        snapshot = list(records)
        async with self._cache_lock:
            await asyncio.to_thread(_write_json, self.cache_path, snapshot)

    # --- Internal helpers -------------------------------------------------

    async def _read_state(self) -> Dict[str, Any]:
        data = await asyncio.to_thread(_read_json, self.state_path, {})
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed state file at %s", self.state_path)
            return {}
        return data

    async def _write_state(self, state: Dict[str, Any]) -> None:
        await asyncio.to_thread(_write_json, self.state_path, state)


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        logger.warning("Could not parse %s: %s", path, exc)
        return default
    except OSError as exc:
        raise VocabWeaveError(f"Could not read {path}: {exc}") from exc


def _write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` through a uniquely named sibling file, then swap it in."""

    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            tmp_name = handle.name
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise VocabWeaveError(f"Could not write {path}: {exc}") from exc
