"""High-level orchestration of annotation passes."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

from .configuration import ConfigStore, ProcessingConfig
from .documents import BaseDocument, Node
from .errors import ConfigurationError, ErrorCategory, ProviderError, VocabWeaveError
from .policy import ErrorPolicy
from .providers import VocabularyProvider, build_provider
from .replacer import ReplacementEngine
from .resolver import CacheStrategy, VocabularyResolver
from .segmenter import DEFAULT_MARGIN, Segmenter
from .session import ProcessingSession
from .storage import StateStore
from .structures import PassOutcome, PassSummary, ReplacementCandidate, Segment
from .text import strip_words
from .triggers import Debouncer

logger = logging.getLogger(__name__)

MIN_SIGNAL_LENGTH = 30
MIN_MUTATION_TEXT = 50
MIN_SELECTION_LENGTH = 1
MAX_SELECTION_LENGTH = 50
REPROCESS_KEYS = frozenset({"difficulty_level", "intensity"})

ProviderFactory = Callable[..., VocabularyProvider]


def is_memorizable(word: str) -> bool:
    """Selections worth saving are longer than one and shorter than 50 characters."""

    return MIN_SELECTION_LENGTH < len(word.strip()) < MAX_SELECTION_LENGTH


class Orchestrator:
    """Coordinates segmentation, resolution and replacement for one document.

    At most one pass runs at a time; a call made while a pass is in flight
    returns a ``skipped`` summary without touching the document.
    """

    def __init__(
        self,
        document: BaseDocument,
        config_store: ConfigStore,
        state: StateStore,
        session: ProcessingSession | None = None,
        *,
        provider_factory: ProviderFactory = build_provider,
        concurrency: int = 3,
        viewport_margin: float = DEFAULT_MARGIN,
        scroll_delay: float = 0.5,
        mutation_delay: float = 1.0,
        startup_delay: float = 1.0,
        provider_debug: bool = False,
    ) -> None:
        self.document = document
        self.config_store = config_store
        self.state = state
        self.session = session or ProcessingSession()
        self.provider_factory = provider_factory
        self.concurrency = max(1, concurrency)
        self.viewport_margin = viewport_margin
        self.provider_debug = provider_debug

        self.segmenter = Segmenter(self.session)
        self.replacer = ReplacementEngine(document, self.session)
        self.resolver = VocabularyResolver(self.session, state=state)
        self.config: ProcessingConfig | None = None

        self._provider: VocabularyProvider | None = None
        self._provider_key: Tuple[Any, ...] | None = None
        self._scroll = Debouncer(scroll_delay, self._on_scroll, name="scroll trigger")
        self._mutation = Debouncer(mutation_delay, self._on_mutation, name="mutation trigger")
        self._startup = Debouncer(startup_delay, self.process_page, name="startup trigger")

    # --- Lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Load config and the persisted cache; arm auto-processing if set up."""

        self.config = await self.config_store.read()
        await self.session.load(self.state)
        if self.config.auto_process and self.config.enabled and self.config.has_credentials:
            logger.info("Auto-processing enabled, starting shortly")
            self._startup.trigger()
        else:
            logger.info("Auto-processing disabled or provider not configured")

    async def destroy(self) -> None:
        for debouncer in (self._scroll, self._mutation, self._startup):
            debouncer.cancel()
        self.restore_page()
        await self.resolver.drain()

    # --- Commands ---------------------------------------------------------

    async def process_page(self, viewport_only: bool = False) -> PassSummary:
        if not self.session.try_begin():
            logger.info("A pass is already running; skipping")
            return PassSummary(outcome=PassOutcome.SKIPPED)

        start_time = time.time()
        policy = ErrorPolicy()
        try:
            try:
                config = await self.config_store.read()
            except ConfigurationError as exc:
                policy.handle_error(ErrorCategory.CONFIGURATION, str(exc))
                return self._summary(PassOutcome.FAILED, policy, start_time)
            self.config = config

            if not config.enabled:
                return PassSummary(outcome=PassOutcome.DISABLED)
            hostname = self.document.hostname
            if config.is_blacklisted(hostname):
                logger.info("Site is blacklisted: %s", hostname)
                return PassSummary(outcome=PassOutcome.BLACKLISTED)

            try:
                self.resolver.provider = self._provider_for(config)
            except ConfigurationError as exc:
                policy.handle_error(ErrorCategory.CONFIGURATION, str(exc))
                return self._summary(PassOutcome.FAILED, policy, start_time)
            self.resolver.strategy = CacheStrategy(config.cache_strategy)

            segments = self.segmenter.segment(
                self.document,
                viewport_only=viewport_only,
                margin=self.viewport_margin,
            )
            work = self._prefilter(segments, config)
            logger.info("Found %d segments to process", len(work))

            processed = 0
            for index in range(0, len(work), self.concurrency):
                batch = work[index : index + self.concurrency]
                results = await asyncio.gather(
                    *(self.resolver.resolve(text, config) for _, text in batch),
                    return_exceptions=True,
                )
                for (segment, _), result in zip(batch, results):
                    processed += self._apply_result(segment, result, config, policy)

            summary = self._summary(
                PassOutcome.COMPLETED,
                policy,
                start_time,
                processed=processed,
                segments=len(work),
            )
            logger.info(
                "Processing complete: %d words replaced, %d errors",
                summary.processed,
                summary.errors,
            )
            return summary
        finally:
            self.session.end()

    async def process_viewport(self) -> PassSummary:
        return await self.process_page(viewport_only=True)

    def restore_page(self) -> int:
        """Undo every annotation and forget which segments were processed."""

        return self.replacer.restore_all()

    def get_status(self) -> Dict[str, Any]:
        return {
            "processed_count": len(self.session.processed_fingerprints),
            "is_processing": self.session.is_processing,
            "enabled": self.config.enabled if self.config is not None else None,
        }

    async def handle_command(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        """Dispatch a collaborator command; failures come back as ``error``."""

        action = message.get("action")
        try:
            if action == "process_page":
                summary = await self.process_page()
                return summary.to_dict()
            if action == "restore_page":
                restored = self.restore_page()
                return {"success": True, "restored": restored}
            if action == "get_status":
                return self.get_status()
        except Exception as exc:
            logger.exception("Command %s failed", action)
            return {"success": False, "error": str(exc)}
        return {"success": False, "error": f"Unknown action '{action}'."}

    # --- Learner actions --------------------------------------------------

    async def mark_learned(self, unit: Node) -> bool:
        """Remember an annotated word as known and put the original back."""

        data = self.document.annotation_data(unit)
        added = await self.state.add_learned_word(data.original, data.translation)
        if self.replacer.restore_one(unit) is not None:
            self.document.normalize()
        return added

    async def add_to_memorize(self, word: str) -> bool:
        if not is_memorizable(word):
            return False
        return await self.state.add_to_memorize(word.strip())

    # --- Triggers ---------------------------------------------------------

    def notify_scroll(self, scroll_top: float | None = None) -> None:
        if scroll_top is not None:
            self.document.scroll_to(scroll_top)
        self._scroll.trigger()

    def notify_mutation(self, nodes: Iterable[Node]) -> None:
        """Called with the nodes added to the document since the last call."""

        self.document.invalidate_layout()
        if any(self._carries_text(node) for node in nodes):
            self._mutation.trigger()

    async def on_config_changed(self, keys: Iterable[str]) -> PassSummary | None:
        changed = set(keys)
        self.config = await self.config_store.read()
        if "enabled" in changed and not self.config.enabled:
            self.restore_page()
        if changed & REPROCESS_KEYS:
            self.restore_page()
            if self.config.enabled:
                return await self.process_page()
        return None

    async def _on_scroll(self) -> PassSummary | None:
        if not self._auto_enabled():
            return None
        return await self.process_viewport()

    async def _on_mutation(self) -> PassSummary | None:
        if not self._auto_enabled():
            return None
        return await self.process_viewport()

    def _auto_enabled(self) -> bool:
        return self.config is not None and self.config.auto_process and self.config.enabled

    def _carries_text(self, node: Node) -> bool:
        if not self.document.is_element(node):
            return False
        return len(self.document.text_content(node).strip()) > MIN_MUTATION_TEXT

    # --- Internal helpers -------------------------------------------------

    def _provider_for(self, config: ProcessingConfig) -> VocabularyProvider:
        key = (
            config.llm_provider,
            config.api_key,
            config.api_base_url,
            config.model_name,
            config.azure_api_key,
            config.azure_endpoint,
            config.azure_api_version,
            config.azure_deployment,
        )
        if self._provider is None or key != self._provider_key:
            self._provider = self.provider_factory(config, debug=self.provider_debug)
            self._provider_key = key
        return self._provider

    @staticmethod
    def _prefilter(
        segments: Sequence[Segment],
        config: ProcessingConfig,
    ) -> List[Tuple[Segment, str]]:
        work: List[Tuple[Segment, str]] = []
        for segment in segments:
            text = strip_words(segment.text, config.whitelist)
            if len(text.strip()) < MIN_SIGNAL_LENGTH:
                continue
            work.append((segment, text))
        return work

    def _apply_result(
        self,
        segment: Segment,
        result: List[ReplacementCandidate] | BaseException,
        config: ProcessingConfig,
        policy: ErrorPolicy,
    ) -> int:
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            category = (
                ErrorCategory.PROVIDER
                if isinstance(result, ProviderError)
                else ErrorCategory.CONFIGURATION
                if isinstance(result, ConfigurationError)
                else ErrorCategory.OTHER
            )
            if not isinstance(result, VocabWeaveError):
                logger.debug("Unexpected segment failure", exc_info=result)
            policy.handle_error(
                category,
                f"Could not process segment {segment.path or '(root)'}: {result}",
            )
            return 0

        candidates = [
            candidate
            for candidate in result
            if candidate.original.lower() not in config.whitelist
        ]
        try:
            count = self.replacer.apply(segment.container, candidates)
        except Exception as exc:
            if not isinstance(exc, VocabWeaveError):
                logger.debug("Unexpected replacement failure", exc_info=exc)
            policy.handle_error(
                ErrorCategory.DOM_CONSISTENCY,
                f"Could not annotate segment {segment.path or '(root)'}: {exc}",
            )
            return 0
        if count > 0:
            self.session.processed_fingerprints.add(segment.fingerprint)
        return count

    @staticmethod
    def _summary(
        outcome: PassOutcome,
        policy: ErrorPolicy,
        start_time: float,
        *,
        processed: int = 0,
        segments: int = 0,
    ) -> PassSummary:
        return PassSummary(
            outcome=outcome,
            processed=processed,
            errors=policy.errors,
            segments=segments,
            elapsed_seconds=time.time() - start_time,
            error_messages=policy.messages,
        )
