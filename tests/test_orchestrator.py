"""
Tests for the orchestrator: pass outcomes, bounded fan-out, triggers, commands.
"""

import asyncio

import pytest
from conftest import MERCHANT_TEXT, PAGE, SCENARIO_TEXT, StaticConfigStore

from vocabweave.cache import make_key
from vocabweave.documents import ANNOTATION_CLASS, PROCESSED_ATTRIBUTE, HtmlDocument
from vocabweave.errors import ConfigurationError, ProviderError
from vocabweave.orchestrator import Orchestrator, is_memorizable
from vocabweave.providers import VocabularyProvider
from vocabweave.structures import CacheEntry, PassOutcome, ReplacementCandidate

NAMES = ["Alpha", "Bravo", "Charlie", "Delta", "Echo", "Foxtrot", "Golf"]
TAIL = " describes a remarkable journey across distant mountains and valleys."


class InstrumentedProvider(VocabularyProvider):
    """Tracks how many translate calls overlap; fails for chosen words."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def translate(self, text, *, source_language, target_language, difficulty):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.in_flight -= 1
        first = text.split()[0]
        if first in self.failing:
            raise ProviderError(f"upstream failure for {first}")
        return [ReplacementCandidate(original=first, translation=first.upper(), difficulty="C1")]


class FixedProvider(VocabularyProvider):
    """Returns the same candidates whatever the text says."""

    def __init__(self, candidates):
        self.candidates = candidates

    async def translate(self, text, *, source_language, target_language, difficulty):
        return list(self.candidates)


def _orchestrator(document, config, state, provider, **kwargs):
    return Orchestrator(
        document,
        StaticConfigStore(config),
        state,
        provider_factory=lambda config, debug=False: provider,
        **kwargs,
    )


def _originals(document):
    return [unit["data-original"] for unit in document.soup.find_all(class_=ANNOTATION_CLASS)]


def _named_page():
    body = "".join(f"<p id='p{index}'>{name}{TAIL}</p>" for index, name in enumerate(NAMES))
    return HtmlDocument(f"<html><body>{body}</body></html>")


class TestProcessPage:
    """Tests for a full processing pass."""

    @pytest.mark.asyncio
    async def test_annotates_visible_prose(self, page, state, glossary, make_config):
        orchestrator = _orchestrator(page, make_config(), state, glossary)

        summary = await orchestrator.process_page()
        await orchestrator.resolver.drain()

        assert summary.outcome is PassOutcome.COMPLETED
        assert summary.processed == 11
        assert summary.errors == 0
        assert summary.to_dict() == {"processed": 11, "errors": 0}
        assert "ancient" not in _originals(page)
        assert page.soup.pre.get_text() == "const total = compute(value);"
        assert not orchestrator.session.is_processing

    @pytest.mark.asyncio
    async def test_idempotent(self, page, state, glossary, make_config):
        """A second pass over an unchanged document replaces nothing."""
        orchestrator = _orchestrator(page, make_config(), state, glossary)
        await orchestrator.process_page()
        calls = len(glossary.calls)

        second = await orchestrator.process_page()
        await orchestrator.resolver.drain()

        assert second.processed == 0
        assert len(glossary.calls) == calls

    @pytest.mark.asyncio
    async def test_round_trip(self, page, state, glossary, make_config):
        paragraphs = page.soup.find_all("p")
        before = [paragraph.get_text() for paragraph in paragraphs]
        orchestrator = _orchestrator(page, make_config(), state, glossary)
        await orchestrator.process_page()
        await orchestrator.resolver.drain()

        assert orchestrator.restore_page() == 11
        assert [paragraph.get_text() for paragraph in paragraphs] == before
        assert not page.soup.find_all(attrs={PROCESSED_ATTRIBUTE: True})
        assert orchestrator.get_status()["processed_count"] == 0

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, state, make_config):
        """No more than three resolutions are ever in flight."""
        provider = InstrumentedProvider()
        document = _named_page()
        orchestrator = _orchestrator(document, make_config(), state, provider)

        summary = await orchestrator.process_page()
        await orchestrator.resolver.drain()

        assert provider.calls == len(NAMES)
        assert provider.max_in_flight == 3
        assert summary.processed == len(NAMES)
        assert _originals(document) == NAMES

    @pytest.mark.asyncio
    async def test_custom_concurrency(self, state, make_config):
        provider = InstrumentedProvider()
        orchestrator = _orchestrator(_named_page(), make_config(), state, provider, concurrency=1)
        await orchestrator.process_page()
        await orchestrator.resolver.drain()
        assert provider.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_segment_errors_do_not_abort(self, state, make_config):
        provider = InstrumentedProvider(failing={"Bravo", "Foxtrot"})
        document = _named_page()
        orchestrator = _orchestrator(document, make_config(), state, provider)

        summary = await orchestrator.process_page()
        await orchestrator.resolver.drain()

        assert summary.outcome is PassOutcome.COMPLETED
        assert summary.errors == 2
        assert summary.processed == 5
        assert "Bravo" not in _originals(document)
        assert any("upstream failure for Bravo" in message for message in summary.error_messages)

    @pytest.mark.asyncio
    async def test_overlapping_cache_writes(self, state, make_config, data_dir):
        """Parallel resolutions all write the cache through without tripping over each other."""
        names = NAMES + ["Hotel", "India", "Juliet", "Kilo", "Lima"]
        body = "".join(f"<p id='p{index}'>{name}{TAIL}</p>" for index, name in enumerate(names))
        document = HtmlDocument(f"<html><body>{body}</body></html>")
        orchestrator = _orchestrator(document, make_config(), state, InstrumentedProvider())
        for index in range(1500):
            orchestrator.session.cache.put(
                CacheEntry(key=make_key(f"filler{index}", "en", "zh-CN"), translation="填充", difficulty="B2")
            )

        summary = await orchestrator.process_page()
        await orchestrator.resolver.drain()

        assert summary.errors == 0
        assert summary.processed == len(names)
        assert _originals(document) == names
        persisted = {record["key"] for record in await state.load_cache_records()}
        assert {make_key(name, "en", "zh-CN") for name in names} <= persisted
        assert not [path for path in data_dir.iterdir() if path.suffix == ".tmp"]

    @pytest.mark.asyncio
    async def test_replacement_failure_counts_for_its_segment(self, state, make_config, monkeypatch):
        """A container that cannot be annotated is one error, not the end of the pass."""
        document = _named_page()
        orchestrator = _orchestrator(document, make_config(), state, InstrumentedProvider())
        apply = orchestrator.replacer.apply

        def flaky_apply(container, candidates):
            if container.get("id") == "p2":
                raise RuntimeError("container vanished")
            return apply(container, candidates)

        monkeypatch.setattr(orchestrator.replacer, "apply", flaky_apply)

        summary = await orchestrator.process_page()
        await orchestrator.resolver.drain()

        assert summary.outcome is PassOutcome.COMPLETED
        assert summary.errors == 1
        assert summary.processed == len(NAMES) - 1
        assert "Charlie" not in _originals(document)
        assert any("container vanished" in message for message in summary.error_messages)
        assert not orchestrator.session.is_processing

    @pytest.mark.asyncio
    async def test_whitelist_exclusion(self, page, state, make_config):
        """Whitelisted words are never applied, even if the provider returns them."""
        provider = FixedProvider(
            [
                ReplacementCandidate(original="ancient", translation="古老的", difficulty="C1"),
                ReplacementCandidate(original="Ruins", translation="废墟", difficulty="C1"),
                ReplacementCandidate(original="merchant", translation="商人", difficulty="C1"),
            ]
        )
        config = make_config(whitelist={"Ancient", "ruins"})
        orchestrator = _orchestrator(page, config, state, provider)

        await orchestrator.process_page()
        await orchestrator.resolver.drain()

        originals = [original.lower() for original in _originals(page)]
        assert "ancient" not in originals
        assert "ruins" not in originals
        assert "merchant" in originals

    @pytest.mark.asyncio
    async def test_fingerprint_only_after_replacement(self, state, make_config):
        document = HtmlDocument(f"<html><body><p>{SCENARIO_TEXT}</p></body></html>")
        orchestrator = _orchestrator(document, make_config(), state, FixedProvider([]))
        await orchestrator.process_page()
        await orchestrator.resolver.drain()
        assert orchestrator.get_status()["processed_count"] == 0


class TestOutcomes:
    """Tests for the short-circuit outcomes."""

    @pytest.mark.asyncio
    async def test_skipped_while_busy(self, page, state, glossary, make_config):
        orchestrator = _orchestrator(page, make_config(), state, glossary)
        orchestrator.session.try_begin()

        summary = await orchestrator.process_page()

        assert summary.outcome is PassOutcome.SKIPPED
        assert summary.to_dict() == {"processed": 0, "errors": 0, "skipped": True}
        assert glossary.calls == []
        assert orchestrator.session.is_processing

    @pytest.mark.asyncio
    async def test_overlapping_calls(self, state, make_config):
        """Only one of two concurrent passes runs."""
        provider = InstrumentedProvider()
        orchestrator = _orchestrator(_named_page(), make_config(), state, provider)

        first, second = await asyncio.gather(orchestrator.process_page(), orchestrator.process_page())
        await orchestrator.resolver.drain()

        outcomes = sorted(summary.outcome.value for summary in (first, second))
        assert outcomes == ["completed", "skipped"]
        assert provider.calls == len(NAMES)

    @pytest.mark.asyncio
    async def test_disabled(self, page, state, glossary, make_config):
        orchestrator = _orchestrator(page, make_config(enabled=False), state, glossary)
        summary = await orchestrator.process_page()
        assert summary.to_dict() == {"processed": 0, "errors": 0, "disabled": True}
        assert not orchestrator.session.is_processing

    @pytest.mark.asyncio
    async def test_blacklisted(self, state, glossary, make_config):
        document = HtmlDocument(PAGE, url="https://news.example.com/today")
        orchestrator = _orchestrator(document, make_config(blacklist=("example.com",)), state, glossary)
        summary = await orchestrator.process_page()
        assert summary.outcome is PassOutcome.BLACKLISTED
        assert _originals(document) == []

    @pytest.mark.asyncio
    async def test_configuration_error_fails_pass(self, page, state, make_config):
        def factory(config, debug=False):
            raise ConfigurationError("Provider configuration missing.")

        orchestrator = Orchestrator(page, StaticConfigStore(make_config()), state, provider_factory=factory)
        summary = await orchestrator.process_page()

        assert summary.outcome is PassOutcome.FAILED
        assert summary.to_dict()["error"] == "Provider configuration missing."
        assert not orchestrator.session.is_processing


class TestCommands:
    """Tests for the command surface."""

    @pytest.mark.asyncio
    async def test_status_before_and_after(self, page, state, glossary, make_config):
        orchestrator = _orchestrator(page, make_config(), state, glossary)
        assert await orchestrator.handle_command({"action": "get_status"}) == {
            "processed_count": 0,
            "is_processing": False,
            "enabled": None,
        }
        result = await orchestrator.handle_command({"action": "process_page"})
        await orchestrator.resolver.drain()
        assert result == {"processed": 11, "errors": 0}
        status = await orchestrator.handle_command({"action": "get_status"})
        assert status["processed_count"] == 2
        assert status["enabled"] is True

    @pytest.mark.asyncio
    async def test_restore_command(self, page, state, glossary, make_config):
        orchestrator = _orchestrator(page, make_config(), state, glossary)
        await orchestrator.process_page()
        await orchestrator.resolver.drain()
        assert await orchestrator.handle_command({"action": "restore_page"}) == {
            "success": True,
            "restored": 11,
        }

    @pytest.mark.asyncio
    async def test_unknown_action(self, page, state, glossary, make_config):
        orchestrator = _orchestrator(page, make_config(), state, glossary)
        result = await orchestrator.handle_command({"action": "explode"})
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_failures_do_not_escape(self, page, state, make_config):
        class BrokenStore:
            async def read(self):
                raise RuntimeError("storage offline")

        orchestrator = Orchestrator(page, BrokenStore(), state)
        result = await orchestrator.handle_command({"action": "process_page"})
        assert result == {"success": False, "error": "storage offline"}
        assert not orchestrator.session.is_processing


class TestLearnerActions:
    """Tests for marking words learned and memorizing selections."""

    @pytest.mark.asyncio
    async def test_mark_learned(self, page, state, glossary, make_config):
        orchestrator = _orchestrator(page, make_config(), state, glossary)
        await orchestrator.process_page()
        await orchestrator.resolver.drain()
        unit = page.soup.find(class_=ANNOTATION_CLASS)
        original = unit["data-original"]

        assert await orchestrator.mark_learned(unit)

        assert original not in _originals(page)
        learned = await state.learned_words()
        assert learned[0]["original"] == original

    @pytest.mark.asyncio
    async def test_learned_words_excluded_next_time(self, state, glossary, make_config):
        """A learned word is whitelisted once the config store knows about it."""
        await state.add_learned_word("enigmatic", "神秘的")
        learned = await state.learned_words()
        config = make_config(whitelist={item["original"] for item in learned})
        document = HtmlDocument(PAGE)
        orchestrator = _orchestrator(document, config, state, glossary)

        await orchestrator.process_page()
        await orchestrator.resolver.drain()

        assert "enigmatic" not in _originals(document)

    @pytest.mark.asyncio
    async def test_add_to_memorize(self, page, state):
        orchestrator = Orchestrator(page, StaticConfigStore(None), state)
        assert await orchestrator.add_to_memorize("serendipity")
        assert not await orchestrator.add_to_memorize("serendipity")
        assert not await orchestrator.add_to_memorize("x")
        assert not await orchestrator.add_to_memorize("y" * 50)
        assert [item["word"] for item in await state.memorize_list()] == ["serendipity"]

    def test_is_memorizable(self):
        assert is_memorizable("ok")
        assert is_memorizable(" a phrase ")
        assert not is_memorizable("a")
        assert not is_memorizable("z" * 49 + "z")


class TestTriggers:
    """Tests for scroll, mutation, startup and config-change triggers."""

    @pytest.mark.asyncio
    async def test_startup_auto_process(self, page, state, glossary, make_config):
        orchestrator = _orchestrator(
            page, make_config(auto_process=True), state, glossary, startup_delay=0.01
        )
        await orchestrator.start()
        await orchestrator._startup.wait()
        await orchestrator.resolver.drain()
        assert len(_originals(page)) == 11

    @pytest.mark.asyncio
    async def test_startup_needs_credentials(self, page, state, glossary, make_config):
        config = make_config(auto_process=True, api_key=None)
        orchestrator = _orchestrator(page, config, state, glossary, startup_delay=0.01)
        await orchestrator.start()
        assert not orchestrator._startup.pending

    @pytest.mark.asyncio
    async def test_start_loads_cache(self, page, state, glossary, make_config):
        await state.save_cache_records([{"key": "ruins:en:zh-CN", "translation": "废墟", "difficulty": "B2"}])
        orchestrator = _orchestrator(page, make_config(), state, glossary)
        await orchestrator.start()
        assert "ruins:en:zh-CN" in orchestrator.session.cache

    @pytest.mark.asyncio
    async def test_scroll_processes_viewport(self, state, glossary, make_config):
        document = HtmlDocument(PAGE)
        orchestrator = _orchestrator(
            document, make_config(auto_process=True), state, glossary, scroll_delay=0.01
        )
        orchestrator.config = make_config(auto_process=True)

        for offset in (10.0, 20.0, 30.0):
            orchestrator.notify_scroll(offset)
        await orchestrator._scroll.wait()
        await orchestrator.resolver.drain()

        assert document.viewport.scroll_top == 30.0
        assert len(_originals(document)) == 11

    @pytest.mark.asyncio
    async def test_scroll_ignored_without_auto_process(self, state, glossary, make_config):
        document = HtmlDocument(PAGE)
        orchestrator = _orchestrator(document, make_config(), state, glossary, scroll_delay=0.01)
        orchestrator.config = make_config()

        orchestrator.notify_scroll(100.0)
        await orchestrator._scroll.wait()

        assert glossary.calls == []

    @pytest.mark.asyncio
    async def test_mutation_with_substantial_text(self, state, glossary, make_config):
        document = HtmlDocument("<html><body><p>Short.</p></body></html>")
        orchestrator = _orchestrator(
            document, make_config(auto_process=True), state, glossary, mutation_delay=0.01
        )
        orchestrator.config = make_config(auto_process=True)

        added = document.soup.new_tag("p")
        added.string = MERCHANT_TEXT
        document.soup.body.append(added)
        orchestrator.notify_mutation([added])
        await orchestrator._mutation.wait()
        await orchestrator.resolver.drain()

        assert set(_originals(document)) == {"curious", "merchant", "greeted", "villagers"}

    @pytest.mark.asyncio
    async def test_mutation_with_little_text(self, state, glossary, make_config):
        document = HtmlDocument("<html><body></body></html>")
        orchestrator = _orchestrator(
            document, make_config(auto_process=True), state, glossary, mutation_delay=0.01
        )
        added = document.soup.new_tag("p")
        added.string = "Just a few words."
        document.soup.body.append(added)

        orchestrator.notify_mutation([added])

        assert not orchestrator._mutation.pending

    @pytest.mark.asyncio
    async def test_difficulty_change_reprocesses(self, page, state, glossary, make_config):
        store = StaticConfigStore(make_config(difficulty_level="B1"))
        orchestrator = Orchestrator(page, store, state, provider_factory=lambda config, debug=False: glossary)
        await orchestrator.process_page()
        assert "traveler" in _originals(page)

        store.config = make_config(difficulty_level="C1")
        summary = await orchestrator.on_config_changed({"difficulty_level"})
        await orchestrator.resolver.drain()

        assert summary.outcome is PassOutcome.COMPLETED
        assert set(_originals(page)) == {"enigmatic", "pondering"}

    @pytest.mark.asyncio
    async def test_disable_restores(self, page, state, glossary, make_config):
        store = StaticConfigStore(make_config())
        orchestrator = Orchestrator(page, store, state, provider_factory=lambda config, debug=False: glossary)
        await orchestrator.process_page()
        await orchestrator.resolver.drain()

        store.config = make_config(enabled=False)
        assert await orchestrator.on_config_changed({"enabled"}) is None
        assert _originals(page) == []

    @pytest.mark.asyncio
    async def test_destroy(self, page, state, glossary, make_config):
        orchestrator = _orchestrator(page, make_config(), state, glossary, scroll_delay=10)
        await orchestrator.process_page()
        orchestrator.config = make_config(auto_process=True)
        orchestrator.notify_scroll()

        await orchestrator.destroy()

        assert not orchestrator._scroll.pending
        assert _originals(page) == []
