"""
Pytest configuration and shared fixtures.
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict

import pytest

from vocabweave.configuration import ProcessingConfig
from vocabweave.documents import HtmlDocument
from vocabweave.providers import GlossaryVocabularyProvider
from vocabweave.session import ProcessingSession
from vocabweave.storage import StateStore

SCENARIO_TEXT = (
    "The enigmatic traveler wandered through ancient ruins, "
    "pondering the mysteries of civilization."
)
MERCHANT_TEXT = (
    "Every morning the curious merchant opened his shop and greeted the villagers warmly."
)

GLOSSARY: Dict[str, Dict[str, Any]] = {
    "enigmatic": {"translation": "神秘的", "phonetic": "/ˌenɪɡˈmætɪk/", "difficulty": "C1"},
    "traveler": {"translation": "旅行者", "phonetic": "/ˈtrævələr/", "difficulty": "B1"},
    "wandered": {"translation": "漫步", "phonetic": "/ˈwɒndəd/", "difficulty": "B1"},
    "ancient": {"translation": "古老的", "phonetic": "/ˈeɪnʃənt/", "difficulty": "A2"},
    "ruins": {"translation": "废墟", "phonetic": "/ˈruːɪnz/", "difficulty": "B2"},
    "pondering": {"translation": "沉思", "phonetic": "/ˈpɒndərɪŋ/", "difficulty": "C1"},
    "mysteries": {"translation": "奥秘", "phonetic": "/ˈmɪstəriz/", "difficulty": "B2"},
    "civilization": {"translation": "文明", "phonetic": "/ˌsɪvəlaɪˈzeɪʃn/", "difficulty": "B2"},
    "curious": {"translation": "好奇的", "phonetic": "/ˈkjʊəriəs/", "difficulty": "B1"},
    "merchant": {"translation": "商人", "phonetic": "/ˈmɜːtʃənt/", "difficulty": "B2"},
    "greeted": {"translation": "问候", "phonetic": "/ˈɡriːtɪd/", "difficulty": "B1"},
    "villagers": {"translation": "村民", "phonetic": "/ˈvɪlɪdʒəz/", "difficulty": "B1"},
}

PAGE = f"""<html><head><title>Travel notes</title></head><body>
<article>
<h1>Travel notes</h1>
<p id="intro">{SCENARIO_TEXT}</p>
<p>{MERCHANT_TEXT}</p>
<pre>const total = compute(value);</pre>
<script>var message = "this script text must never be touched by anything";</script>
<p style="display:none">The enigmatic traveler hid in this paragraph and nobody should see him.</p>
</article>
</body></html>
"""

_ENV_PREFIXES = ("VOCABWEAVE_", "OPENAI_", "AZURE_OPENAI_", "LLM_PROVIDER")


class StaticConfigStore:
    """Config store double that hands out whatever config it holds."""

    def __init__(self, config: ProcessingConfig) -> None:
        self.config = config
        self.reads = 0

    async def read(self) -> ProcessingConfig:
        self.reads += 1
        return self.config


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path: Path) -> Path:
    """Keep tests away from the real home directory and environment."""
    home = tmp_path / "home"
    app = tmp_path / "app"
    home.mkdir()
    app.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(app)
    for key in list(os.environ):
        if key.startswith(_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    return app


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def state(data_dir: Path) -> StateStore:
    return StateStore(data_dir)


@pytest.fixture
def session() -> ProcessingSession:
    return ProcessingSession()


@pytest.fixture
def make_config() -> Callable[..., ProcessingConfig]:
    """Factory for processing configs with a usable API key."""

    def _make(**overrides: Any) -> ProcessingConfig:
        values: Dict[str, Any] = {"api_key": "test-key"}
        values.update(overrides)
        if "whitelist" in values:
            values["whitelist"] = frozenset(word.lower() for word in values["whitelist"])
        return ProcessingConfig(**values)

    return _make


@pytest.fixture
def glossary() -> GlossaryVocabularyProvider:
    return GlossaryVocabularyProvider(GLOSSARY)


@pytest.fixture
def page() -> HtmlDocument:
    return HtmlDocument(PAGE, url="https://reader.test/articles/1")
