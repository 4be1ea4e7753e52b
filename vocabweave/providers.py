"""Vocabulary provider abstractions."""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, List, Mapping

from .errors import ConfigurationError, ProviderError
from .structures import ReplacementCandidate
from .text import DEFAULT_DIFFICULTY

if TYPE_CHECKING:
    from .configuration import ProcessingConfig

logger = logging.getLogger(__name__)

ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")
COMPLETIONS_SUFFIX = "/chat/completions"


class VocabularyProvider(ABC):
    """Abstract adapter for the translate capability."""

    @abstractmethod
    async def translate(
        self,
        text: str,
        *,
        source_language: str,
        target_language: str,
        difficulty: str,
    ) -> List[ReplacementCandidate]:
        """Pick learnable words in ``text`` and translate them."""


class GlossaryVocabularyProvider(VocabularyProvider):
    """Offline provider answering from a fixed word list.

    ``entries`` maps a word to ``{"translation", "phonetic", "difficulty"}``.
    Every glossary word found in the text is returned, whatever its level.
    """

    def __init__(self, entries: Mapping[str, Mapping[str, Any]]) -> None:
        self.entries = {word.lower(): dict(data) for word, data in entries.items()}
        self.calls: List[str] = []

    async def translate(
        self,
        text: str,
        *,
        source_language: str,
        target_language: str,
        difficulty: str,
    ) -> List[ReplacementCandidate]:
        self.calls.append(text)
        items: List[ReplacementCandidate] = []
        for word, data in self.entries.items():
            match = re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE)
            if not match:
                continue
            items.append(
                ReplacementCandidate(
                    original=match.group(0),
                    translation=str(data.get("translation", "")),
                    phonetic=str(data.get("phonetic", "")),
                    difficulty=str(data.get("difficulty") or DEFAULT_DIFFICULTY),
                    position=match.start(),
                )
            )
        items.sort(key=lambda item: item.position)
        return items


class OpenAIVocabularyProvider(VocabularyProvider):
    """Vocabulary provider backed by an OpenAI-compatible chat model."""

    DEFAULT_MODEL = "deepseek-chat"

    def __init__(self, config: "ProcessingConfig", *, debug: bool = False) -> None:
        self.debug = debug
        self.config = config
        self.provider_kind = config.llm_provider
        self._client, self._default_model = self._build_client()

    def _build_client(self) -> tuple[Any, str]:
        if self.provider_kind == "azure_openai":
            return self._build_azure_client()

        return self._build_openai_client()

    def _build_openai_client(self) -> tuple[Any, str]:
        api_key = self.config.api_key
        if not api_key:
            raise ConfigurationError(
                "Provider configuration missing. Set OPENAI_API_KEY or choose a "
                "different provider."
            )
        try:
            from openai import AsyncOpenAI  # type: ignore
        except ImportError as exc:  # pragma: no cover - import guard
            raise ConfigurationError(
                "OpenAI Python SDK not installed. Install with `pip install openai`."
            ) from exc

        client = AsyncOpenAI(api_key=api_key, base_url=normalise_base_url(self.config.api_base_url))
        return client, self.config.model_name or self.DEFAULT_MODEL

    def _build_azure_client(self) -> tuple[Any, str]:
        missing = [
            name
            for name, value in {
                "AZURE_OPENAI_API_KEY": self.config.azure_api_key,
                "AZURE_OPENAI_ENDPOINT": self.config.azure_endpoint,
                "AZURE_OPENAI_API_VERSION": self.config.azure_api_version,
                "AZURE_OPENAI_DEPLOYMENT_NAME": self.config.azure_deployment,
            }.items()
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "Azure OpenAI configuration incomplete. Please set: "
                + ", ".join(missing)
                + "."
            )

        try:
            from openai import AsyncAzureOpenAI  # type: ignore
        except ImportError as exc:  # pragma: no cover - import guard
            raise ConfigurationError(
                "OpenAI Python SDK not installed. Install with `pip install openai`."
            ) from exc

        client = AsyncAzureOpenAI(
            api_key=self.config.azure_api_key,
            api_version=self.config.azure_api_version,
            azure_endpoint=self.config.azure_endpoint,
        )
        return client, self.config.azure_deployment  # type: ignore[return-value]

    async def translate(
        self,
        text: str,
        *,
        source_language: str,
        target_language: str,
        difficulty: str,
    ) -> List[ReplacementCandidate]:
        if not text.strip():
            return []

        system_prompt = (
            "You are a professional language-learning assistant. "
            "Always answer with valid JSON."
        )
        user_prompt = build_prompt(
            text,
            source_language=source_language,
            target_language=target_language,
            learner_language=self.config.target_language,
            difficulty=difficulty,
        )
        self._log_debug("provider.request.prompt", user_prompt)

        content = await self._invoke_model(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            model=self._default_model,
        )
        self._log_debug("provider.response.content", content)
        return normalise_items(parse_vocabulary_payload(content))

    async def _invoke_model(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        model: str,
    ) -> str:
        """Call the Chat Completions API and return the message text."""

        try:
            response = await self._client.chat.completions.create(
                model=model,
                temperature=0.3,
                max_tokens=2000,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except Exception as exc:
            raise ProviderError(
                f"Vocabulary service temporarily unavailable: {exc}"
            ) from exc
        self._log_debug("provider.response.raw", self._safe_dump_response(response))

        choices = getattr(response, "choices", None) or []
        for choice in choices:
            message = getattr(choice, "message", None)
            message_content = getattr(message, "content", None) if message else None
            if message_content:
                return str(message_content)
            fallback_text = getattr(choice, "text", None)
            if fallback_text:
                return str(fallback_text)

        raise ProviderError("Vocabulary provider response empty or unrecognised.")

    def _log_debug(self, label: str, payload: Any) -> None:
        """Emit structured debug information when enabled."""

        if not self.debug:
            return
        if isinstance(payload, (dict, list)):
            message = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        else:
            message = str(payload)
        logger.debug("%s:\n%s", label, message)

    def _safe_dump_response(self, response: Any) -> Any:
        """Best-effort conversion of SDK objects into JSON-friendly data."""

        dump = getattr(response, "model_dump", None)
        if callable(dump):
            return dump()
        return str(response)


def normalise_base_url(endpoint: str | None) -> str | None:
    """Accept either a base URL or a full ``.../chat/completions`` endpoint."""

    if not endpoint:
        return None
    stripped = endpoint.strip().rstrip("/")
    if stripped.endswith(COMPLETIONS_SUFFIX):
        stripped = stripped[: -len(COMPLETIONS_SUFFIX)]
    return stripped or None


def build_prompt(
    text: str,
    *,
    source_language: str,
    target_language: str,
    learner_language: str,
    difficulty: str,
) -> str:
    return (
        "Analyse the text below and choose words that are worth learning.\n\n"
        "## Rules\n"
        "1. Choose roughly 15-20 words with learning value.\n"
        "2. Do not choose proper nouns, personal or place names, brands, numbers, "
        "code, URLs, or words already in the target language.\n"
        "3. Prefer common, useful words across a range of difficulty levels.\n"
        f"4. Translate from {source_language} to {target_language}.\n"
        "5. Use the context: give the single most fitting translation, not a list "
        "of meanings, so the mixed text stays easy to read.\n"
        f"6. The learner's level is {difficulty}; rate every word honestly on the "
        "CEFR scale, from A1 (easiest) to C2 (hardest).\n\n"
        "## Output\n"
        "Return a JSON array whose elements contain:\n"
        "- original: the word as written in the text\n"
        "- translation: the translation\n"
        f"- phonetic: pronunciation or phonetic spelling in {learner_language}\n"
        "- difficulty: CEFR level (A1/A2/B1/B2/C1/C2)\n"
        "- position: start offset of the word in the text\n\n"
        "## Text\n"
        f"{text}\n\n"
        "Return only the JSON array, nothing else."
    )


def _strip_code_fence(text: str) -> str:
    """Remove leading/trailing markdown code fences if present."""

    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped

    first_newline = stripped.find("\n")
    if first_newline == -1:
        return stripped
    body = stripped[first_newline + 1 :]
    closing_index = body.rfind("```")
    if closing_index != -1:
        body = body[:closing_index]
    return body.strip()


def parse_vocabulary_payload(content: str) -> List[Any]:
    """Extract the item array from a model reply; malformed replies yield []."""

    text = _strip_code_fence(content or "")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, list):
        return parsed

    match = ARRAY_PATTERN.search(text)
    if not match:
        logger.warning("Provider reply contained no JSON array; treating it as empty.")
        return []
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.warning("Provider reply held an unparseable array (%s); treating it as empty.", exc)
        return []
    return parsed if isinstance(parsed, list) else []


def normalise_items(items: List[Any]) -> List[ReplacementCandidate]:
    """Turn raw reply items into candidates, dropping unusable ones."""

    candidates: List[ReplacementCandidate] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        original = item.get("original")
        translation = item.get("translation")
        if not isinstance(original, str) or not original.strip():
            continue
        if not isinstance(translation, str):
            continue
        candidates.append(
            ReplacementCandidate(
                original=original.strip(),
                translation=translation,
                phonetic=str(item.get("phonetic") or ""),
                difficulty=str(item.get("difficulty") or DEFAULT_DIFFICULTY),
                position=_as_position(item.get("position")),
            )
        )
    return candidates


def _as_position(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def build_provider(config: "ProcessingConfig", *, debug: bool = False) -> VocabularyProvider:
    """Factory to create the provider a configuration asks for."""

    normalized = (config.llm_provider or "openai").strip().lower()
    if normalized in {"openai", "azure_openai"}:
        return OpenAIVocabularyProvider(config, debug=debug or config.provider_debug)
    raise ConfigurationError(f"Unknown vocabulary provider '{config.llm_provider}'.")
