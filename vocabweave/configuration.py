"""Layered configuration loader for VocabWeave."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Literal, Mapping, Sequence, Tuple, Union

import yaml
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
    YamlConfigSettingsSource,
)

from .errors import ConfigurationError
from .storage import StateStore
from .text import max_replacements

APP_NAME = "vocabweave"
LOCAL_CONFIG_NAME = "vocabweave.yaml"


class VocabWeaveSettings(BaseSettings):
    """Schema describing all supported configuration options.

    Constructing the model directly validates only the keyword arguments
    given; :func:`load_settings` assembles the file and environment layers.
    """

    model_config = SettingsConfigDict(extra="ignore", case_sensitive=True)

    VOCABWEAVE_ENABLED: bool = Field(default=True)
    VOCABWEAVE_AUTO_PROCESS: bool = Field(default=False)
    VOCABWEAVE_DIFFICULTY_LEVEL: Literal["A1", "A2", "B1", "B2", "C1", "C2"] = Field(
        default="B1",
        description="Learner CEFR level; only words at or above it are shown.",
    )
    VOCABWEAVE_INTENSITY: Literal["low", "medium", "high"] = Field(
        default="medium",
        description="Maximum replacements per segment (4, 8 or 14).",
    )
    VOCABWEAVE_NATIVE_LANGUAGE: str = Field(default="zh-CN")
    VOCABWEAVE_TARGET_LANGUAGE: str = Field(default="en")
    VOCABWEAVE_BLACKLIST: Union[List[str], str] = Field(default_factory=list)
    VOCABWEAVE_WHITELIST: Union[List[str], str] = Field(default_factory=list)
    VOCABWEAVE_CACHE_STRATEGY: Literal["cache_first", "complete"] = Field(default="cache_first")
    VOCABWEAVE_DATA_DIR: str | None = Field(default=None)
    LLM_PROVIDER: Literal["azure_openai", "openai"] = Field(
        default="openai",
        description="Large language model provider selection.",
    )
    OPENAI_API_KEY: str | None = Field(default=None)
    OPENAI_BASE_URL: str | None = Field(default=None)
    VOCABWEAVE_MODEL_NAME: str = Field(default="deepseek-chat")
    AZURE_OPENAI_API_KEY: str | None = Field(default=None)
    AZURE_OPENAI_ENDPOINT: str | None = Field(default=None)
    AZURE_OPENAI_API_VERSION: str | None = Field(default=None)
    AZURE_OPENAI_DEPLOYMENT_NAME: str | None = Field(default=None)
    VOCABWEAVE_PROVIDER_DEBUG: bool = Field(default=False)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings,)

    @model_validator(mode="before")
    @classmethod
    def _normalise_provider(cls, data: Any) -> Any:
        if isinstance(data, dict):
            raw_value = data.get("LLM_PROVIDER")
            if isinstance(raw_value, str):
                normalized = raw_value.strip().lower().replace("-", "_")
                synonyms = {
                    "azure_open_ai": "azure_openai",
                    "azureopenai": "azure_openai",
                }
                normalized = synonyms.get(normalized, normalized)
                if normalized not in {"openai", "azure_openai"}:
                    normalized = "openai"
                data["LLM_PROVIDER"] = normalized
            for key in ("VOCABWEAVE_DIFFICULTY_LEVEL", "VOCABWEAVE_INTENSITY"):
                value = data.get(key)
                if isinstance(value, str):
                    value = value.strip()
                    data[key] = value.upper() if key.endswith("LEVEL") else value.lower()
        return data

    @field_validator("VOCABWEAVE_BLACKLIST", "VOCABWEAVE_WHITELIST", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


@dataclass(frozen=True)
class ProcessingConfig:
    """Read-only snapshot of the settings one processing pass works with."""

    enabled: bool = True
    auto_process: bool = False
    difficulty_level: str = "B1"
    intensity: str = "medium"
    native_language: str = "zh-CN"
    target_language: str = "en"
    blacklist: Tuple[str, ...] = ()
    whitelist: FrozenSet[str] = field(default_factory=frozenset)
    cache_strategy: str = "cache_first"
    llm_provider: str = "openai"
    api_key: str | None = None
    api_base_url: str | None = None
    model_name: str = "deepseek-chat"
    azure_api_key: str | None = None
    azure_endpoint: str | None = None
    azure_api_version: str | None = None
    azure_deployment: str | None = None
    provider_debug: bool = False

    @property
    def max_replacements(self) -> int:
        return max_replacements(self.intensity)

    @property
    def has_credentials(self) -> bool:
        if self.llm_provider == "azure_openai":
            return bool(self.azure_api_key)
        return bool(self.api_key)

    def is_blacklisted(self, hostname: str) -> bool:
        return bool(hostname) and any(domain and domain in hostname for domain in self.blacklist)

    @classmethod
    def from_settings(
        cls,
        settings: VocabWeaveSettings,
        *,
        learned_words: Sequence[Mapping[str, Any]] = (),
    ) -> "ProcessingConfig":
        whitelist = {word.lower() for word in settings.VOCABWEAVE_WHITELIST if word}
        whitelist.update(
            str(item["original"]).lower()
            for item in learned_words
            if isinstance(item, Mapping) and item.get("original")
        )
        return cls(
            enabled=settings.VOCABWEAVE_ENABLED,
            auto_process=settings.VOCABWEAVE_AUTO_PROCESS,
            difficulty_level=settings.VOCABWEAVE_DIFFICULTY_LEVEL,
            intensity=settings.VOCABWEAVE_INTENSITY,
            native_language=settings.VOCABWEAVE_NATIVE_LANGUAGE,
            target_language=settings.VOCABWEAVE_TARGET_LANGUAGE,
            blacklist=tuple(settings.VOCABWEAVE_BLACKLIST),
            whitelist=frozenset(whitelist),
            cache_strategy=settings.VOCABWEAVE_CACHE_STRATEGY,
            llm_provider=settings.LLM_PROVIDER,
            api_key=settings.OPENAI_API_KEY,
            api_base_url=settings.OPENAI_BASE_URL,
            model_name=settings.VOCABWEAVE_MODEL_NAME,
            azure_api_key=settings.AZURE_OPENAI_API_KEY,
            azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
            azure_api_version=settings.AZURE_OPENAI_API_VERSION,
            azure_deployment=settings.AZURE_OPENAI_DEPLOYMENT_NAME,
            provider_debug=settings.VOCABWEAVE_PROVIDER_DEBUG,
        )


def load_settings(
    app_dir: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> VocabWeaveSettings:
    """Merge every configuration layer and validate the result.

    Later layers win: home YAML, local YAML, ``.env``, the process
    environment, then explicit overrides. Each key remembers the layer that
    supplied it so validation errors can point at the offending source.
    """

    base_dir = app_dir or Path.cwd()
    allowed = set(VocabWeaveSettings.model_fields)
    combined: Dict[str, Any] = {}
    provenance: Dict[str, str] = {}

    try:
        for label, source in _layer_sources(base_dir):
            for key, value in sorted(source().items()):
                if value is None or key not in allowed:
                    continue
                combined[key] = value
                provenance[key] = label
    except SettingsError as exc:
        raise ConfigurationError(f"Configuration could not be parsed: {exc}") from exc

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        combined[key] = value
        provenance[key] = "override"

    try:
        return VocabWeaveSettings(**combined)
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_errors(exc.errors(), provenance)) from exc


def discover_config_files(app_dir: Path) -> List[Path]:
    """Home configuration first, then the local one, so local wins."""

    candidates = [
        Path.home() / ".config" / APP_NAME / "config.yaml",
        app_dir / LOCAL_CONFIG_NAME,
    ]
    return [path for path in candidates if path.is_file()]


class _YamlLayer(YamlConfigSettingsSource):
    """One YAML file; unreadable or non-mapping files are configuration errors."""

    def _read_file(self, file_path: Path) -> Dict[str, Any]:
        try:
            with open(file_path, encoding=self.yaml_file_encoding) as handle:
                parsed = yaml.safe_load(handle)
        except OSError as exc:
            raise ConfigurationError(f"Configuration files could not be read: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid configuration file {file_path}: {exc}") from exc
        if parsed is None:
            return {}
        if not isinstance(parsed, Mapping):
            raise ConfigurationError(
                f"Invalid configuration file {file_path}: expected a mapping at the root."
            )
        return {str(key): value for key, value in parsed.items()}


def _layer_sources(app_dir: Path) -> List[Tuple[str, PydanticBaseSettingsSource]]:
    """Settings sources in ascending priority, each labelled for error reports."""

    layers: List[Tuple[str, PydanticBaseSettingsSource]] = [
        (
            f"yaml:{path}",
            _YamlLayer(VocabWeaveSettings, yaml_file=path, yaml_file_encoding="utf-8"),
        )
        for path in discover_config_files(app_dir)
    ]
    layers.append(
        (
            "env:.env",
            DotEnvSettingsSource(
                VocabWeaveSettings,
                env_file=app_dir / ".env",
                env_file_encoding="utf-8",
            ),
        )
    )
    layers.append(("env:process", EnvSettingsSource(VocabWeaveSettings)))
    return layers


def _format_validation_errors(
    entries: Iterable[Mapping[str, Any]],
    provenance: Mapping[str, str] | None = None,
) -> str:
    details: List[str] = []
    for entry in entries:
        loc = tuple(entry.get("loc") or ())
        location = ".".join(str(part) for part in loc if part not in {None, ""})
        message = str(entry.get("msg") or "Invalid value")
        prefix = f"{location}: " if location else ""
        source = (provenance or {}).get(str(loc[0])) if loc else None
        suffix = f" (source: {source})" if source else ""
        details.append(f"- {prefix}{message}{suffix}")
    return "Configuration validation errors detected:\n" + "\n".join(details)


class ConfigStore:
    """Produces a fresh :class:`ProcessingConfig` for every pass."""

    def __init__(
        self,
        state: StateStore,
        *,
        app_dir: Path | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> None:
        self.state = state
        self.app_dir = app_dir
        self.overrides = dict(overrides or {})

    async def read(self) -> ProcessingConfig:
        settings = await asyncio.to_thread(load_settings, self.app_dir, self.overrides)
        learned = await self.state.learned_words()
        return ProcessingConfig.from_settings(settings, learned_words=learned)
