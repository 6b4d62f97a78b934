"""Load .env secrets and the YAML configuration under config/."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from jobforge.errors import ConfigurationError
from jobforge.log import get_logger
from jobforge.models import FeedSource, PreferenceProfile
from jobforge.providers.base import ProviderKind
from jobforge.status import JobStatus

log = get_logger(__name__)

load_dotenv()

PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = Path(os.environ.get("JOBFORGE_CONFIG_DIR", PROJECT_ROOT / "config"))
DATA_DIR: Path = PROJECT_ROOT / "data"
REPORTS_DIR: Path = PROJECT_ROOT / "reports"

PREFERENCES_FILE = "preferences.yaml"
LLM_FILE = "llm.yaml"
FEEDS_FILE = "feeds.yaml"
PIPELINE_FILE = "pipeline.yaml"

DEFAULT_MODELS: dict[ProviderKind, str] = {
    ProviderKind.OLLAMA: "llama3.1:8b",
    ProviderKind.OPENAI: "gpt-4o-mini",
    ProviderKind.ANTHROPIC: "claude-3-haiku-20240307",
    ProviderKind.GEMINI: "gemini-1.5-flash",
    ProviderKind.GROK: "grok-beta",
}

API_KEY_ENV: dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "OPENAI_API_KEY",
    ProviderKind.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderKind.GEMINI: "GEMINI_API_KEY",
    ProviderKind.GROK: "GROK_API_KEY",
}

DEFAULT_OLLAMA_ENDPOINT = "http://localhost:11434"


def get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def ensure_dirs() -> None:
    for d in (DATA_DIR, REPORTS_DIR):
        d.mkdir(parents=True, exist_ok=True)


def db_path() -> Path:
    return Path(get_env("JOBFORGE_DB") or DATA_DIR / "jobforge.db")


@dataclass
class PipelineSettings:
    duplicate_window_days: int = 30
    description_max_length: int = 2000
    feed_timeout: float = 30.0
    completion_timeout: float = 30.0
    connection_test_timeout: float = 15.0
    model_list_timeout: float = 10.0
    feed_pacing_seconds: float = 2.0
    feed_workers: int = 1
    classify_batch_limit: int | None = None
    maybe_status: JobStatus = JobStatus.APPROVED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineSettings":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown pipeline settings: {', '.join(sorted(unknown))}")
        settings = cls(**data)
        settings.maybe_status = JobStatus(settings.maybe_status)
        if settings.maybe_status not in (JobStatus.APPROVED, JobStatus.NEEDS_REVIEW):
            raise ConfigurationError("maybe_status must be 'approved' or 'needs_review'")
        if settings.feed_workers < 1:
            raise ConfigurationError("feed_workers must be at least 1")
        return settings


@dataclass
class AgentConfig:
    """One classifier role (Tier 1 or Tier 2) bound to a provider and model."""
    name: str
    provider: ProviderKind
    model: str
    enabled: bool = True
    api_key: str = ""
    endpoint: str = DEFAULT_OLLAMA_ENDPOINT
    temperature: float = 0.3
    max_tokens: int = 1000
    timeout: float = 30.0
    test_timeout: float = 15.0
    list_timeout: float = 10.0
    prompt_template: str | None = None

    @classmethod
    def from_dict(
        cls, name: str, data: dict[str, Any], settings: PipelineSettings, config_dir: Path = CONFIG_DIR,
    ) -> "AgentConfig":
        try:
            provider = ProviderKind(str(data.get("provider", "ollama")).lower())
        except ValueError as exc:
            raise ConfigurationError(f"{name}: unknown provider {data.get('provider')!r}") from exc

        template = None
        prompt_file = data.get("prompt_file")
        if prompt_file:
            path = Path(prompt_file)
            if not path.is_absolute():
                path = config_dir / path
            try:
                template = path.read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigurationError(f"{name}: cannot read prompt file {path}: {exc}") from exc

        key_env = API_KEY_ENV.get(provider)
        return cls(
            name=name,
            provider=provider,
            model=str(data.get("model") or DEFAULT_MODELS[provider]),
            enabled=bool(data.get("enabled", True)),
            api_key=get_env(key_env) if key_env else "",
            endpoint=str(data.get("endpoint") or get_env("OLLAMA_ENDPOINT") or DEFAULT_OLLAMA_ENDPOINT).rstrip("/"),
            temperature=float(data.get("temperature", 0.3)),
            max_tokens=int(data.get("max_tokens", 1000)),
            timeout=float(data.get("timeout", settings.completion_timeout)),
            test_timeout=float(data.get("test_timeout", settings.connection_test_timeout)),
            list_timeout=float(data.get("list_timeout", settings.model_list_timeout)),
            prompt_template=template,
        )


@dataclass
class LLMConfiguration:
    agent1: AgentConfig
    agent2: AgentConfig


@dataclass
class ProfileTexts:
    """Free-text CV and biography fed into prompt templates."""
    cv: str = ""
    biography: str = ""


@dataclass
class AppConfig:
    preferences: PreferenceProfile
    llm: LLMConfiguration
    settings: PipelineSettings
    feeds: list[FeedSource] = field(default_factory=list)
    texts: ProfileTexts = field(default_factory=ProfileTexts)


def _read_yaml(name: str, config_dir: Path, required: bool = True) -> dict[str, Any]:
    path = config_dir / name
    if not path.exists():
        if required:
            raise ConfigurationError(f"Missing configuration file {path}")
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return data


def load_settings(config_dir: Path = CONFIG_DIR) -> PipelineSettings:
    return PipelineSettings.from_dict(_read_yaml(PIPELINE_FILE, config_dir, required=False))


def load_preferences(config_dir: Path = CONFIG_DIR) -> tuple[PreferenceProfile, ProfileTexts]:
    data = _read_yaml(PREFERENCES_FILE, config_dir)
    try:
        profile = PreferenceProfile.from_dict(data)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid preferences: {exc}") from exc

    texts = ProfileTexts()
    for attr in ("cv", "biography"):
        rel = data.get(f"{attr}_file")
        if not rel:
            continue
        path = Path(rel) if Path(rel).is_absolute() else config_dir / rel
        if path.exists():
            setattr(texts, attr, path.read_text(encoding="utf-8").strip())
        else:
            log.warning("%s file %s not found, continuing without it", attr, path)
    return profile, texts


def load_llm_config(settings: PipelineSettings, config_dir: Path = CONFIG_DIR) -> LLMConfiguration:
    data = _read_yaml(LLM_FILE, config_dir)
    agents = {}
    for key in ("agent1", "agent2"):
        if key not in data:
            raise ConfigurationError(f"{LLM_FILE}: missing '{key}' section")
        agents[key] = AgentConfig.from_dict(key, data[key] or {}, settings, config_dir)
    return LLMConfiguration(**agents)


def load_feeds(config_dir: Path = CONFIG_DIR) -> list[FeedSource]:
    data = _read_yaml(FEEDS_FILE, config_dir, required=False)
    feeds: list[FeedSource] = []
    for entry in data.get("feeds", []) or []:
        if not entry.get("url"):
            log.warning("Skipping feed without url: %r", entry)
            continue
        feed_id = str(entry.get("id") or entry.get("name") or entry["url"])
        feeds.append(FeedSource(
            id=feed_id,
            url=entry["url"],
            name=str(entry.get("name") or feed_id),
            enabled=bool(entry.get("enabled", True)),
        ))
    return feeds


def load_app_config(config_dir: Path = CONFIG_DIR) -> AppConfig:
    settings = load_settings(config_dir)
    preferences, texts = load_preferences(config_dir)
    return AppConfig(
        preferences=preferences,
        llm=load_llm_config(settings, config_dir),
        settings=settings,
        feeds=load_feeds(config_dir),
        texts=texts,
    )
