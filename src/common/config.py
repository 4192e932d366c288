"""Configuration loading for the news-thread services.

YAML files under ``configs/`` are parsed into dataclasses. The config name
comes from the ``NEWS_THREAD_CONFIG`` env var (default ``prod``); secrets
such as ``NEWSAPI_KEY`` and ``DATABASE_URL`` are read from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Generic, TypeVar

import yaml

T = TypeVar("T")

CONFIG_ENV_VAR = "NEWS_THREAD_CONFIG"
CONFIG_DIR = Path(__file__).resolve().parents[2] / "configs"


def find_config_path(
    config_name: str | None,
    config_dir: Path,
    default_name: str = "prod",
    env_var: str | None = None,
) -> Path:
    """Find config file path, checking env var and defaults.

    Args:
        config_name: Name of config (without .yaml), a path to a YAML file,
            or None for default
        config_dir: Directory containing config files
        default_name: Default config name if config_name is None
        env_var: Environment variable to check for config name

    Returns:
        Path to the config file

    Raises:
        FileNotFoundError: If config file doesn't exist
    """
    if config_name is None:
        config_name = os.environ.get(env_var, default_name) if env_var else default_name

    if config_name.endswith((".yaml", ".yml")):
        config_path = Path(config_name)
    else:
        config_path = config_dir / f"{config_name}.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    return config_path


def load_yaml(path: Path) -> dict:
    """Load YAML file and return dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


class ConfigSingleton(Generic[T]):
    """Generic config singleton manager.

    Provides get/set/reset pattern for managing a global config instance.
    """

    def __init__(self, loader: Callable[[], T] | None = None):
        self._config: T | None = None
        self._loader = loader

    def get(self) -> T:
        """Get the config, loading it lazily if needed."""
        if self._config is None:
            if self._loader is None:
                raise RuntimeError("No config loaded and no loader set")
            self._config = self._loader()
        return self._config

    def set(self, config: T) -> None:
        """Set the config directly."""
        self._config = config

    def reset(self) -> None:
        """Reset the config, forcing reload on next get()."""
        self._config = None


@dataclass
class StoreConfig:
    backend: str = "sql"  # "sql" or "memory"
    url: str = "sqlite:///news_thread.db"
    echo: bool = False


@dataclass
class EmbeddingConfig:
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    model_version: int = 1
    device: str | None = None
    word_limit: int = 256
    max_text_chars: int = 200_000
    ttl_days: int = 7
    retry_cooldown_seconds: int = 60


@dataclass
class MatchingConfig:
    min_matches: int = 3
    page_size: int = 20
    max_per_bucket: int = 5
    result_ttl_hours: int = 24
    empty_result_ttl_hours: int = 1
    lexical_overlap_threshold: float = 0.3
    lexical_score_factor: float = 0.6
    keyword_min_entity_overlap: float = 0.1
    keyword_min_title_similarity: float = 10.0


@dataclass
class ClusteringConfig:
    lookback_hours: int = 24
    novelty_threshold: float = 0.85
    close_call_threshold: float = 0.40
    max_tracked_stories: int = 1000


@dataclass
class SearchConfig:
    enabled: bool = True
    base_url: str = "https://newsapi.org/v2/everything"
    language: str = "en"
    sort_by: str = "relevancy"
    request_timeout: int = 30
    daily_request_budget: int = 100
    default_retry_after_seconds: int = 3600
    api_key: str | None = None


@dataclass
class ExtractionConfig:
    enabled: bool = True
    request_timeout: int = 15
    min_content_length: int = 100
    retry_delay_minutes: int = 5
    max_retries: int = 1
    user_agent: str = "Mozilla/5.0 (compatible; news-thread/0.1)"


@dataclass
class AppConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)


def _section(cls, data: dict | None):
    """Build a section dataclass from a mapping, ignoring unknown keys."""
    data = data or {}
    known = {name for name in cls.__dataclass_fields__}
    return cls(**{k: v for k, v in data.items() if k in known})


def parse_config(data: dict) -> AppConfig:
    """Parse config dictionary into AppConfig, then apply env secrets."""
    config = AppConfig(
        store=_section(StoreConfig, data.get("store")),
        embedding=_section(EmbeddingConfig, data.get("embedding")),
        matching=_section(MatchingConfig, data.get("matching")),
        clustering=_section(ClusteringConfig, data.get("clustering")),
        search=_section(SearchConfig, data.get("search")),
        extraction=_section(ExtractionConfig, data.get("extraction")),
    )
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        config.store.url = database_url
    api_key = os.environ.get("NEWSAPI_KEY")
    if api_key:
        config.search.api_key = api_key
    return config


def load_config(config_name: str | None = None) -> AppConfig:
    """Load configuration from YAML file.

    Args:
        config_name: Name of config file (without .yaml extension) or a path.
                    If None, uses NEWS_THREAD_CONFIG env var or "prod".

    Returns:
        Loaded AppConfig object
    """
    config_path = find_config_path(config_name, CONFIG_DIR, env_var=CONFIG_ENV_VAR)
    return parse_config(load_yaml(config_path))


_manager: ConfigSingleton[AppConfig] = ConfigSingleton(load_config)
get_config = _manager.get
set_config = _manager.set
reset_config = _manager.reset
