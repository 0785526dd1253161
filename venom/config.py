"""Settings models, file loading and validation."""
from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from venom.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("config/venom.toml")
LOCAL_PROVIDERS = frozenset({"ollama", "llava", "local"})

SEED_URLS = [
    "https://en.wikipedia.org/wiki/Web_crawler",
    "https://news.ycombinator.com",
    "https://stripe.com",
    "https://www.amazon.com",
    "https://www.bbc.com/news",
]


class _Section(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CrawlerSettings(_Section):
    """Crawl behaviour; durations are milliseconds."""

    max_depth: int = Field(2, alias="maxDepth")
    rate_limit: int = Field(1000, alias="rateLimit")
    concurrency: int = 3
    timeout: int = 30000
    respect_robots_txt: bool = Field(True, alias="respectRobotsTxt")
    user_agent: str = Field("Venom/1.0 (+https://github.com/venom-crawler)", alias="userAgent")
    viewport_width: int = Field(1920, alias="viewportWidth")
    viewport_height: int = Field(1080, alias="viewportHeight")
    full_page: bool = Field(True, alias="fullPage")
    max_urls_per_domain: int = Field(100, alias="maxUrlsPerDomain")
    allowed_domains: List[str] = Field(default_factory=list, alias="allowedDomains")
    blocked_domains: List[str] = Field(default_factory=list, alias="blockedDomains")
    max_retries: int = Field(3, alias="maxRetries")


class CaptioningSettings(_Section):
    provider: str = "anthropic"
    api_key: str = Field("", alias="apiKey")
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = Field(1024, alias="maxTokens")
    include_html: bool = Field(True, alias="includeHtml")
    include_css: bool = Field(False, alias="includeCss")
    prompt_template: Optional[str] = Field(None, alias="promptTemplate")
    base_url: Optional[str] = Field(None, alias="baseUrl")

    @model_validator(mode="after")
    def _resolve_api_key(self) -> "CaptioningSettings":
        if not self.api_key:
            self.api_key = api_key_for_provider(self.provider)
        return self


class StorageSettings(_Section):
    data_dir: Path = Field(default_factory=lambda: Path.cwd() / "data", alias="dataDir")
    db_path: Optional[Path] = Field(None, alias="dbPath")
    max_screenshot_size: int = Field(10 * 1024 * 1024, alias="maxScreenshotSize")

    @model_validator(mode="after")
    def _default_db_path(self) -> "StorageSettings":
        if self.db_path is None:
            self.db_path = self.data_dir / "venom.db"
        return self


class VenomSettings(_Section):
    crawler: CrawlerSettings = Field(default_factory=CrawlerSettings)
    captioning: CaptioningSettings = Field(default_factory=CaptioningSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


_SECTIONS: Dict[str, type[BaseModel]] = {
    "crawler": CrawlerSettings,
    "captioning": CaptioningSettings,
    "storage": StorageSettings,
}


def api_key_for_provider(provider: str) -> str:
    """Pick the environment variable holding the key for ``provider``."""
    name = provider.lower()
    if name in {"anthropic", "claude"}:
        return os.environ.get("ANTHROPIC_API_KEY", "")
    if name in {"openai", "gpt4", "gpt-4"}:
        return os.environ.get("OPENAI_API_KEY", "")
    if name in LOCAL_PROVIDERS:
        return ""
    return os.environ.get("VLM_API_KEY", "")


def read_config_file(path: Path) -> Dict[str, Any]:
    """Read the TOML configuration file."""
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError([f"Failed to load config from {path}: {exc}"]) from exc


def _canonical_keys(model: type[BaseModel], values: Dict[str, Any]) -> Dict[str, Any]:
    aliases = {field.alias: name for name, field in model.model_fields.items() if field.alias}
    return {aliases.get(key, key): value for key, value in values.items()}


def load_settings(path: Optional[Path] = None, overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> VenomSettings:
    """Build settings from defaults, the config file and CLI overrides, in that order."""
    payload: Dict[str, Dict[str, Any]] = {"crawler": {}, "captioning": {}, "storage": {}}
    candidate = path if path is not None else DEFAULT_CONFIG_PATH
    if candidate.exists():
        for section, values in read_config_file(candidate).items():
            if section in _SECTIONS and isinstance(values, dict):
                payload[section].update(_canonical_keys(_SECTIONS[section], values))
    elif path is not None:
        raise ConfigError([f"Config file not found: {path}"])
    for section, values in (overrides or {}).items():
        payload.setdefault(section, {}).update({key: value for key, value in values.items() if value is not None})
    try:
        return VenomSettings.model_validate(payload)
    except ValueError as exc:
        raise ConfigError([str(exc)]) from exc


def validate_settings(settings: VenomSettings, *, require_captioning: bool = True) -> List[str]:
    """Return human readable validation errors; empty when the settings are usable."""
    errors: List[str] = []
    crawler = settings.crawler
    if crawler.max_depth < 0:
        errors.append("max_depth must be non-negative")
    if crawler.rate_limit < 0:
        errors.append("rate_limit must be non-negative")
    if crawler.concurrency < 1:
        errors.append("concurrency must be at least 1")
    if crawler.timeout < 1000:
        errors.append("timeout must be at least 1000ms")
    if crawler.viewport_width < 320:
        errors.append("viewport_width must be at least 320")
    if crawler.viewport_height < 240:
        errors.append("viewport_height must be at least 240")
    if crawler.max_retries < 0:
        errors.append("max_retries must be non-negative")
    if crawler.max_urls_per_domain < 1:
        errors.append("max_urls_per_domain must be at least 1")

    captioning = settings.captioning
    if captioning.max_tokens < 100:
        errors.append("max_tokens must be at least 100")
    if require_captioning and captioning.provider.lower() not in LOCAL_PROVIDERS and not captioning.api_key:
        errors.append(f"API key required for provider: {captioning.provider}")
    return errors


def ensure_valid(settings: VenomSettings, *, require_captioning: bool = True) -> VenomSettings:
    errors = validate_settings(settings, require_captioning=require_captioning)
    if errors:
        raise ConfigError(errors)
    return settings
