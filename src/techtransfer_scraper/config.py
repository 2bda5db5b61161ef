"""
Configuration management for the tech-transfer scraping engine.

Static configuration is loaded once from YAML, validated into frozen pydantic
models and never mutated at runtime.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .types import EngineType, ErrorClassification, FATAL_CLASSIFICATIONS, InstitutionClass

DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"
DEFAULT_USER_AGENT = "TechTransfer-Bot/2.0.0 (+https://techtransfer.com/bot)"


class ConfigurationError(Exception):
    """Raised at startup when the configuration is incomplete or invalid."""


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class AppConfig(FrozenModel):
    """Application configuration."""
    name: str = "Tech Transfer Scraping Engine"
    version: str = "2.0.0"
    environment: str = Field(default_factory=lambda: os.getenv("APP_ENVIRONMENT", "development"))


class LoggingConfig(FrozenModel):
    """Logging configuration."""
    level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    format: Literal["json", "text"] = "json"
    file: Optional[str] = None


class ResourceLimits(FrozenModel):
    """Per-engine resource budget."""
    max_memory_mb: int = Field(default=512, gt=0)
    max_cpu_percent: int = Field(default=50, gt=0, le=100)


class BrowserSettings(FrozenModel):
    """Headless browser launch and wait settings."""
    headless: bool = True
    args: List[str] = Field(default_factory=lambda: ["--no-sandbox", "--disable-dev-shm-usage"])
    viewport_width: int = 1920
    viewport_height: int = 1080
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "networkidle"
    wait_for_selector: Optional[str] = None
    wait_timeout: float = Field(default=30.0, gt=0)


class CrawlSettings(FrozenModel):
    """Middleware settings for the crawl-framework engine."""
    respect_robots_txt: bool = True
    cookies_enabled: bool = True
    compression: bool = True
    download_delay: float = Field(default=1.0, ge=0)
    max_redirects: int = Field(default=10, ge=0)


class EngineProfile(FrozenModel):
    """Concurrency, timeout and resource profile of one fetch engine."""
    type: EngineType
    max_concurrency: int = Field(gt=0)
    timeout: float = Field(gt=0, description="Total fetch budget in seconds")
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    user_agent: str = Field(default_factory=lambda: os.getenv("SCRAPER_USER_AGENT", DEFAULT_USER_AGENT))
    headers: Dict[str, str] = Field(default_factory=lambda: {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/pdf;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
    })
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    crawl: CrawlSettings = Field(default_factory=CrawlSettings)

    @property
    def max_payload_bytes(self) -> int:
        return self.resource_limits.max_memory_mb * 1024 * 1024


class RateLimitProfile(FrozenModel):
    """Courtesy limits for one institution class."""
    requests_per_second: float = Field(gt=0)
    burst_limit: int = Field(gt=0)
    cooldown_seconds: float = Field(gt=0)

    @property
    def window_ms(self) -> int:
        return max(1, round(self.cooldown_seconds * 1000))


class RetryPolicy(FrozenModel):
    """Exponential backoff policy for one error classification."""
    max_retries: int = Field(ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    backoff_factor: float = Field(default=1.0, ge=1.0)
    max_delay_ms: int = Field(default=30000, ge=0)


def default_retry_policies() -> Dict[ErrorClassification, RetryPolicy]:
    return {
        ErrorClassification.NETWORK_TIMEOUT: RetryPolicy(max_retries=3, base_delay_ms=1000, backoff_factor=2),
        ErrorClassification.RATE_LIMITED: RetryPolicy(max_retries=5, base_delay_ms=2000, backoff_factor=4),
        ErrorClassification.PARSE_ERROR: RetryPolicy(max_retries=2, base_delay_ms=1000, backoff_factor=1.5),
        ErrorClassification.VALIDATION_ERROR: RetryPolicy(max_retries=1, base_delay_ms=1000, backoff_factor=1),
        ErrorClassification.AUTHENTICATION_ERROR: RetryPolicy(max_retries=0),
        ErrorClassification.SECURITY_ERROR: RetryPolicy(max_retries=0),
    }


def default_rate_limits() -> Dict[InstitutionClass, RateLimitProfile]:
    return {
        InstitutionClass.PRIMARY_DOMESTIC: RateLimitProfile(requests_per_second=2, burst_limit=5, cooldown_seconds=60),
        InstitutionClass.INTERNATIONAL_ACADEMIC: RateLimitProfile(requests_per_second=1, burst_limit=3, cooldown_seconds=120),
        InstitutionClass.FEDERAL_LAB: RateLimitProfile(requests_per_second=5, burst_limit=10, cooldown_seconds=30),
        InstitutionClass.DEFAULT: RateLimitProfile(requests_per_second=1, burst_limit=2, cooldown_seconds=300),
    }


def default_engines() -> Dict[EngineType, EngineProfile]:
    return {
        EngineType.STATIC: EngineProfile(
            type=EngineType.STATIC, max_concurrency=5, timeout=30,
            resource_limits=ResourceLimits(max_memory_mb=512, max_cpu_percent=50),
        ),
        EngineType.CRAWL_FRAMEWORK: EngineProfile(
            type=EngineType.CRAWL_FRAMEWORK, max_concurrency=10, timeout=60,
            resource_limits=ResourceLimits(max_memory_mb=1024, max_cpu_percent=70),
        ),
        EngineType.HEADLESS_BROWSER: EngineProfile(
            type=EngineType.HEADLESS_BROWSER, max_concurrency=3, timeout=45,
            resource_limits=ResourceLimits(max_memory_mb=2048, max_cpu_percent=80),
        ),
    }


class RetryConfig(FrozenModel):
    """Retry-policy table keyed by error classification."""
    policies: Dict[ErrorClassification, RetryPolicy] = Field(default_factory=default_retry_policies)
    jitter_ratio: float = Field(default=0.0, ge=0.0, lt=1.0)

    @field_validator("policies", mode="after")
    @classmethod
    def fill_and_check_policies(cls, v):
        policies = default_retry_policies()
        policies.update(v)
        for kind in FATAL_CLASSIFICATIONS:
            if policies[kind].max_retries != 0:
                raise ValueError(f"{kind.value} must never be retried (max_retries=0)")
        return policies


class RateLimiterConfig(FrozenModel):
    """Shared rate-limit state store and locking settings."""
    backend: Literal["memory", "database"] = "memory"
    database_url: Optional[str] = Field(default_factory=lambda: os.getenv("SCRAPER_STATE_DATABASE_URL"))
    key_prefix: str = "ratelimit:"
    lock_ttl_ms: int = Field(default=1000, gt=0)
    lock_wait_ms: int = Field(default=2500, gt=0)
    skip_failed_requests: bool = False

    @model_validator(mode="after")
    def check_backend(self):
        if self.backend == "database" and not self.database_url:
            raise ValueError("rate_limiter.database_url is required for the database backend")
        if self.lock_wait_ms <= self.lock_ttl_ms:
            raise ValueError("rate_limiter.lock_wait_ms must exceed lock_ttl_ms")
        return self


class DispatcherConfig(FrozenModel):
    """Engine dispatcher settings."""
    max_rate_limit_wait_ms: int = Field(default=300000, ge=0)


class HtmlConfig(FrozenModel):
    """HTML extraction settings."""
    parser: Literal["lxml", "html.parser"] = "lxml"
    validate_selectors: bool = True


class PdfConfig(FrozenModel):
    """PDF extraction and security settings."""
    extract_metadata: bool = True
    max_file_size: int = Field(default=50 * 1024 * 1024, gt=0)
    max_pages: int = Field(default=1000, gt=0)
    page_range: Optional[List[str]] = None
    allow_encrypted: bool = False
    allow_javascript: bool = False
    allow_external_links: bool = True


class FieldValidationRule(FrozenModel):
    """Validation rule for one extracted field."""
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    url: bool = False
    allowed_domains: List[str] = Field(default_factory=list)


class ValidationConfig(FrozenModel):
    """Validation rules for extracted records."""
    required_fields: List[str] = Field(default_factory=list)
    field_rules: Dict[str, FieldValidationRule] = Field(default_factory=dict)


class Config(FrozenModel):
    """Main configuration class."""
    app: AppConfig = Field(default_factory=AppConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    engines: Dict[EngineType, EngineProfile] = Field(default_factory=default_engines)
    rate_limits: Dict[InstitutionClass, RateLimitProfile] = Field(default_factory=default_rate_limits)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limiter: RateLimiterConfig = Field(default_factory=RateLimiterConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    html: HtmlConfig = Field(default_factory=HtmlConfig)
    pdf: PdfConfig = Field(default_factory=PdfConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)

    @field_validator("engines", mode="before")
    @classmethod
    def require_engine_type(cls, v):
        # Engine profiles must declare their own type; the mapping key alone is not enough.
        if isinstance(v, dict):
            for key, profile in v.items():
                if isinstance(profile, dict) and "type" not in profile:
                    raise ValueError(f"engine profile '{key}' is missing 'type'")
        return v

    @model_validator(mode="after")
    def check_profiles(self):
        for key, profile in self.engines.items():
            if profile.type != key:
                raise ValueError(f"engine profile '{key.value}' declares type '{profile.type.value}'")
        if InstitutionClass.DEFAULT not in self.rate_limits:
            raise ValueError("a rate-limit profile for the 'default' institution class is required")
        return self

    def rate_limit_for(self, institution_class: InstitutionClass) -> RateLimitProfile:
        """Profile for a class, falling back to the default profile."""
        return self.rate_limits.get(institution_class, self.rate_limits[InstitutionClass.DEFAULT])


def build_config(data: Optional[Dict[str, Any]] = None) -> Config:
    """Validate a raw mapping into a Config, failing fast on any problem."""
    try:
        return Config(**(data or {}))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid scraper configuration: {e}") from e


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to configuration file. If None, uses
            ``SCRAPER_CONFIG_PATH`` or the packaged default.

    Returns:
        Config object with all settings.

    Raises:
        ConfigurationError: If the file is missing or invalid.
    """
    if config_path is None:
        config_path = os.getenv("SCRAPER_CONFIG_PATH") or DEFAULT_CONFIG_PATH

    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed configuration file {config_path}: {e}") from e

    return build_config(config_data)


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[str] = None) -> Config:
    """Reload configuration from file."""
    global _config
    _config = load_config(config_path)
    return _config
