"""
Runtime settings loaded from the environment.

Values come from process environment variables, with a ``.env`` file in the
working directory filling in anything unset (existing variables win).

Provider credentials are NOT read here: each provider reads its own
``<TAG>_API_KEY`` when it is constructed, so a missing key only fails the
request that selected that provider.

Environment:
    DEVTRENDS_DB_PATH               SQLite file shared by all workers
    DEVTRENDS_LOG_LEVEL             Root log level (default INFO)
    DEVTRENDS_JSON_LOGS             Emit JSON log lines (default false)
    LLM_PROVIDERS                   Comma separated allow-list of provider tags
    LLM_<TAG>_MODEL                 Model override for one provider tag
    LLM_<TAG>_PRIORITY              Fallback rank for one provider tag (lower first)
    LLM_TIMEOUT                     Per-call provider timeout in seconds
    LLM_MAX_RETRIES                 Retries on the preferred provider
    LLM_FALLBACK_MAX_RETRIES        Retries on each fallback provider
    LLM_RETRY_BASE_DELAY            Backoff base delay in seconds
    LLM_RETRY_MAX_DELAY             Backoff delay cap in seconds
    LLM_CIRCUIT_BREAKER_ENABLED     Toggle per-provider circuit breakers
    LLM_CIRCUIT_FAILURE_THRESHOLD   Consecutive failures that open a circuit
    LLM_CIRCUIT_RECOVERY_TIME       Seconds an open circuit rejects calls
    LLM_QUALITY_THRESHOLD           Minimum quality score (0-100)
    LLM_CACHE_ENABLED / LLM_CACHE_DIR / LLM_CACHE_TTL / LLM_NOCACHE
                                    Response cache settings
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

from devtrends.common.exceptions import ConfigurationError

__all__ = ["Settings", "load_settings"]


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip("'\"").lower() in ("1", "true", "yes")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number", context={"value": raw}
        ) from e


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of runtime configuration."""

    database_path: str = "workspace/devtrends.db"
    log_level: str = "INFO"
    json_logs: bool = False

    enabled_providers: frozenset[str] | None = None
    provider_models: dict[str, str] = field(default_factory=dict)
    provider_priorities: dict[str, int] = field(default_factory=dict)
    timeout: float = 30.0

    max_retries: int = 2
    fallback_max_retries: int = 1
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    circuit_breaker_enabled: bool = True
    circuit_failure_threshold: int = 5
    circuit_recovery_time: float = 60.0
    circuit_half_open_successes: int = 2

    quality_threshold: float = 60.0

    cache_enabled: bool = False
    cache_dir: str = "workspace/cache/llm"
    cache_ttl: int = 86_400
    nocache: bool = False

    def model_for(self, provider: str) -> str | None:
        """Model override for a provider tag (None means the provider default)."""
        return self.provider_models.get(provider)

    def priority_for(self, provider: str) -> int:
        """Fallback rank for a provider tag; lower ranks are tried first."""
        return self.provider_priorities.get(provider, 0)

    def is_enabled(self, provider: str) -> bool:
        return self.enabled_providers is None or provider in self.enabled_providers


def load_settings() -> Settings:
    """
    Build ``Settings`` from the environment.

    Raises:
        ConfigurationError: If a numeric variable cannot be parsed
    """
    # Working directory first, never overriding variables already set
    load_dotenv(find_dotenv(usecwd=True), override=False)

    enabled: frozenset[str] | None = None
    providers_raw = os.getenv("LLM_PROVIDERS", "").strip()
    if providers_raw:
        enabled = frozenset(p.strip().lower() for p in providers_raw.split(",") if p.strip())

    # Per-provider overrides: LLM_{TAG}_MODEL and LLM_{TAG}_PRIORITY
    prefix = "LLM_"
    models: dict[str, str] = {}
    priorities: dict[str, int] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or not value:
            continue
        if key.endswith("_MODEL"):
            tag = key[len(prefix) : -len("_MODEL")].lower()
            if tag:
                models[tag] = value
        elif key.endswith("_PRIORITY"):
            tag = key[len(prefix) : -len("_PRIORITY")].lower()
            if tag:
                priorities[tag] = _env_int(key, 0)

    return Settings(
        database_path=os.getenv("DEVTRENDS_DB_PATH", "workspace/devtrends.db"),
        log_level=os.getenv("DEVTRENDS_LOG_LEVEL", "INFO"),
        json_logs=_env_bool("DEVTRENDS_JSON_LOGS"),
        enabled_providers=enabled,
        provider_models=models,
        provider_priorities=priorities,
        timeout=_env_float("LLM_TIMEOUT", 30.0),
        max_retries=_env_int("LLM_MAX_RETRIES", 2),
        fallback_max_retries=_env_int("LLM_FALLBACK_MAX_RETRIES", 1),
        retry_base_delay=_env_float("LLM_RETRY_BASE_DELAY", 1.0),
        retry_max_delay=_env_float("LLM_RETRY_MAX_DELAY", 30.0),
        circuit_breaker_enabled=_env_bool("LLM_CIRCUIT_BREAKER_ENABLED", "true"),
        circuit_failure_threshold=_env_int("LLM_CIRCUIT_FAILURE_THRESHOLD", 5),
        circuit_recovery_time=_env_float("LLM_CIRCUIT_RECOVERY_TIME", 60.0),
        circuit_half_open_successes=_env_int("LLM_CIRCUIT_HALF_OPEN_SUCCESSES", 2),
        quality_threshold=_env_float("LLM_QUALITY_THRESHOLD", 60.0),
        cache_enabled=_env_bool("LLM_CACHE_ENABLED", "true"),
        cache_dir=os.getenv("LLM_CACHE_DIR", "workspace/cache/llm"),
        cache_ttl=_env_int("LLM_CACHE_TTL", 86_400),
        nocache=_env_bool("LLM_NOCACHE"),
    )
