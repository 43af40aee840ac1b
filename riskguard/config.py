"""
riskguard/config.py
====================
Runtime configuration — RiskGuard

Reads environment variables (populated from ``.env`` by ``main.py``) into a
single immutable ``Settings`` object. Invalid numeric values fall back to
their defaults with a warning; configuration never prevents startup.
"""

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger("riskguard.config")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using default %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r; using default %s", name, raw, default)
        return default


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    """All tunables for one running service instance."""

    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    alert_webhook_url: str | None = None
    admin_tokens: tuple[str, ...] = field(default_factory=tuple)
    # issued client keys; an unknown X-Api-Key is ignored
    api_keys: tuple[str, ...] = field(default_factory=tuple)

    batch_concurrency: int = 5
    audit_queue_size: int = 1000

    breaker_failure_threshold: int = 5
    breaker_reset_timeout_ms: int = 30_000

    retry_max_retries: int = 3
    retry_base_delay_ms: int = 200
    retry_max_delay_ms: int = 5_000
    retry_backoff_multiplier: float = 2.0

    rate_limit_privileged_multiplier: int = 10

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL") or None,
            admin_tokens=_env_list("RISKGUARD_ADMIN_TOKENS"),
            api_keys=_env_list("RISKGUARD_API_KEYS"),
            batch_concurrency=_env_int("BATCH_CONCURRENCY", 5),
            audit_queue_size=_env_int("AUDIT_QUEUE_SIZE", 1000),
            breaker_failure_threshold=_env_int("BREAKER_FAILURE_THRESHOLD", 5),
            breaker_reset_timeout_ms=_env_int("BREAKER_RESET_TIMEOUT_MS", 30_000),
            retry_max_retries=_env_int("RETRY_MAX_RETRIES", 3),
            retry_base_delay_ms=_env_int("RETRY_BASE_DELAY_MS", 200),
            retry_max_delay_ms=_env_int("RETRY_MAX_DELAY_MS", 5_000),
            retry_backoff_multiplier=_env_float("RETRY_BACKOFF_MULTIPLIER", 2.0),
            rate_limit_privileged_multiplier=_env_int("RATE_LIMIT_MULTIPLIER_PRIVILEGED", 10),
        )
