"""
Centralized configuration for the retention worker and its producers.
All settings come from environment variables for 12-factor deployment.

Nothing here is read at import time: call ``load_settings()`` once and pass
the resulting ``Settings`` into the components that need it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from retention.domain.enums import Priority


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    val = env.get(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    return int(env.get(name, str(default)))


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    return float(env.get(name, str(default)))


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return env.get(name, default).strip()


DEFAULT_QUEUE_WEIGHTS: Dict[str, int] = {"critical": 6, "default": 3, "low": 1}


def parse_queue_weights(raw: str) -> Dict[str, int]:
    """Parse ``critical=6,default=3,low=1`` into a weight map.

    Names must be priority classes.  Classes left out keep their default
    weight so every queue is always polled; an empty string yields the
    defaults.  Malformed entries raise ``ValueError``.
    """
    weights: Dict[str, int] = dict(DEFAULT_QUEUE_WEIGHTS)
    known = {p.value for p in Priority}
    for part in raw.split(","):
        if not part.strip():
            continue
        name, sep, value = part.partition("=")
        if not sep:
            raise ValueError(f"Invalid queue weight entry: {part!r}")
        name = name.strip().lower()
        if name not in known:
            raise ValueError(f"Unknown queue {name!r} in queue weights; expected one of {sorted(known)}")
        weight = int(value)
        if weight <= 0:
            raise ValueError(f"Queue weight must be positive: {part!r}")
        weights[name] = weight
    return weights


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient task failures.

    Attempt ``n`` (1-based) that fails is retried after
    ``min(max_seconds, base_seconds * factor ** (n - 1))`` seconds.
    """
    max_retry: int = 5
    base_seconds: float = 10.0
    factor: float = 2.0
    max_seconds: float = 3600.0

    def delay_for(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        return min(self.max_seconds, self.base_seconds * (self.factor ** exponent))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Settings:
    # Storage
    database_url: str = "sqlite:///retention.db"
    redis_url: str = ""
    queue_namespace: str = "retention"

    # Worker runtime
    concurrency: int = 10
    queue_weights: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_QUEUE_WEIGHTS))
    strict_priority: bool = False
    poll_interval_seconds: float = 1.0
    shutdown_timeout_seconds: float = 8.0
    task_timeout_seconds: float = 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    session_retry_initial_seconds: float = 2.0
    session_retry_max_seconds: float = 60.0
    run_once: bool = False

    # Churn pipeline
    churn_calculation_delay_seconds: float = 300.0
    churn_alert_threshold: float = 0.7

    # Sentiment classifier
    hugging_face_token: str = ""
    sentiment_api_url: str = "https://api-inference.huggingface.co/models"
    sentiment_timeout_seconds: float = 10.0

    # Outbound notifications
    slack_webhook_url: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    alert_email: str = ""
    notify_timeout_seconds: float = 10.0
    frontend_url: str = "http://localhost:3002"

    log_level: str = "INFO"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build ``Settings`` from ``environ`` (defaults to ``os.environ``)."""
    env = os.environ if environ is None else environ
    return Settings(
        database_url=_env_str(env, "DATABASE_URL", "sqlite:///retention.db"),
        redis_url=_env_str(env, "REDIS_URL"),
        queue_namespace=_env_str(env, "QUEUE_NAMESPACE", "retention"),
        concurrency=max(1, _env_int(env, "WORKER_CONCURRENCY", 10)),
        queue_weights=parse_queue_weights(env.get("QUEUE_WEIGHTS", "")),
        strict_priority=_env_bool(env, "QUEUE_STRICT_PRIORITY", False),
        poll_interval_seconds=max(0.05, _env_float(env, "WORKER_POLL_INTERVAL_SECONDS", 1.0)),
        shutdown_timeout_seconds=_env_float(env, "WORKER_SHUTDOWN_TIMEOUT_SECONDS", 8.0),
        task_timeout_seconds=_env_float(env, "TASK_TIMEOUT_SECONDS", 60.0),
        retry=RetryPolicy(
            max_retry=_env_int(env, "TASK_MAX_RETRY", 5),
            base_seconds=_env_float(env, "TASK_RETRY_BASE_SECONDS", 10.0),
            max_seconds=_env_float(env, "TASK_RETRY_MAX_SECONDS", 3600.0),
        ),
        session_retry_initial_seconds=_env_float(env, "WORKER_RETRY_INITIAL_SECONDS", 2.0),
        session_retry_max_seconds=_env_float(env, "WORKER_RETRY_MAX_SECONDS", 60.0),
        run_once=_env_bool(env, "WORKER_RUN_ONCE", False),
        churn_calculation_delay_seconds=_env_float(env, "CHURN_CALCULATION_DELAY_SECONDS", 300.0),
        churn_alert_threshold=_env_float(env, "CHURN_ALERT_THRESHOLD", 0.7),
        hugging_face_token=_env_str(env, "HUGGING_FACE_TOKEN"),
        sentiment_api_url=_env_str(
            env, "SENTIMENT_API_URL", "https://api-inference.huggingface.co/models"
        ).rstrip("/"),
        sentiment_timeout_seconds=_env_float(env, "SENTIMENT_TIMEOUT_SECONDS", 10.0),
        slack_webhook_url=_env_str(env, "SLACK_WEBHOOK_URL"),
        smtp_host=_env_str(env, "SMTP_HOST"),
        smtp_port=_env_int(env, "SMTP_PORT", 587),
        smtp_user=_env_str(env, "SMTP_USER"),
        smtp_password=env.get("SMTP_PASSWORD", ""),
        alert_email=_env_str(env, "ALERT_EMAIL"),
        notify_timeout_seconds=_env_float(env, "NOTIFY_TIMEOUT_SECONDS", 10.0),
        frontend_url=_env_str(env, "FRONTEND_URL", "http://localhost:3002").rstrip("/"),
        log_level=_env_str(env, "LOG_LEVEL", "INFO").upper(),
    )
