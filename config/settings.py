"""
Configuration loader for the delivery pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class RetentionConfig:
    completed_count: int = 1000
    completed_age_days: float = 7
    failed_count: int = 5000
    failed_age_days: float = 30


@dataclass
class QueueConfig:
    concurrency: int = 3
    rate_limit_max: int = 10            # operations per rate_limit_duration
    rate_limit_duration: float = 1.0    # seconds
    attempts: int = 3                   # queue-level attempts before a job fails
    backoff_delay: float = 2.0          # base seconds for exponential backoff
    stalled_timeout: float = 300.0      # seconds an active job may go without a heartbeat
    retention: RetentionConfig = field(default_factory=RetentionConfig)


@dataclass
class QueueBackendConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "outreach"
    poll_interval: float = 0.5          # seconds an idle worker slot waits between claims


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./outreach.db"   # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"          # "sql" | "memory"
    pool_size: int = 10                    # ignored for SQLite
    max_overflow: int = 20
    pool_recycle: int = 1800               # seconds


@dataclass
class MessagingConfig:
    max_business_attempts: Optional[int] = None   # None = no ceiling on domain re-queues
    requeue_interval: float = 30.0                # seconds between requeue passes
    requeue_batch_size: int = 100
    processing_timeout: float = 600.0             # seconds before an unowned processing item is failed


@dataclass
class AutomationConfig:
    base_url: str = ""
    api_key: str = ""
    timeout: float = 120.0


@dataclass
class EnrichmentConfig:
    enabled: bool = True
    base_url: str = ""
    api_key: str = ""
    timeout: float = 30.0


@dataclass
class Settings:
    app_name: str = "OutreachPipeline"
    debug: bool = False
    log_json: bool = True
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue_backend: QueueBackendConfig = field(default_factory=QueueBackendConfig)
    queues: dict[str, QueueConfig] = field(default_factory=dict)
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    def queue_config(self, name: str) -> QueueConfig:
        """Per-queue overrides fall back to the defaults."""
        return self.queues.get(name) or QueueConfig()


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _parse_queue(raw: dict[str, Any]) -> QueueConfig:
    defaults = QueueConfig()
    rate = raw.get("rate_limit", {}) or {}
    ret = raw.get("retention", {}) or {}
    return QueueConfig(
        concurrency=int(raw.get("concurrency", defaults.concurrency)),
        rate_limit_max=int(rate.get("max", defaults.rate_limit_max)),
        rate_limit_duration=float(rate.get("duration", defaults.rate_limit_duration)),
        attempts=int(raw.get("attempts", defaults.attempts)),
        backoff_delay=float(raw.get("backoff_delay", defaults.backoff_delay)),
        stalled_timeout=float(raw.get("stalled_timeout", defaults.stalled_timeout)),
        retention=RetentionConfig(
            completed_count=int(ret.get("completed_count", 1000)),
            completed_age_days=float(ret.get("completed_age_days", 7)),
            failed_count=int(ret.get("failed_count", 5000)),
            failed_age_days=float(ret.get("failed_age_days", 30)),
        ),
    )


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "PIPELINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_json = raw.get("log_json", settings.log_json)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                pool_size=int(db.get("pool_size", 10)),
                max_overflow=int(db.get("max_overflow", 20)),
                pool_recycle=int(db.get("pool_recycle", 1800)),
            )

        if "queue_backend" in raw:
            qb = raw["queue_backend"]
            settings.queue_backend = QueueBackendConfig(
                backend=qb.get("backend", "memory"),
                redis_url=qb.get("redis_url", "redis://localhost:6379"),
                key_prefix=qb.get("key_prefix", "outreach"),
                poll_interval=float(qb.get("poll_interval", 0.5)),
            )

        for name, q in (raw.get("queues") or {}).items():
            settings.queues[name] = _parse_queue(q or {})

        if "messaging" in raw:
            m = raw["messaging"]
            max_attempts = m.get("max_business_attempts")
            settings.messaging = MessagingConfig(
                max_business_attempts=int(max_attempts) if max_attempts is not None else None,
                requeue_interval=float(m.get("requeue_interval", 30.0)),
                requeue_batch_size=int(m.get("requeue_batch_size", 100)),
                processing_timeout=float(m.get("processing_timeout", 600.0)),
            )

        if "automation" in raw:
            a = raw["automation"]
            settings.automation = AutomationConfig(
                base_url=a.get("base_url", ""),
                api_key=a.get("api_key", ""),
                timeout=float(a.get("timeout", 120.0)),
            )

        if "enrichment" in raw:
            e = raw["enrichment"]
            settings.enrichment = EnrichmentConfig(
                enabled=e.get("enabled", True),
                base_url=e.get("base_url", ""),
                api_key=e.get("api_key", ""),
                timeout=float(e.get("timeout", 30.0)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
