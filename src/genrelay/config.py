"""Runtime configuration for generation orchestration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class OrchestratorSettings:
    """Scheduler and reconciliation settings."""

    max_concurrency: int = 3
    worker_id: str = "genrelay-worker"
    poll_interval_seconds: float = 2.0
    poll_timeout_seconds: float = 300.0
    idle_poll_seconds: float = 1.0
    reconcile_grace_seconds: int = 3_600
    sweep_interval_seconds: int = 600
    parked_notice_ttl_seconds: int = 3_600


@dataclass(slots=True)
class RetrySettings:
    """Per-kind retry budget and backoff bases."""

    max_attempts: dict[str, int] = field(
        default_factory=lambda: {"image": 3, "video": 2, "chat": 5},
    )
    base_seconds: dict[str, float] = field(
        default_factory=lambda: {"image": 2.0, "video": 5.0, "chat": 1.0},
    )
    max_seconds: float = 60.0


@dataclass(slots=True)
class CacheSettings:
    """Result cache backend and per-kind TTLs."""

    backend: str = "sqlite"
    ttl_seconds: dict[str, int] = field(
        default_factory=lambda: {"image": 3_600, "video": 7_200, "chat": 1_800},
    )


@dataclass(slots=True)
class SessionSettings:
    """Owner session store settings."""

    backend: str = "sqlite"
    ttl_seconds: int = 900


@dataclass(slots=True)
class LedgerSettings:
    """Token ledger settings."""

    initial_balance: int = 10
    token_costs: str = ""


@dataclass(slots=True)
class ProviderSettings:
    """Provider adapter wiring."""

    http_providers: dict[str, str] = field(default_factory=dict)
    echo_enabled: bool = True
    callback_providers: tuple[str, ...] = ()
    request_timeout_seconds: float = 30.0
    api_key: str | None = None


@dataclass(slots=True)
class NotifierSettings:
    """Owner notification delivery."""

    webhook_url: str | None = None
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class CallbackServerSettings:
    """Inbound provider callback HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".genrelay.db")
    sqlite_busy_timeout_ms: int = 5_000
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    notifier: NotifierSettings = field(default_factory=NotifierSettings)
    callback_server: CallbackServerSettings = field(default_factory=CallbackServerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("GENRELAY_DB_PATH", ".genrelay.db")),
            sqlite_busy_timeout_ms=int(os.getenv("GENRELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            orchestrator=OrchestratorSettings(
                max_concurrency=int(os.getenv("GENRELAY_MAX_CONCURRENCY", "3")),
                worker_id=os.getenv("GENRELAY_WORKER_ID", "genrelay-worker"),
                poll_interval_seconds=float(os.getenv("GENRELAY_POLL_INTERVAL_SECONDS", "2.0")),
                poll_timeout_seconds=float(os.getenv("GENRELAY_POLL_TIMEOUT_SECONDS", "300")),
                idle_poll_seconds=float(os.getenv("GENRELAY_IDLE_POLL_SECONDS", "1.0")),
                reconcile_grace_seconds=int(
                    os.getenv("GENRELAY_RECONCILE_GRACE_SECONDS", "3600"),
                ),
                sweep_interval_seconds=int(os.getenv("GENRELAY_SWEEP_INTERVAL_SECONDS", "600")),
                parked_notice_ttl_seconds=int(
                    os.getenv("GENRELAY_PARKED_NOTICE_TTL_SECONDS", "3600"),
                ),
            ),
            retry=RetrySettings(
                max_attempts={
                    kind: int(os.getenv(f"GENRELAY_RETRY_MAX_ATTEMPTS_{kind.upper()}", default))
                    for kind, default in (("image", "3"), ("video", "2"), ("chat", "5"))
                },
                base_seconds={
                    kind: float(
                        os.getenv(
                            f"GENRELAY_RETRY_BASE_SECONDS_{kind.upper()}",
                            str(default),
                        ),
                    )
                    for kind, default in (("image", 2.0), ("video", 5.0), ("chat", 1.0))
                },
                max_seconds=float(os.getenv("GENRELAY_RETRY_MAX_SECONDS", "60")),
            ),
            cache=CacheSettings(
                backend=os.getenv("GENRELAY_CACHE_BACKEND", "sqlite").strip().lower(),
                ttl_seconds={
                    kind: int(os.getenv(f"GENRELAY_CACHE_TTL_{kind.upper()}_SECONDS", default))
                    for kind, default in (("image", "3600"), ("video", "7200"), ("chat", "1800"))
                },
            ),
            sessions=SessionSettings(
                backend=os.getenv("GENRELAY_SESSION_BACKEND", "sqlite").strip().lower(),
                ttl_seconds=int(os.getenv("GENRELAY_SESSION_TTL_SECONDS", "900")),
            ),
            ledger=LedgerSettings(
                initial_balance=int(os.getenv("GENRELAY_INITIAL_BALANCE", "10")),
                token_costs=os.getenv("GENRELAY_TOKEN_COSTS", ""),
            ),
            providers=ProviderSettings(
                http_providers=_collect_http_providers(),
                echo_enabled=_env_bool("GENRELAY_ECHO_PROVIDER_ENABLED", default=True),
                callback_providers=_csv_tuple(os.getenv("GENRELAY_CALLBACK_PROVIDERS", "")),
                request_timeout_seconds=float(
                    os.getenv("GENRELAY_PROVIDER_TIMEOUT_SECONDS", "30"),
                ),
                api_key=os.getenv("GENRELAY_PROVIDER_API_KEY") or None,
            ),
            notifier=NotifierSettings(
                webhook_url=os.getenv("GENRELAY_NOTIFY_WEBHOOK_URL") or None,
                timeout_seconds=float(os.getenv("GENRELAY_NOTIFY_TIMEOUT_SECONDS", "10")),
            ),
            callback_server=CallbackServerSettings(
                host=os.getenv("GENRELAY_CALLBACK_HOST", "127.0.0.1"),
                port=int(os.getenv("GENRELAY_CALLBACK_PORT", "8080")),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("GENRELAY_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        orchestrator = self.orchestrator
        if orchestrator.max_concurrency <= 0:
            raise ValueError("GENRELAY_MAX_CONCURRENCY must be > 0.")
        if not orchestrator.worker_id.strip():
            raise ValueError("GENRELAY_WORKER_ID must not be empty.")
        if orchestrator.poll_interval_seconds < 0:
            raise ValueError("GENRELAY_POLL_INTERVAL_SECONDS must be >= 0.")
        if orchestrator.poll_timeout_seconds <= 0:
            raise ValueError("GENRELAY_POLL_TIMEOUT_SECONDS must be > 0.")
        if orchestrator.idle_poll_seconds < 0:
            raise ValueError("GENRELAY_IDLE_POLL_SECONDS must be >= 0.")
        if orchestrator.reconcile_grace_seconds <= 0:
            raise ValueError("GENRELAY_RECONCILE_GRACE_SECONDS must be > 0.")
        if orchestrator.reconcile_grace_seconds <= orchestrator.poll_timeout_seconds:
            raise ValueError(
                "GENRELAY_RECONCILE_GRACE_SECONDS must be greater than "
                "GENRELAY_POLL_TIMEOUT_SECONDS.",
            )
        if orchestrator.sweep_interval_seconds < 0:
            raise ValueError("GENRELAY_SWEEP_INTERVAL_SECONDS must be >= 0.")
        if orchestrator.parked_notice_ttl_seconds <= 0:
            raise ValueError("GENRELAY_PARKED_NOTICE_TTL_SECONDS must be > 0.")

        for kind, attempts in self.retry.max_attempts.items():
            if attempts <= 0:
                raise ValueError(f"GENRELAY_RETRY_MAX_ATTEMPTS_{kind.upper()} must be > 0.")
        for kind, base in self.retry.base_seconds.items():
            if base < 0:
                raise ValueError(f"GENRELAY_RETRY_BASE_SECONDS_{kind.upper()} must be >= 0.")
        if self.retry.max_seconds < 0:
            raise ValueError("GENRELAY_RETRY_MAX_SECONDS must be >= 0.")

        if self.cache.backend not in {"memory", "sqlite"}:
            raise ValueError(
                f"GENRELAY_CACHE_BACKEND must be 'memory' or 'sqlite', got {self.cache.backend!r}.",
            )
        for kind, ttl in self.cache.ttl_seconds.items():
            if ttl <= 0:
                raise ValueError(f"GENRELAY_CACHE_TTL_{kind.upper()}_SECONDS must be > 0.")
        if self.sessions.backend not in {"memory", "sqlite"}:
            raise ValueError(
                "GENRELAY_SESSION_BACKEND must be 'memory' or 'sqlite', "
                f"got {self.sessions.backend!r}.",
            )
        if self.sessions.ttl_seconds <= 0:
            raise ValueError("GENRELAY_SESSION_TTL_SECONDS must be > 0.")
        if self.ledger.initial_balance < 0:
            raise ValueError("GENRELAY_INITIAL_BALANCE must be >= 0.")
        if self.providers.request_timeout_seconds <= 0:
            raise ValueError("GENRELAY_PROVIDER_TIMEOUT_SECONDS must be > 0.")
        if self.notifier.webhook_url is not None:
            _validate_http_url(self.notifier.webhook_url, env_name="GENRELAY_NOTIFY_WEBHOOK_URL")
        if not 0 < self.callback_server.port < 65_536:
            raise ValueError("GENRELAY_CALLBACK_PORT must be between 1 and 65535.")


def _collect_http_providers() -> dict[str, str]:
    raw = os.getenv("GENRELAY_HTTP_PROVIDERS", "").strip()
    if not raw:
        return {}

    providers: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid GENRELAY_HTTP_PROVIDERS entry: "
                f"{token!r}. Expected format '<name>|<base_url>'.",
            )
        name, base_url = token.split("|", 1)
        name = name.strip().lower()
        base_url = base_url.strip().rstrip("/")
        if not name:
            raise ValueError(f"Invalid GENRELAY_HTTP_PROVIDERS entry: {token!r} (empty name).")
        _validate_http_url(base_url, env_name="GENRELAY_HTTP_PROVIDERS")
        providers[name] = base_url
    return providers


def _csv_tuple(raw: str) -> tuple[str, ...]:
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip().lower()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _validate_http_url(value: str, *, env_name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid URL in {env_name}: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
