"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "QueueSettings",
    "DispatchSettings",
    "BrowserSettings",
    "AnthropicSettings",
    "AgentSettings",
    "StorageSettings",
    "TelemetrySettings",
    "Settings",
    "load_config",
    "get_settings",
]

_DEFAULT_BROWSER_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-web-security",
    "--disable-features=VizDisplayCompositor",
    "--disable-extensions",
    "--disable-plugins",
    "--single-process",
    "--no-zygote",
)
_DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Redis/memory queue knobs mirroring FIFO-queue semantics."""

    backend: str
    redis_host: str
    redis_port: int
    redis_database: int
    redis_password: str | None
    prefix: str
    dedup_window_seconds: float
    visibility_timeout_seconds: float
    max_receive_count: int


@dataclass(frozen=True, slots=True)
class DispatchSettings:
    """Dispatcher concurrency and worker routing."""

    max_concurrency: int
    poll_interval_seconds: float
    invocation_timeout_seconds: float
    container_endpoints: dict[str, str]
    local_containers: tuple[str, ...]
    embedded: bool


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Launch options for the shared headless browser session."""

    headless: bool
    channel: str
    idle_timeout_seconds: float
    viewport_width: int
    viewport_height: int
    user_agent: str
    launch_args: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class AnthropicSettings:
    """Upstream LLM provider credentials and quota guard thresholds."""

    api_key: str | None
    base_url: str
    model: str
    api_version: str
    beta: str | None
    request_timeout_seconds: float
    min_input_tokens: int
    low_input_tokens: int
    min_requests: int
    reset_buffer_seconds: float
    rate_limit_penalty_seconds: float
    overload_retry_delays: tuple[float, ...]


@dataclass(frozen=True, slots=True)
class AgentSettings:
    """Budgets for the tool-calling loop."""

    max_steps: int
    max_tokens: int
    max_response_tokens: int
    max_consecutive_errors: int
    memory_last_messages: int = 1


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem + SQLite layout for job results."""

    results_root: Path
    db_path: Path
    region: str
    version: str


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    """Ports for the Prometheus exporter."""

    prometheus_port: int


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    queue: QueueSettings
    dispatch: DispatchSettings
    browser: BrowserSettings
    anthropic: AnthropicSettings
    agent: AgentSettings
    storage: StorageSettings
    telemetry: TelemetrySettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the repository .env file.

    Environment variables always win; the .env file is optional.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _float(cfg: DecoupleConfig, key: str, *, default: float) -> float:
    return cfg(key, cast=float, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _csv_tuple(cfg: DecoupleConfig, key: str) -> tuple[str, ...]:
    raw = cfg(key, default="")
    if not raw:
        return tuple()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _float_tuple(cfg: DecoupleConfig, key: str, *, default: tuple[float, ...]) -> tuple[float, ...]:
    parts = _csv_tuple(cfg, key)
    if not parts:
        return default
    try:
        return tuple(float(part) for part in parts)
    except ValueError as exc:
        raise ValueError(f"{key} must be a comma separated list of seconds") from exc


def parse_container_endpoints(raw: str) -> dict[str, str]:
    """Parse ``name=url,name2=url2`` into a routing table."""

    endpoints: dict[str, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, url = part.partition("=")
        if not sep or not name.strip() or not url.strip():
            raise ValueError(f"Invalid CONTAINER_ENDPOINTS entry '{part}' (expected name=url)")
        endpoints[name.strip()] = url.strip()
    return endpoints


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    queue = QueueSettings(
        backend=cfg("QUEUE_BACKEND", default="memory").strip().lower(),
        redis_host=cfg("REDIS_HOST", default="localhost"),
        redis_port=_int(cfg, "REDIS_PORT", default=6379),
        redis_database=_int(cfg, "REDIS_DATABASE", default=0),
        redis_password=cfg("REDIS_PASSWORD", default=None),
        prefix=cfg("QUEUE_PREFIX", default="agentjobs"),
        dedup_window_seconds=_float(cfg, "QUEUE_DEDUP_WINDOW_SECONDS", default=300.0),
        visibility_timeout_seconds=_float(cfg, "QUEUE_VISIBILITY_TIMEOUT_SECONDS", default=600.0),
        max_receive_count=_int(cfg, "QUEUE_MAX_RECEIVE_COUNT", default=3),
    )
    if queue.backend not in {"memory", "redis"}:
        msg = "QUEUE_BACKEND must be 'memory' or 'redis'"
        raise ValueError(msg)

    dispatch = DispatchSettings(
        max_concurrency=_int(cfg, "DISPATCH_MAX_CONCURRENCY", default=4),
        poll_interval_seconds=_float(cfg, "DISPATCH_POLL_INTERVAL_SECONDS", default=1.0),
        invocation_timeout_seconds=_float(cfg, "WORKER_INVOCATION_TIMEOUT_SECONDS", default=360.0),
        container_endpoints=parse_container_endpoints(cfg("CONTAINER_ENDPOINTS", default="")),
        local_containers=_csv_tuple(cfg, "LOCAL_CONTAINERS") or ("browser_automation", "qa"),
        embedded=_bool(cfg, "DISPATCH_EMBEDDED", default=True),
    )
    if dispatch.invocation_timeout_seconds >= queue.visibility_timeout_seconds:
        msg = "WORKER_INVOCATION_TIMEOUT_SECONDS must be below QUEUE_VISIBILITY_TIMEOUT_SECONDS"
        raise ValueError(msg)

    browser = BrowserSettings(
        headless=_bool(cfg, "BROWSER_HEADLESS", default=True),
        channel=cfg("BROWSER_CHANNEL", default="chromium"),
        idle_timeout_seconds=_float(cfg, "BROWSER_IDLE_TIMEOUT_SECONDS", default=900.0),
        viewport_width=_int(cfg, "BROWSER_VIEWPORT_WIDTH", default=1280),
        viewport_height=_int(cfg, "BROWSER_VIEWPORT_HEIGHT", default=1024),
        user_agent=cfg("BROWSER_USER_AGENT", default=_DEFAULT_USER_AGENT),
        launch_args=_csv_tuple(cfg, "BROWSER_LAUNCH_ARGS") or _DEFAULT_BROWSER_ARGS,
    )
    anthropic = AnthropicSettings(
        api_key=cfg("ANTHROPIC_API_KEY", default=None),
        base_url=cfg("ANTHROPIC_BASE_URL", default="https://api.anthropic.com"),
        model=cfg("ANTHROPIC_MODEL", default="claude-sonnet-4-20250514"),
        api_version=cfg("ANTHROPIC_VERSION", default="2023-06-01"),
        beta=cfg("ANTHROPIC_BETA", default="token-efficient-tools-2025-02-19") or None,
        request_timeout_seconds=_float(cfg, "ANTHROPIC_TIMEOUT_SECONDS", default=120.0),
        min_input_tokens=_int(cfg, "RATE_LIMIT_MIN_INPUT_TOKENS", default=6000),
        low_input_tokens=_int(cfg, "RATE_LIMIT_LOW_INPUT_TOKENS", default=8000),
        min_requests=_int(cfg, "RATE_LIMIT_MIN_REQUESTS", default=1),
        reset_buffer_seconds=_float(cfg, "RATE_LIMIT_RESET_BUFFER_SECONDS", default=1.0),
        rate_limit_penalty_seconds=_float(cfg, "RATE_LIMIT_PENALTY_SECONDS", default=60.0),
        overload_retry_delays=_float_tuple(cfg, "OVERLOAD_RETRY_DELAYS", default=(30.0, 60.0)),
    )
    if anthropic.low_input_tokens < anthropic.min_input_tokens:
        msg = "RATE_LIMIT_LOW_INPUT_TOKENS must be >= RATE_LIMIT_MIN_INPUT_TOKENS"
        raise ValueError(msg)

    agent = AgentSettings(
        max_steps=_int(cfg, "AGENT_MAX_STEPS", default=100),
        max_tokens=_int(cfg, "AGENT_MAX_TOKENS", default=64000),
        max_response_tokens=_int(cfg, "AGENT_MAX_RESPONSE_TOKENS", default=4096),
        max_consecutive_errors=_int(cfg, "AGENT_MAX_CONSECUTIVE_ERRORS", default=2),
        memory_last_messages=_int(cfg, "AGENT_MEMORY_LAST_MESSAGES", default=1),
    )
    storage = StorageSettings(
        results_root=Path(cfg("RESULTS_ROOT", default=".results")),
        db_path=Path(cfg("RESULTS_DB_PATH", default="jobs.db")),
        region=cfg("REGION", default="local"),
        version=cfg("RESULT_VERSION", default="1.0.0"),
    )
    telemetry = TelemetrySettings(
        prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=0),
    )

    return Settings(
        env_path=env_path,
        queue=queue,
        dispatch=dispatch,
        browser=browser,
        anthropic=anthropic,
        agent=agent,
        storage=storage,
        telemetry=telemetry,
    )
