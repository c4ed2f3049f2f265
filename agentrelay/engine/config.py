"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars,
or load a YAML file with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

FACTORY_API_KEY_ENV = "FACTORY_API_KEY"
DROID_MODEL_ENV = "DROID_MODEL"
DEFAULT_DROID_MODEL = "claude-sonnet-4-5-20250929"

OPENCODE_MODEL_ENV = "OPENCODE_MODEL"
DEFAULT_OPENCODE_MODEL = "anthropic/claude-3-5-sonnet-20241022"
DEFAULT_OPENCODE_PORT = 4096
DEFAULT_OPENCODE_HOSTNAME = "127.0.0.1"

BACKEND_TYPES = ("exec", "server")

# Appended to the first prompt of a conversation when the operator
# supplies an extra system prompt.
TITLE_INSTRUCTION = """

IMPORTANT: After completing your response, if this is the beginning of a conversation,
please add exactly this XML tag at the end with a 2-5 word summary title:
<change_title>Brief Task Summary</change_title>

This title should describe what the user is asking for in 2-5 words.
Only include this tag once, at the very end of your response."""


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes"}


def resolve_model(
    explicit: str | None,
    env_var: str,
    default: str,
) -> str:
    """Pick a model: explicit value, then environment, then default."""
    if explicit:
        return explicit
    env_model = os.getenv(env_var)
    if env_model:
        logger.debug("Using model from %s: %s", env_var, env_model)
        return env_model
    return default


@dataclass
class ExecBackendConfig:
    """Settings for the subprocess (droid exec) backend."""
    command: str = "droid"
    model: str = DEFAULT_DROID_MODEL
    api_key_env: str = FACTORY_API_KEY_ENV
    enabled_tools: list[str] = field(default_factory=list)
    cwd: str | None = None


@dataclass
class ServerBackendConfig:
    """Settings for the HTTP server (opencode serve) backend."""
    command: str = "opencode"
    model: str = DEFAULT_OPENCODE_MODEL
    base_url: str | None = None
    port: int = DEFAULT_OPENCODE_PORT
    hostname: str = DEFAULT_OPENCODE_HOSTNAME
    start_server: bool = True
    startup_timeout_seconds: float = 30.0
    health_poll_interval_seconds: float = 1.0
    request_timeout_seconds: float = 600.0
    session_title: str = "agentrelay session"
    cwd: str | None = None

    @property
    def url(self) -> str:
        return self.base_url or f"http://{self.hostname}:{self.port}"


@dataclass
class RelayConfig:
    """Session orchestrator configuration."""

    backend: str = "exec"
    cwd: str = "."

    # Dispatch loop fallback poll; bounds shutdown latency.
    poll_interval_seconds: float = 0.1
    # Keep-alive pulse toward the transport.
    keepalive_interval_seconds: float = 2.0
    # Max wait for the operator to answer a forwarded permission
    # request before it is denied. 0 disables the timeout.
    permission_timeout_seconds: float = 300.0
    # Timeout for `<command> --version` style probes.
    probe_timeout_seconds: float = 5.0
    event_queue_size: int = 5000

    log_level: str = "INFO"

    exec_backend: ExecBackendConfig = field(default_factory=ExecBackendConfig)
    server_backend: ServerBackendConfig = field(
        default_factory=ServerBackendConfig
    )

    @classmethod
    def from_env(cls) -> RelayConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("RELAY_")
        }
        if relay_vars:
            logger.info(
                "RelayConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("RelayConfig.from_env: no RELAY_* env vars set, using defaults")

        exec_cfg = ExecBackendConfig(
            command=os.getenv("RELAY_EXEC_COMMAND", "droid"),
            model=resolve_model(None, DROID_MODEL_ENV, DEFAULT_DROID_MODEL),
        )
        server_cfg = ServerBackendConfig(
            command=os.getenv("RELAY_SERVER_COMMAND", "opencode"),
            model=resolve_model(
                None, OPENCODE_MODEL_ENV, DEFAULT_OPENCODE_MODEL,
            ),
            base_url=os.getenv("RELAY_SERVER_URL") or None,
            port=int(os.getenv(
                "RELAY_SERVER_PORT", str(DEFAULT_OPENCODE_PORT)
            )),
            hostname=os.getenv(
                "RELAY_SERVER_HOST", DEFAULT_OPENCODE_HOSTNAME
            ),
            start_server=_env_flag("RELAY_START_SERVER", True),
        )

        config = cls(
            backend=os.getenv("RELAY_BACKEND", cls.backend),
            cwd=os.getenv("RELAY_CWD", cls.cwd),
            poll_interval_seconds=float(os.getenv(
                "RELAY_POLL_INTERVAL", str(cls.poll_interval_seconds)
            )),
            keepalive_interval_seconds=float(os.getenv(
                "RELAY_KEEPALIVE_INTERVAL",
                str(cls.keepalive_interval_seconds),
            )),
            permission_timeout_seconds=float(os.getenv(
                "RELAY_PERMISSION_TIMEOUT",
                str(cls.permission_timeout_seconds),
            )),
            probe_timeout_seconds=float(os.getenv(
                "RELAY_PROBE_TIMEOUT", str(cls.probe_timeout_seconds)
            )),
            event_queue_size=int(os.getenv(
                "RELAY_EVENT_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level),
            exec_backend=exec_cfg,
            server_backend=server_cfg,
        )
        if config.backend not in BACKEND_TYPES:
            logger.warning(
                "Unknown RELAY_BACKEND '%s', falling back to exec",
                config.backend,
            )
            config.backend = "exec"
        logger.info(
            "RelayConfig.from_env: backend=%s cwd=%s log_level=%s",
            config.backend, config.cwd, config.log_level,
        )
        return config
