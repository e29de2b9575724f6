"""recongraph configuration via environment variables.

Every tunable is read from a RECON_* variable once, when Settings is
constructed. Per-call arguments (thresholds, run options) override these
defaults; nothing here is consulted again after the engine is built.
"""

import os
import logging

logger = logging.getLogger("recongraph.config")


def _int_env(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


class Settings:
    """All configuration sourced from environment."""

    def __init__(self):
        # Core
        self.version = "0.1.0"
        self.log_level = os.environ.get("RECON_LOG_LEVEL", "info")
        self.api_port = _int_env("RECON_API_PORT", "8080")
        self.state_path = os.environ.get("RECON_STATE_PATH", "")

        # Graph growth limits (0 = unbounded)
        self.max_nodes_warn = _int_env("RECON_MAX_NODES_WARN", "0")
        self.max_nodes_cap = _int_env("RECON_MAX_NODES_CAP", "0")

        # Transform orchestration
        self.heartbeat_interval = _float_env("RECON_HEARTBEAT_INTERVAL", "10")
        self.noise_threshold = _int_env("RECON_NOISE_THRESHOLD", "10")
        self.transform_concurrency = _int_env("RECON_TRANSFORM_CONCURRENCY", "5")

        # HTTP substrate used by transforms
        self.http_retries = _int_env("RECON_HTTP_RETRIES", "5")
        self.http_timeout = _float_env("RECON_HTTP_TIMEOUT", "30")

        # Third-party credentials
        self.shodan_key = os.environ.get("SHODAN_KEY", "")

        if self.max_nodes_warn < 0 or self.max_nodes_cap < 0:
            raise ValueError("Node thresholds must be zero or positive")

        logger.debug(
            "Settings loaded: warn=%d cap=%d heartbeat=%ss noise=%d",
            self.max_nodes_warn, self.max_nodes_cap,
            self.heartbeat_interval, self.noise_threshold,
        )


settings = Settings()
