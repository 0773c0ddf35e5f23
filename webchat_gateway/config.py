"""Configuration management for the web chat gateway."""

import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

STRATEGY_ROUND_ROBIN = "round-robin"
STRATEGY_RANDOM = "random"
POOL_STRATEGIES = (STRATEGY_ROUND_ROBIN, STRATEGY_RANDOM)


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    host: str = "127.0.0.1"
    port: int = 3000
    api_key: str = ""
    data_dir: str = "./data"
    rate_limits: Dict[str, int] = field(default_factory=dict)
    pool_strategy: str = STRATEGY_ROUND_ROBIN
    failure_threshold: int = 5
    failover_delay_seconds: float = 1.0
    auto_refresh_enabled: bool = True
    refresh_lead_minutes: int = 10
    refresh_interval_seconds: int = 60
    expiring_soon_minutes: int = 30
    upstream_timeout_seconds: float = 300.0
    log_level: str = "INFO"

    def __post_init__(self):
        if self.pool_strategy not in POOL_STRATEGIES:
            raise ValueError(
                f"POOL_STRATEGY must be one of {', '.join(POOL_STRATEGIES)}"
            )
        if self.failure_threshold < 1:
            raise ValueError("CREDENTIAL_FAILURE_THRESHOLD must be at least 1")
        if self.failover_delay_seconds < 0:
            raise ValueError("FAILOVER_DELAY_SECONDS must not be negative")
        if self.refresh_interval_seconds <= 0:
            raise ValueError("REFRESH_INTERVAL_SECONDS must be positive")

    @property
    def auth_enabled(self) -> bool:
        return bool(self.api_key)


def parse_rate_limits(raw: str) -> Dict[str, int]:
    """Parse ``deepseek=3,claude=0`` into a provider -> max-per-minute map.

    A limit of zero or less means unlimited.
    """
    limits: Dict[str, int] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        provider_id, sep, value = item.partition("=")
        if not sep or not provider_id.strip():
            raise ValueError(f"Invalid RATE_LIMITS entry: {item!r}")
        try:
            limits[provider_id.strip()] = int(value.strip())
        except ValueError:
            raise ValueError(f"Invalid RATE_LIMITS value for {provider_id!r}")
    return limits


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If environment variables are malformed
    """
    if use_dotenv:
        load_dotenv()

    return Config(
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "3000")),
        api_key=os.getenv("PROXY_API_KEY", "").strip(),
        data_dir=os.getenv("DATA_DIR", "./data"),
        rate_limits=parse_rate_limits(os.getenv("RATE_LIMITS", "")),
        pool_strategy=os.getenv("POOL_STRATEGY", STRATEGY_ROUND_ROBIN),
        failure_threshold=int(os.getenv("CREDENTIAL_FAILURE_THRESHOLD", "5")),
        failover_delay_seconds=float(os.getenv("FAILOVER_DELAY_SECONDS", "1.0")),
        auto_refresh_enabled=_env_bool("AUTO_REFRESH_ENABLED", "true"),
        refresh_lead_minutes=int(os.getenv("REFRESH_LEAD_MINUTES", "10")),
        refresh_interval_seconds=int(os.getenv("REFRESH_INTERVAL_SECONDS", "60")),
        expiring_soon_minutes=int(os.getenv("EXPIRING_SOON_MINUTES", "30")),
        upstream_timeout_seconds=float(
            os.getenv("UPSTREAM_TIMEOUT_SECONDS", "300")
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
