"""Configuration handling for hostwatch."""

from datetime import timedelta
from pathlib import Path

import toml
from pydantic import BaseModel, Field, HttpUrl

DEFAULT_COMMON_PORTS = [
    21, 22, 23, 25, 53, 80, 110, 143, 443, 993, 995, 3389, 5900, 8080
]


class LoginConfig(BaseModel):
    """Configuration for remote-desktop logon correlation."""

    security_log_path: str = "/var/log/hostwatch/security-events.jsonl"
    max_failed_attempts: int = Field(default=5, ge=1)
    time_window_seconds: int = Field(default=900, gt=0)
    sweep_interval_seconds: float = Field(default=1.0, gt=0, le=1.0)

    @property
    def time_window(self) -> timedelta:
        return timedelta(seconds=self.time_window_seconds)


class DiscoveryConfig(BaseModel):
    """Configuration for local network discovery."""

    enabled: bool = True
    vendor_database_path: str = "MAC.db"
    local_ip: str | None = None
    fallback_ip: str = "192.168.1.100"

    ping_concurrency: int = Field(default=50, ge=1)
    dns_concurrency: int = Field(default=20, ge=1)
    ping_timeouts_ms: list[int] = [1000, 2000, 3000]
    refresh_ping_timeout_ms: int = 1000
    arp_refresh_ping_timeout_ms: int = 100
    dns_timeout_seconds: float = 3.0
    common_ports: list[int] = DEFAULT_COMMON_PORTS
    port_timeout_ms: int = 100
    arp_port_scan_limit: int = 20
    arp_settle_seconds: float = 2.0

    arp_ingest_timeout_seconds: float = 60
    ping_sweep_timeout_seconds: float = 180
    dns_sweep_timeout_seconds: float = 30
    arp_refresh_timeout_seconds: float = 30

    status_refresh_interval_seconds: int = 10
    auto_scan_enabled: bool = True
    auto_scan_interval_seconds: int = 300


class DiscordConfig(BaseModel):
    """Discord webhook alert configuration."""

    enabled: bool = False
    webhook_url: HttpUrl | None = None


class AlertsConfig(BaseModel):
    """Alert system configuration."""

    enabled: bool = True
    alert_on_new_devices: bool = True
    discord: DiscordConfig = DiscordConfig()


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: str | None = None
    max_size_mb: int = 100
    backup_count: int = 5


class Config(BaseModel):
    """Main configuration class."""

    login: LoginConfig = LoginConfig()
    discovery: DiscoveryConfig = DiscoveryConfig()
    alerts: AlertsConfig = AlertsConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def load(cls, config_path: Path) -> "Config":
        """Load configuration from TOML file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            data = toml.load(f)

        return cls(**data)
