"""Event and record definitions shared by the correlator and discovery engine."""

import logging
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNKNOWN = "Unknown"


def is_unknown(value: str | None) -> bool:
    """Return True for empty values and the unknown placeholders."""
    if value is None:
        return True
    text = value.strip().lower()
    return text in ("", "-", "unknown", "unknown device")


class Severity(str, Enum):
    """Level attached to log notifications delivered to sinks."""

    DEBUG = "debug"
    INFO = "info"
    SUCCESS = "success"
    NETWORK = "network"
    WARNING = "warning"
    SECURITY = "security"
    ERROR = "error"

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.NETWORK: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.SECURITY: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class LoginEventKind(str, Enum):
    """Kinds of remote-session logon events."""

    FAILED_LOGIN = "failed_login"
    SUCCESSFUL_LOGIN = "successful_login"
    LOGOFF_INITIATED = "logoff_initiated"
    SESSION_ENDED = "session_ended"


class LoginEvent(BaseModel):
    """A normalized remote-desktop logon event."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    username: str = UNKNOWN
    source_ip: str = UNKNOWN
    computer: str = UNKNOWN
    kind: LoginEventKind
    event_id: int | None = None  # Windows Security event id, when known
    description: str = ""

    @field_validator("username", "source_ip", "computer", mode="before")
    @classmethod
    def _fill_missing(cls, value):
        if value is None or is_unknown(str(value)):
            return UNKNOWN
        return str(value).strip()

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def attempt_key(self) -> str:
        """Key of the failed-attempt counter this event belongs to."""
        return f"{self.source_ip}_{self.username}"


class NotificationKind(str, Enum):
    LOGIN_EVENT = "login_event"
    ESCALATION = "escalation"


class LoginNotification(BaseModel):
    """Notification produced by the correlator for one recorded event."""

    model_config = ConfigDict(frozen=True)

    kind: NotificationKind
    key: str
    count: int = 0
    event: LoginEvent


class DeviceStatus(str, Enum):
    ACTIVE = "Active"
    UNREACHABLE = "Unreachable"
    ERROR = "Error"


class NetworkDevice(BaseModel):
    """A device observed on the local network.

    Instances handed to sinks and callers are copies; the registry keeps
    the live records.
    """

    ip_address: str
    mac_address: str = UNKNOWN
    hostname: str = UNKNOWN
    vendor: str = UNKNOWN
    device_type: str = "Unknown device"
    operating_system: str = UNKNOWN
    status: DeviceStatus = DeviceStatus.ACTIVE
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    is_new: bool = False
    open_ports: set[int] = Field(default_factory=set)
    description: str = ""
