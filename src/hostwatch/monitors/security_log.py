"""Security event feed monitor.

Reads a JSON-lines export of Windows Security records, one record per line,
and turns remote-desktop logon records into LoginEvents. The exporter is
expected to append to the file and may rotate it.
"""

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..core.events import UNKNOWN, LoginEvent, LoginEventKind

logger = logging.getLogger(__name__)

EVENT_KINDS = {
    4625: LoginEventKind.FAILED_LOGIN,
    4624: LoginEventKind.SUCCESSFUL_LOGIN,
    4647: LoginEventKind.LOGOFF_INITIATED,
    4634: LoginEventKind.SESSION_ENDED,
}

REMOTE_INTERACTIVE_LOGON = "10"

_ACCOUNT_NAME_RE = re.compile(r"Account Name:\s*([^\r\n\t]+)")
_SOURCE_ADDRESS_RE = re.compile(r"Source Network Address:\s*([^\r\n\t]+)")
_LOGON_TYPE_RE = re.compile(r"Logon Type:\s*(\d+)")
_MS_DATE_RE = re.compile(r"/Date\((\d+)\)/")


def _first(record: dict, *names: str):
    for name in names:
        value = record.get(name)
        if value not in (None, ""):
            return value
    return None


def _parse_timestamp(value) -> datetime:
    if isinstance(value, str):
        match = _MS_DATE_RE.search(value)
        if match:
            return datetime.fromtimestamp(int(match.group(1)) / 1000, UTC)
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, UTC)
    return datetime.now(UTC)


def _last_known(pattern: re.Pattern, message: str) -> str | None:
    """Last non-placeholder value of a `Label: value` field in message."""
    values = [v.strip() for v in pattern.findall(message)]
    values = [v for v in values if v and v != "-"]
    return values[-1] if values else None


def parse_record(line: str) -> LoginEvent | None:
    """
    Parse one exported security record.

    Returns:
        A LoginEvent for logon records of interest, or None for anything
        else (other event ids, non-RDP logon types, malformed lines)
    """
    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        logger.debug(f"Skipping malformed record: {e}")
        return None
    if not isinstance(record, dict):
        return None

    try:
        event_id = int(_first(record, "EventID", "EventId", "Id"))
    except (TypeError, ValueError):
        return None
    kind = EVENT_KINDS.get(event_id)
    if kind is None:
        return None

    message = str(record.get("Message") or "")
    logon_type = _first(record, "LogonType")
    if logon_type is None:
        match = _LOGON_TYPE_RE.search(message)
        logon_type = match.group(1) if match else None
    if logon_type is not None and str(logon_type).strip() != REMOTE_INTERACTIVE_LOGON:
        return None

    username = _first(record, "TargetUserName", "Username", "UserName")
    if username is None:
        username = _last_known(_ACCOUNT_NAME_RE, message)
    source_ip = _first(record, "IpAddress", "SourceIP", "SourceIp")
    if source_ip is None:
        source_ip = _last_known(_SOURCE_ADDRESS_RE, message)

    return LoginEvent(
        timestamp=_parse_timestamp(_first(record, "TimeCreated", "TimeGenerated")),
        username=username or UNKNOWN,
        source_ip=source_ip or UNKNOWN,
        computer=_first(record, "Computer", "MachineName") or UNKNOWN,
        kind=kind,
        event_id=event_id,
        description=message,
    )


class _TailReader:
    """Incrementally read complete lines appended to a file."""

    def __init__(self, path: Path):
        self.path = path
        self._inode: int | None = None
        self._position = 0
        self._partial = ""

    def start_at_end(self) -> None:
        stat = self.path.stat()
        self._inode = stat.st_ino
        self._position = stat.st_size
        self._partial = ""

    def read_lines(self) -> list[str]:
        """Return lines completed since the last call."""
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return []

        if self._inode is not None and (
            stat.st_ino != self._inode or stat.st_size < self._position
        ):
            logger.info(f"Security event feed {self.path} was rotated")
            self._position = 0
            self._partial = ""
        self._inode = stat.st_ino

        if stat.st_size <= self._position:
            return []

        with open(self.path, encoding="utf-8", errors="replace") as f:
            f.seek(self._position)
            content = f.read()
            self._position = f.tell()

        lines = (self._partial + content).split("\n")
        self._partial = lines.pop()
        return [line for line in lines if line.strip()]


class _FeedChangeHandler(FileSystemEventHandler):
    """Wake the monitor loop when the feed file changes."""

    def __init__(self, path: Path, loop: asyncio.AbstractEventLoop):
        self.path = path
        self.loop = loop
        self.changed = asyncio.Event()

    def _notify(self, event: FileSystemEvent):
        paths = {str(event.src_path), str(getattr(event, "dest_path", "") or "")}
        if str(self.path) in paths:
            self.loop.call_soon_threadsafe(self.changed.set)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._notify(event)

    def on_created(self, event: FileSystemEvent):
        self._notify(event)

    def on_moved(self, event: FileSystemEvent):
        self._notify(event)


class SecurityLogMonitor:
    """Monitor the security event feed for remote-desktop logon events."""

    def __init__(self, log_path: str, poll_interval: float = 1.0):
        self.log_path = Path(log_path)
        self.poll_interval = poll_interval

    def parse_line(self, line: str) -> LoginEvent | None:
        return parse_record(line)

    def _drain(self, reader: _TailReader) -> list[LoginEvent]:
        events = []
        for line in reader.read_lines():
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
        return events

    async def monitor(self) -> AsyncIterator[LoginEvent]:
        """Yield logon events appended to the feed from now on."""
        logger.info(f"Starting security event monitor on {self.log_path}")

        reader = _TailReader(self.log_path)
        try:
            reader.start_at_end()
        except OSError as e:
            logger.error(f"Cannot access security event feed {self.log_path}: {e}")
            return

        try:
            async for event in self._monitor_with_watchdog(reader):
                yield event
        except OSError as e:
            logger.warning(f"Watchdog monitoring failed: {e}, falling back to polling")
            async for event in self._monitor_with_polling(reader):
                yield event

    async def _monitor_with_watchdog(
        self, reader: _TailReader
    ) -> AsyncIterator[LoginEvent]:
        handler = _FeedChangeHandler(self.log_path, asyncio.get_running_loop())
        observer = Observer()
        observer.schedule(handler, str(self.log_path.parent), recursive=False)
        observer.start()
        logger.info("Watchdog-based monitoring active")

        try:
            while True:
                try:
                    await asyncio.wait_for(handler.changed.wait(), timeout=1.0)
                except TimeoutError:
                    # catches appends that raced with the last read
                    pass
                handler.changed.clear()
                for event in self._drain(reader):
                    yield event
        finally:
            observer.stop()
            observer.join()

    async def _monitor_with_polling(
        self, reader: _TailReader
    ) -> AsyncIterator[LoginEvent]:
        logger.info("Polling-based monitoring active")
        while True:
            try:
                for event in self._drain(reader):
                    yield event
                await asyncio.sleep(self.poll_interval)
            except OSError as e:
                logger.error(f"Error polling security event feed: {e}")
                await asyncio.sleep(5.0)
