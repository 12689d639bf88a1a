"""Installation events delivered to observers while a run is in progress."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class EventKind(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"
    COMMAND = "command"
    PROGRESS = "progress"


LOG_LEVELS = {
    EventKind.INFO: logging.INFO,
    EventKind.WARNING: logging.WARNING,
    EventKind.ERROR: logging.ERROR,
    EventKind.SUCCESS: logging.INFO,
    EventKind.COMMAND: logging.DEBUG,
    EventKind.PROGRESS: logging.DEBUG,
}


@dataclass
class InstallationEvent:
    kind: EventKind
    serial: str
    message: str
    progress: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def log_level(self):
        return LOG_LEVELS[self.kind]

    def format(self):
        prefix = f"[{self.serial}] " if self.serial else ""
        return f"{prefix}{self.message}"


def plan_built(serial, units, summary):
    return InstallationEvent(EventKind.INFO, serial, f"Plan built: {units} installation unit(s), {summary}")


def preflight(message):
    return InstallationEvent(EventKind.INFO, "", f"Preflight: {message}")


def device_start(serial, index, total):
    return InstallationEvent(EventKind.INFO, serial, f"Starting device [{index}/{total}]")


def unit_start(serial, package, index, total, file_count):
    plural = "s" if file_count != 1 else ""
    return InstallationEvent(EventKind.INFO, serial,
                             f"[{index}/{total}] Installing {package} ({file_count} file{plural})")


def adb_command(serial, command):
    return InstallationEvent(EventKind.COMMAND, serial, f"ADB: {command}")


def unit_success(serial, package, duration):
    return InstallationEvent(EventKind.SUCCESS, serial, f"SUCCESS {package} ({duration:.1f}s)")


def unit_failure(serial, package, error, will_retry=False):
    suffix = " (will retry)" if will_retry else ""
    return InstallationEvent(EventKind.ERROR, serial, f"FAILED {package}: {error}{suffix}")


def unit_skipped(serial, package, reason):
    return InstallationEvent(EventKind.WARNING, serial, f"SKIPPED {package}: {reason}")


def retry_attempt(serial, package, attempt, max_retries):
    return InstallationEvent(EventKind.WARNING, serial, f"Retry {attempt}/{max_retries} for {package}")


def warning(serial, message):
    return InstallationEvent(EventKind.WARNING, serial, message)


def device_unauthorized(serial):
    return InstallationEvent(EventKind.WARNING, serial,
                             "Device unauthorized - enable USB debugging and accept this computer")


def device_offline(serial):
    return InstallationEvent(EventKind.WARNING, serial, "Device offline - check USB connection")


def split_matching(serial, package, matched, total):
    return InstallationEvent(EventKind.INFO, serial, f"{package}: matched {matched}/{total} APK files")


def device_completed(serial, successful, failed, skipped):
    return InstallationEvent(EventKind.INFO, serial,
                             f"Device completed: {successful} success, {failed} failed, {skipped} skipped")


def all_completed(summary):
    kind = EventKind.SUCCESS if summary.is_success else EventKind.WARNING
    return InstallationEvent(kind, "", f"All installations completed: {summary.describe()}")


def progress(serial, percent, operation):
    return InstallationEvent(EventKind.PROGRESS, serial, operation, progress=percent)
