"""Value types shared by the installer components."""
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

import config

STATE_DEVICE = "device"
STATE_UNAUTHORIZED = "unauthorized"
STATE_OFFLINE = "offline"

# Upper bound (inclusive) of each density bucket, in dpi
DENSITY_BUCKETS = [
    ("ldpi", 140),
    ("mdpi", 200),
    ("hdpi", 280),
    ("xhdpi", 400),
    ("xxhdpi", 560),
]
DENSITY_VALUES = {
    "ldpi": 120,
    "mdpi": 160,
    "tvdpi": 213,
    "hdpi": 240,
    "xhdpi": 320,
    "xxhdpi": 480,
    "xxxhdpi": 640,
}


def format_bytes(size):
    """Human readable size, e.g. ``1.5 MB``."""
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    if index == 0:
        return f"{int(value)} B"
    return f"{value:.1f} {units[index]}"


def density_bucket(density):
    for name, upper in DENSITY_BUCKETS:
        if density <= upper:
            return name
    return "xxxhdpi"


class SplitMatchMode(Enum):
    STRICT = "strict"
    RELAXED = "relaxed"
    BASE_ONLY = "base_only"


class InstallStrategy(Enum):
    AUTO = "auto"
    INSTALL_MULTIPLE = "install_multiple"
    PM_SESSION = "pm_session"


class UnitState(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class DeviceInfo:
    serial: str
    state: str
    model: str = ""
    sdk: int = 0
    abilist: Tuple[str, ...] = ()
    density: int = 0
    locale: Optional[str] = None

    @property
    def is_online(self) -> bool:
        return self.state == STATE_DEVICE

    @property
    def is_unauthorized(self) -> bool:
        return self.state == STATE_UNAUTHORIZED

    @property
    def is_offline(self) -> bool:
        return self.state == STATE_OFFLINE

    @property
    def density_bucket(self) -> Optional[str]:
        if self.density <= 0:
            return None
        return density_bucket(self.density)

    def supports_abi(self, abi: Optional[str]) -> bool:
        if not abi:
            return True
        return abi.lower() in (a.lower() for a in self.abilist)

    def label(self) -> str:
        return f"{self.serial} ({self.model})" if self.model else self.serial


@dataclass
class ApkFile:
    path: str
    package_name: str
    is_base: bool = True
    abi: Optional[str] = None
    dpi: Optional[str] = None
    locale: Optional[str] = None
    version_code: int = 0
    split_name: Optional[str] = None
    size_bytes: int = 0
    sha256: Optional[str] = None
    min_sdk: Optional[int] = None

    @property
    def file_name(self) -> str:
        return os.path.basename(self.path)

    @property
    def is_valid(self) -> bool:
        return bool(self.path) and bool(self.package_name)

    @property
    def profile_id(self) -> str:
        return f"{self.abi or 'any'}:{self.dpi or 'any'}:{self.locale or 'any'}"

    @property
    def display_name(self) -> str:
        if self.is_base:
            return f"{self.package_name} (base)"
        return f"{self.package_name} ({self.split_name or 'split'})"

    def as_base(self) -> "ApkFile":
        return replace(self, is_base=True)


@dataclass
class InstallationUnit:
    package_name: str
    files: List[ApkFile]

    @property
    def is_group(self) -> bool:
        return len(self.files) > 1

    @property
    def base_apk(self) -> Optional[ApkFile]:
        return next((f for f in self.files if f.is_base), None)

    @property
    def split_apks(self) -> List[ApkFile]:
        return [f for f in self.files if not f.is_base]

    @property
    def total_size(self) -> int:
        return sum(f.size_bytes for f in self.files)

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    @property
    def is_valid(self) -> bool:
        return bool(self.files) and all(f.is_valid for f in self.files)


@dataclass
class InstallOptions:
    reinstall: bool = True
    allow_downgrade: bool = False
    grant_permissions: bool = False
    user_id: Optional[int] = None
    max_retries: int = 2
    retry_delay: float = 1.0
    unit_delay: float = 0.5
    device_delay: float = 1.0
    split_match: SplitMatchMode = SplitMatchMode.RELAXED
    strategy: InstallStrategy = InstallStrategy.AUTO
    verify_versions: bool = True
    max_parallel_devices: int = 1
    timeout: int = 300
    throttle_mbps: Optional[float] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.max_parallel_devices < 1:
            raise ValueError(f"max_parallel_devices must be >= 1, got {self.max_parallel_devices}")
        if self.user_id is not None and self.user_id < 0:
            raise ValueError(f"user_id must be >= 0, got {self.user_id}")
        for name in ("retry_delay", "unit_delay", "device_delay"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        if self.throttle_mbps is not None and self.throttle_mbps <= 0:
            raise ValueError(f"throttle_mbps must be > 0, got {self.throttle_mbps}")

    @classmethod
    def from_config(cls, **overrides):
        values = dict(
            reinstall=config.DEFAULT_REINSTALL,
            allow_downgrade=config.DEFAULT_ALLOW_DOWNGRADE,
            grant_permissions=config.DEFAULT_GRANT_PERMISSIONS,
            max_retries=config.MAX_RETRIES,
            retry_delay=config.RETRY_DELAY,
            unit_delay=config.UNIT_DELAY,
            device_delay=config.DEVICE_DELAY,
            split_match=SplitMatchMode(config.SPLIT_MATCH_MODE),
            strategy=InstallStrategy(config.INSTALL_STRATEGY),
            max_parallel_devices=config.MAX_PARALLEL_DEVICES,
            timeout=config.INSTALL_TIMEOUT,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def adb_flags(self) -> List[str]:
        flags = []
        if self.reinstall:
            flags.append("-r")
        if self.allow_downgrade:
            flags.append("-d")
        if self.grant_permissions:
            flags.append("-g")
        if self.user_id is not None:
            flags.extend(["--user", str(self.user_id)])
        return flags


@dataclass
class UnitResult:
    serial: str
    package_name: str
    state: UnitState
    attempts: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration: float = 0.0
    files: int = 0

    @property
    def success(self) -> bool:
        return self.state == UnitState.COMPLETED


@dataclass
class DeviceInstallPlan:
    device: DeviceInfo
    units: List[InstallationUnit]
    options: InstallOptions
    rejected: List[UnitResult] = field(default_factory=list)

    @property
    def serial(self) -> str:
        return self.device.serial

    @property
    def can_execute(self) -> bool:
        return self.device.is_online

    @property
    def total_files(self) -> int:
        return sum(len(u.files) for u in self.units)

    @property
    def total_size(self) -> int:
        return sum(u.total_size for u in self.units)

    def summary(self) -> str:
        return f"{len(self.units)} package(s), {self.total_files} file(s), {format_bytes(self.total_size)}"


@dataclass
class InstallationSummary:
    total_devices: int
    results: List[UnitResult]
    duration: float
    started_at: datetime = field(default_factory=datetime.now)
    cancelled: bool = False

    def _count(self, state):
        return sum(1 for r in self.results if r.state == state)

    @property
    def total_units(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return self._count(UnitState.COMPLETED)

    @property
    def failed(self) -> int:
        return self._count(UnitState.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(UnitState.SKIPPED) + self._count(UnitState.CANCELLED)

    @property
    def errors(self) -> List[str]:
        return [f"{r.serial}: {r.package_name} - {r.error}" for r in self.results if r.error]

    @property
    def is_success(self) -> bool:
        return self.failed == 0 and not self.cancelled

    @property
    def success_rate(self) -> float:
        if not self.results:
            return 0.0
        return self.successful / len(self.results)

    def describe(self) -> str:
        minutes, seconds = divmod(int(self.duration), 60)
        text = (f"Completed: {self.successful}/{self.total_units} units on "
                f"{self.total_devices} device(s) in {minutes:02d}:{seconds:02d}")
        if self.failed:
            text += f", {self.failed} failed"
        if self.skipped:
            text += f", {self.skipped} skipped"
        if self.cancelled:
            text += " (cancelled)"
        return text

    def to_dict(self) -> Dict:
        return {
            "started_at": self.started_at.isoformat(timespec="seconds"),
            "duration": round(self.duration, 2),
            "devices": self.total_devices,
            "units": self.total_units,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "results": [
                {
                    "serial": r.serial,
                    "package": r.package_name,
                    "state": r.state.value,
                    "attempts": r.attempts,
                    "error": r.error,
                    "error_code": r.error_code,
                    "duration": round(r.duration, 2),
                }
                for r in self.results
            ],
        }


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)

    @property
    def error_summary(self) -> str:
        return "; ".join(self.errors)


@dataclass
class InstalledApp:
    package_name: str
    apk_path: str
    is_system: bool = False
    version_name: str = ""
    version_code: int = 0
    paths: List[str] = field(default_factory=list)
