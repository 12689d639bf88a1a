"""
Installer settings.

Each value is read from the process environment first, then from ``.env`` in
the working directory. A bad value fails at import with a message naming the
variable.
"""
from os import environ
from pathlib import Path

PROJECT_ROOT = Path.cwd().resolve()

_BOOL_WORDS = {
    "1": True, "true": True, "yes": True, "on": True,
    "0": False, "false": False, "no": False, "off": False,
}


def _unquote(value):
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        return value[1:-1]
    return value


def _load_dotenv(dotenv_path):
    """Copy KEY=VALUE lines into os.environ without overriding set variables."""
    if not dotenv_path.is_file():
        return
    with open(dotenv_path, encoding="utf-8") as handle:
        for line in handle:
            key, sep, value = line.strip().partition("=")
            key = key.strip()
            if not sep or not key or key.startswith("#"):
                continue
            environ.setdefault(key, _unquote(value.strip()))


_load_dotenv(PROJECT_ROOT / ".env")


def _env_raw(name):
    """Stripped value of ``name``, None when unset or blank."""
    return environ.get(name, "").strip() or None


def _in_range(name, value, min_value=None, max_value=None):
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}, got {value}")
    if max_value is not None and value > max_value:
        raise ValueError(f"{name} must be <= {max_value}, got {value}")
    return value


def _env_number(name, default, parse, label, min_value=None, max_value=None):
    raw = _env_raw(name)
    if raw is None:
        value = default
    else:
        try:
            value = parse(raw)
        except ValueError as e:
            raise ValueError(f"{name} must be {label}, got '{raw}'") from e
    return _in_range(name, value, min_value, max_value)


def _env_int(name, default, min_value=None, max_value=None):
    return _env_number(name, default, int, "an integer", min_value, max_value)


def _env_float(name, default, min_value=None):
    return _env_number(name, default, float, "a float", min_value)


def _env_str(name, default):
    raw = _env_raw(name)
    return default if raw is None else raw


def _env_path(name, default):
    return Path(_env_str(name, str(default))).expanduser()


def _env_bool(name, default=False):
    raw = _env_raw(name)
    if raw is None:
        return default
    if raw.lower() not in _BOOL_WORDS:
        raise ValueError(f"{name} must be boolean-like, got '{raw}'")
    return _BOOL_WORDS[raw.lower()]


def _env_choice(name, default, choices):
    value = _env_str(name, default).lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {sorted(choices)}, got '{value}'")
    return value


LOG_DIR = _env_path("LOG_DIR", PROJECT_ROOT / "logs")
APK_REPO_DIR = _env_path("APK_REPO_DIR", PROJECT_ROOT / "apks")

ADB_BIN = _env_path("ADB_BIN", "adb")
AAPT_BIN = _env_path("AAPT_BIN", "aapt")

ADB_DEFAULT_TIMEOUT = _env_int("ADB_DEFAULT_TIMEOUT", 60, 1, 600)
INSTALL_TIMEOUT = _env_int("INSTALL_TIMEOUT", 300, 10, 3600)

MAX_RETRIES = _env_int("MAX_RETRIES", 2, 0, 100)
RETRY_DELAY = _env_float("RETRY_DELAY", 1.0, 0.0)
UNIT_DELAY = _env_float("UNIT_DELAY", 0.5, 0.0)
DEVICE_DELAY = _env_float("DEVICE_DELAY", 1.0, 0.0)

DEFAULT_REINSTALL = _env_bool("DEFAULT_REINSTALL", True)
DEFAULT_GRANT_PERMISSIONS = _env_bool("DEFAULT_GRANT_PERMISSIONS", False)
DEFAULT_ALLOW_DOWNGRADE = _env_bool("DEFAULT_ALLOW_DOWNGRADE", False)
SPLIT_MATCH_MODE = _env_choice("SPLIT_MATCH_MODE", "relaxed", {"strict", "relaxed", "base_only"})
INSTALL_STRATEGY = _env_choice("INSTALL_STRATEGY", "auto", {"auto", "install_multiple", "pm_session"})
MAX_PARALLEL_DEVICES = _env_int("MAX_PARALLEL_DEVICES", 1, 1, 64)

MONITOR_FAST_INTERVAL = _env_float("MONITOR_FAST_INTERVAL", 0.5, 0.1)
MONITOR_SLOW_INTERVAL = _env_float("MONITOR_SLOW_INTERVAL", 2.0, 0.1)

NOTIFY_WEBHOOK_URL = _env_str("NOTIFY_WEBHOOK_URL", "")
NOTIFY_TIMEOUT = _env_int("NOTIFY_TIMEOUT", 10, 1, 120)

# Install-time heuristics for choosing the pm session strategy
SESSION_MIN_FILES = 10
SESSION_MAX_PATH_LENGTH = 200
SESSION_MIN_TOTAL_BYTES = 100 * 1024 * 1024
SESSION_CHUNK_SIZE = 256 * 1024
