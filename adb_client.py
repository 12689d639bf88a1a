import os
import re
import shutil
import time
import queue
import logging
import threading
import subprocess
from pathlib import Path
from config import ADB_BIN, ADB_DEFAULT_TIMEOUT, INSTALL_TIMEOUT, SESSION_CHUNK_SIZE
from models import DeviceInfo, STATE_DEVICE

logger = logging.getLogger("AdbClient")

PROGRESS_RE = re.compile(r"(\d{1,3})%")
SESSION_RE = re.compile(r"\[(\d+)\]")
PROP_RE = re.compile(r"^\[([^\]]+)\]:\s*\[([^\]]*)\]")
FAILURE_CODE_RE = re.compile(r"(INSTALL_(?:PARSE_)?FAILED_[A-Z0-9_]+)")
FAILURE_BRACKET_RE = re.compile(r"Failure \[([^\]]+)\]")
PACKAGE_LINE_RE = re.compile(r"^package:(.+)=([A-Za-z0-9_.]+)$")
WM_DENSITY_RE = re.compile(r"(Physical|Override) density:\s*(\d+)")
VERSION_NAME_RE = re.compile(r"versionName=(\S+)")
VERSION_CODE_RE = re.compile(r"versionCode=(\d+)")

# seconds between cancel/deadline checks while adb is silent
STREAM_POLL_INTERVAL = 0.2

INSTALL_FAILURE_REASONS = {
    "INSTALL_FAILED_ALREADY_EXISTS": "Package already exists. Use reinstall option to replace.",
    "INSTALL_FAILED_INSUFFICIENT_STORAGE": "Insufficient storage space on device.",
    "INSTALL_FAILED_INVALID_APK": "Invalid APK file - check file integrity.",
    "INSTALL_FAILED_MISSING_SPLIT": "Missing required split APK. Add the missing splits or relax split matching.",
    "INSTALL_FAILED_UPDATE_INCOMPATIBLE": "Update incompatible - likely signature mismatch. Uninstall existing app first.",
    "INSTALL_FAILED_NO_MATCHING_ABIS": "No matching ABIs - APK doesn't support device's CPU architecture.",
    "INSTALL_FAILED_OLDER_SDK": "APK requires newer Android version than device supports.",
    "INSTALL_FAILED_DUPLICATE_PACKAGE": "Package already exists with different signature.",
    "INSTALL_FAILED_VERSION_DOWNGRADE": "Cannot downgrade - enable downgrade or uninstall first.",
    "INSTALL_FAILED_TEST_ONLY": "Test-only APK - install with test flag.",
    "INSTALL_FAILED_MISSING_SHARED_LIBRARY": "Device is missing a shared library the APK requires.",
    "INSTALL_FAILED_USER_RESTRICTED": "Installation blocked by the user on the device.",
}

NON_RETRYABLE_CODES = {
    "INSTALL_FAILED_ALREADY_EXISTS",
    "INSTALL_FAILED_INVALID_APK",
    "INSTALL_FAILED_MISSING_SPLIT",
    "INSTALL_FAILED_UPDATE_INCOMPATIBLE",
    "INSTALL_FAILED_NO_MATCHING_ABIS",
    "INSTALL_FAILED_OLDER_SDK",
    "INSTALL_FAILED_DUPLICATE_PACKAGE",
    "INSTALL_FAILED_VERSION_DOWNGRADE",
    "INSTALL_FAILED_TEST_ONLY",
    "INSTALL_FAILED_MISSING_SHARED_LIBRARY",
}


class AdbError(Exception):
    def __init__(self, message, output=""):
        super().__init__(message)
        self.output = output


class AdbNotFoundError(AdbError):
    pass


class AdbTimeoutError(AdbError):
    pass


class InstallCancelled(AdbError):
    pass


class InstallError(AdbError):
    def __init__(self, reason, code=None, output="", retryable=True):
        super().__init__(f"{code}: {reason}" if code and code not in reason else reason, output)
        self.reason = reason
        self.code = code
        self.retryable = retryable


def parse_install_failure(output):
    """Turn failed install output into an InstallError with a readable reason."""
    text = (output or "").strip()
    match = FAILURE_CODE_RE.search(text)
    code = match.group(1) if match else None
    if code in INSTALL_FAILURE_REASONS:
        reason = INSTALL_FAILURE_REASONS[code]
    else:
        bracket = FAILURE_BRACKET_RE.search(text)
        if bracket:
            reason = bracket.group(1)
        else:
            lines = [line for line in text.splitlines() if line.strip()]
            reason = lines[-1].strip() if lines else "Unknown installation error"
    retryable = code not in NON_RETRYABLE_CODES and not (code or "").startswith("INSTALL_PARSE_FAILED")
    return InstallError(reason, code=code, output=text, retryable=retryable)


def install_succeeded(returncode, output):
    return returncode == 0 and "Success" in output and "Failure" not in output \
        and not FAILURE_CODE_RE.search(output)


def _pump_lines(stream, pending):
    for raw_line in iter(stream.readline, ""):
        pending.put(raw_line)
    pending.put(None)


def parse_devices(output):
    devices = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = re.split(r"\s+", line, maxsplit=1)
        if len(parts) < 2:
            continue
        # "no permissions (user ...); see [...]" -> "no permissions"
        state = parts[1].split(" (")[0].split(";")[0].strip()
        devices.append(DeviceInfo(serial=parts[0], state=state))
    return devices


def parse_properties(output):
    props = {}
    for line in output.splitlines():
        match = PROP_RE.match(line.strip())
        if match:
            props[match.group(1)] = match.group(2)
    return props


def parse_package_list(output):
    packages = []
    for line in output.splitlines():
        match = PACKAGE_LINE_RE.match(line.strip())
        if match:
            packages.append((match.group(1), match.group(2)))
    return packages


def _to_int(value, default=0):
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


class AdbClient:
    """Thin wrapper over the adb executable; every call is one subprocess."""

    def __init__(self, adb_path=None, timeout=ADB_DEFAULT_TIMEOUT):
        self.adb_path = str(adb_path or ADB_BIN)
        self.timeout = timeout
        if not Path(self.adb_path).exists() and shutil.which(self.adb_path) is None:
            logger.error(f"ADB binary not found at {self.adb_path}")
            raise AdbNotFoundError(f"ADB binary not found at {self.adb_path}")

    def _command(self, args, serial=None):
        cmd = [self.adb_path]
        if serial:
            cmd.extend(["-s", serial])
        cmd.extend(str(a) for a in args)
        return cmd

    def run(self, *args, serial=None, timeout=None, check=False):
        cmd = self._command(args, serial)
        logger.debug(f"$ {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, encoding="utf-8",
                                    errors="replace", timeout=timeout or self.timeout)
        except subprocess.TimeoutExpired as e:
            raise AdbTimeoutError(f"adb {' '.join(map(str, args))} timed out after {e.timeout}s") from e
        if check and result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise AdbError(f"adb {args[0]} failed (exit code {result.returncode}): {output}", output)
        return result

    def shell(self, serial, *args, timeout=None, check=False):
        return self.run("shell", *args, serial=serial, timeout=timeout, check=check).stdout

    def stream(self, *args, serial=None, on_line=None, cancel_event=None, timeout=None):
        """Run adb reading merged output line by line. Returns (returncode, output).

        Output is read on a helper thread so a silent adb is still killed as
        soon as ``cancel_event`` fires or the deadline passes.
        """
        cmd = self._command(args, serial)
        logger.debug(f"$ {' '.join(cmd)}")
        deadline = time.monotonic() + (timeout or self.timeout)
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                   text=True, encoding="utf-8", errors="replace", bufsize=1)
        pending = queue.Queue()
        reader = threading.Thread(target=_pump_lines, args=(process.stdout, pending),
                                  name="adb-output", daemon=True)
        reader.start()
        lines = []
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise InstallCancelled("Cancelled by user", "\n".join(lines))
                if time.monotonic() > deadline:
                    raise AdbTimeoutError(f"adb {args[0]} timed out", "\n".join(lines))
                try:
                    raw_line = pending.get(timeout=STREAM_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if raw_line is None:
                    break
                line = raw_line.strip()
                if line:
                    lines.append(line)
                    if on_line:
                        on_line(line)
            process.wait(timeout=max(1.0, deadline - time.monotonic()))
        except subprocess.TimeoutExpired as e:
            raise AdbTimeoutError(f"adb {args[0]} timed out", "\n".join(lines)) from e
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
            # a grandchild may still hold the pipe; leave it to the daemon reader then
            reader.join(timeout=0.5)
            if not reader.is_alive():
                process.stdout.close()
        return process.returncode, "\n".join(lines)

    # --- devices -------------------------------------------------------

    def start_server(self):
        self.run("start-server", check=True)

    def list_devices(self):
        result = self.run("devices", check=True)
        return parse_devices(result.stdout)

    def get_properties(self, serial):
        return parse_properties(self.shell(serial, "getprop"))

    def _wm_density(self, serial):
        try:
            output = self.shell(serial, "wm", "density")
        except AdbError as e:
            logger.debug(f"wm density failed on {serial}: {e}")
            return 0
        values = dict((kind, int(value)) for kind, value in WM_DENSITY_RE.findall(output))
        return values.get("Override") or values.get("Physical") or 0

    def describe_device(self, serial, state=STATE_DEVICE):
        """Query model, SDK, ABIs, density and locale of an online device."""
        if state != STATE_DEVICE:
            return DeviceInfo(serial=serial, state=state)
        props = self.get_properties(serial)
        abilist = props.get("ro.product.cpu.abilist") or props.get("ro.product.cpu.abi", "")
        abis = tuple(a.strip() for a in abilist.split(",") if a.strip())
        density = _to_int(props.get("ro.sf.lcd_density"))
        if not density:
            density = self._wm_density(serial)
        locale = props.get("persist.sys.locale") or props.get("ro.product.locale") or None
        return DeviceInfo(
            serial=serial,
            state=state,
            model=props.get("ro.product.model", ""),
            sdk=_to_int(props.get("ro.build.version.sdk")),
            abilist=abis,
            density=density,
            locale=locale,
        )

    # --- installs ------------------------------------------------------

    def _install(self, command, paths, serial, flags, on_progress, cancel_event, timeout):
        def handle(line):
            match = PROGRESS_RE.search(line)
            if match and on_progress:
                on_progress(min(int(match.group(1)), 100))

        code, output = self.stream(command, *flags, *paths, serial=serial, on_line=handle,
                                   cancel_event=cancel_event, timeout=timeout)
        if not install_succeeded(code, output):
            raise parse_install_failure(output)
        return output

    def install(self, serial, apk_path, flags=(), on_progress=None, cancel_event=None,
                timeout=INSTALL_TIMEOUT):
        return self._install("install", [str(apk_path)], serial, list(flags), on_progress,
                             cancel_event, timeout)

    def install_multiple(self, serial, apk_paths, flags=(), on_progress=None, cancel_event=None,
                         timeout=INSTALL_TIMEOUT):
        return self._install("install-multiple", [str(p) for p in apk_paths], serial, list(flags),
                             on_progress, cancel_event, timeout)

    def create_session(self, serial, flags=(), total_size=None):
        args = ["pm", "install-create", *flags]
        if total_size:
            args.extend(["-S", str(total_size)])
        result = self.run("shell", *args, serial=serial)
        output = (result.stdout + result.stderr).strip()
        match = SESSION_RE.search(output)
        if result.returncode != 0 or not match:
            if "Failure" in output or FAILURE_CODE_RE.search(output):
                raise parse_install_failure(output)
            raise InstallError(f"Cannot parse session ID from: {output}", output=output)
        return match.group(1)

    def write_session(self, serial, session_id, apk_path, index=0, on_bytes=None,
                      cancel_event=None, throttle_mbps=None, timeout=INSTALL_TIMEOUT):
        """Stream one APK into an open pm session through adb's stdin."""
        size = os.path.getsize(apk_path)
        # split names must be unique inside a session
        split_name = f"{index}_{os.path.basename(apk_path)}"
        cmd = self._command(["shell", "pm", "install-write", "-S", str(size), session_id,
                             split_name, "-"], serial)
        logger.debug(f"$ {' '.join(cmd)} < {apk_path}")
        delay = 0.0
        if throttle_mbps:
            delay = SESSION_CHUNK_SIZE / (throttle_mbps * 1024 * 1024)
        process = subprocess.Popen(cmd, stdin=subprocess.PIPE, stdout=subprocess.PIPE,
                                   stderr=subprocess.PIPE)
        written = 0
        try:
            with open(apk_path, "rb") as fh:
                while written < size:
                    if cancel_event is not None and cancel_event.is_set():
                        raise InstallCancelled("Cancelled by user")
                    chunk = fh.read(min(SESSION_CHUNK_SIZE, size - written))
                    if not chunk:
                        break
                    process.stdin.write(chunk)
                    written += len(chunk)
                    if on_bytes:
                        on_bytes(len(chunk))
                    if delay:
                        time.sleep(delay)
            stdout, stderr = process.communicate(timeout=timeout)
        except BrokenPipeError:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise AdbTimeoutError(f"Session write of {split_name} timed out") from e
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
        output = (stdout + stderr).decode("utf-8", errors="replace").strip()
        if process.returncode != 0 or "Success" not in output:
            raise parse_install_failure(output or f"Session write failed for {split_name}")
        return written

    def commit_session(self, serial, session_id, timeout=INSTALL_TIMEOUT):
        result = self.run("shell", "pm", "install-commit", session_id, serial=serial, timeout=timeout)
        output = (result.stdout + result.stderr).strip()
        if not install_succeeded(result.returncode, output):
            raise parse_install_failure(output)
        return output

    def abandon_session(self, serial, session_id):
        try:
            self.run("shell", "pm", "install-abandon", session_id, serial=serial)
        except AdbError as e:
            logger.warning(f"Could not abandon session {session_id} on {serial}: {e}")

    # --- inventory -----------------------------------------------------

    def list_packages(self, serial, third_party_only=False, user_id=None):
        args = ["pm", "list", "packages", "-f"]
        if third_party_only:
            args.append("-3")
        command = list(args)
        if user_id is not None:
            command.extend(["--user", str(user_id)])
        result = self.run("shell", *command, serial=serial)
        if (result.returncode != 0 or not result.stdout.strip()) and user_id is not None:
            logger.debug(f"pm list packages --user {user_id} gave nothing on {serial}, retrying without it")
            result = self.run("shell", *args, serial=serial)
        return parse_package_list(result.stdout)

    def package_paths(self, serial, package):
        output = self.shell(serial, "pm", "path", package)
        return [line.split(":", 1)[1].strip() for line in output.splitlines()
                if line.strip().startswith("package:")]

    def package_details(self, serial, package):
        output = self.shell(serial, "dumpsys", "package", package)
        name = VERSION_NAME_RE.search(output)
        code = VERSION_CODE_RE.search(output)
        return {
            "version_name": name.group(1) if name else "",
            "version_code": int(code.group(1)) if code else 0,
        }

    def pull(self, serial, remote_path, local_path, timeout=INSTALL_TIMEOUT):
        self.run("pull", remote_path, str(local_path), serial=serial, timeout=timeout, check=True)

    def uninstall(self, serial, package, keep_data=False):
        args = ["uninstall"]
        if keep_data:
            args.append("-k")
        args.append(package)
        result = self.run(*args, serial=serial, timeout=INSTALL_TIMEOUT)
        output = (result.stdout + result.stderr).strip()
        if "Success" not in output:
            raise AdbError(f"Uninstall of {package} failed: {output}", output)
        return output
