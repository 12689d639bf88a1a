import subprocess
import pytest

from adb_client import AdbClient, InstallError
from apk_analyzer import ApkAnalyzer
from models import DeviceInfo, InstallOptions


class FakeRun:
    """Stands in for subprocess.run; answers by matching the joined command line."""

    def __init__(self):
        self.calls = []
        self.responses = []

    def add(self, needle, stdout="", stderr="", returncode=0):
        self.responses.append((needle, stdout, stderr, returncode))

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        line = " ".join(str(c) for c in cmd)
        for needle, stdout, stderr, returncode in self.responses:
            if needle in line:
                if isinstance(stdout, Exception):
                    raise stdout
                return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)
        return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def fake_run(monkeypatch):
    runner = FakeRun()
    monkeypatch.setattr(subprocess, "run", runner)
    return runner


@pytest.fixture
def adb_path(tmp_path):
    path = tmp_path / "adb"
    path.write_text("")
    return path


@pytest.fixture
def adb(adb_path):
    return AdbClient(adb_path)


@pytest.fixture
def analyzer(tmp_path):
    return ApkAnalyzer(aapt_path=tmp_path / "missing-aapt")


@pytest.fixture
def make_apk(tmp_path):
    def make(relative, size=16):
        path = tmp_path / "apks" / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x" * size)
        return str(path)
    return make


@pytest.fixture
def phone():
    return DeviceInfo(serial="emulator-5554", state="device", model="Pixel 7", sdk=33,
                      abilist=("arm64-v8a", "armeabi-v7a"), density=420, locale="en-US")


@pytest.fixture
def fast_options():
    return InstallOptions(max_retries=2, retry_delay=0, unit_delay=0, device_delay=0)


class FakeAdb:
    """In-memory adb used by orchestrator, inventory and monitor tests."""

    def __init__(self, devices=(), described=None):
        self.devices = list(devices)
        self.described = described or {}
        self.installs = []
        self.failures = {}
        self.session_calls = []
        self.packages = {}
        self.paths = {}
        self.pulled = []
        self.uninstalled = []

    def start_server(self):
        pass

    def list_devices(self):
        return list(self.devices)

    def describe_device(self, serial, state="device"):
        return self.described.get(serial, DeviceInfo(serial=serial, state=state, sdk=33,
                                                     abilist=("arm64-v8a",), density=480))

    def fail(self, serial, package, *errors):
        self.failures[(serial, package)] = list(errors)

    def _attempt(self, serial, paths):
        package = paths[0].split("/")[-2]
        self.installs.append((serial, package, list(paths)))
        pending = self.failures.get((serial, package))
        if pending:
            raise pending.pop(0)
        return "Success"

    def install(self, serial, apk_path, flags=(), on_progress=None, cancel_event=None, timeout=None):
        return self._attempt(serial, [apk_path])

    def install_multiple(self, serial, apk_paths, flags=(), on_progress=None, cancel_event=None,
                         timeout=None):
        if on_progress:
            on_progress(100)
        return self._attempt(serial, apk_paths)

    def create_session(self, serial, flags=(), total_size=None):
        self.session_calls.append(("create", serial))
        return "7"

    def write_session(self, serial, session_id, apk_path, index=0, on_bytes=None, **kwargs):
        self.session_calls.append(("write", index, apk_path))
        if on_bytes:
            on_bytes(16)
        return 16

    def commit_session(self, serial, session_id, timeout=None):
        self.session_calls.append(("commit", session_id))
        pending = self.failures.get((serial, "commit"))
        if pending:
            raise pending.pop(0)
        return "Success"

    def abandon_session(self, serial, session_id):
        self.session_calls.append(("abandon", session_id))

    def list_packages(self, serial, third_party_only=False, user_id=None):
        return list(self.packages.get(serial, []))

    def package_details(self, serial, package):
        return {"version_name": "1.0", "version_code": 10}

    def package_paths(self, serial, package):
        return list(self.paths.get(package, []))

    def pull(self, serial, remote_path, local_path, timeout=None):
        self.pulled.append(remote_path)
        local_path.write_bytes(b"apk")

    def uninstall(self, serial, package, keep_data=False):
        self.uninstalled.append((serial, package, keep_data))
        return "Success"


def install_error(code, retryable):
    return InstallError("boom", code=code, output=f"Failure [{code}]", retryable=retryable)
