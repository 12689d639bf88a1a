import pytest

import main
from adb_client import AdbNotFoundError
from conftest import FakeAdb, install_error
from models import DeviceInfo, InstallStrategy, SplitMatchMode


@pytest.fixture
def cli(monkeypatch, tmp_path):
    adb = FakeAdb([DeviceInfo("emulator-5554", "device"), DeviceInfo("R58", "unauthorized")])
    monkeypatch.setattr(main, "AdbClient", lambda path=None: adb)
    monkeypatch.setattr(main, "setup_logging", lambda **kwargs: None)
    monkeypatch.setattr("apk_analyzer.AAPT_BIN", tmp_path / "missing-aapt")
    return adb


@pytest.fixture
def apk_dir(make_apk, tmp_path):
    make_apk("com.a/base.apk")
    make_apk("com.a/split_config.arm64_v8a.apk")
    make_apk("com.b/base.apk")
    return str(tmp_path / "apks")


def test_options_from_args():
    args = main.build_parser().parse_args([
        "install", "x.apk", "--no-reinstall", "-g", "--user", "10", "--retries", "0",
        "--split-mode", "strict", "--strategy", "pm_session", "--parallel", "2"])
    options = main.options_from_args(args)
    assert options.adb_flags() == ["-g", "--user", "10"]
    assert options.max_retries == 0
    assert options.split_match == SplitMatchMode.STRICT
    assert options.strategy == InstallStrategy.PM_SESSION
    assert options.max_parallel_devices == 2


def test_devices_command(cli, capsys):
    assert main.main(["devices"]) == main.EXIT_OK
    out = capsys.readouterr().out
    assert "emulator-5554" in out
    assert "R58" in out and "unauthorized" in out


def test_devices_command_without_devices(cli, capsys):
    cli.devices = []
    assert main.main(["devices"]) == main.EXIT_USAGE


def test_install_command(cli, apk_dir, capsys):
    code = main.main(["install", apk_dir, "-s", "emulator-5554", "--retries", "0"])
    assert code == main.EXIT_OK
    assert [p for _, p, _ in cli.installs] == ["com.a", "com.b"]
    assert "Completed: 2/2 units on 1 device(s)" in capsys.readouterr().out


def test_install_failure_exit_code(cli, apk_dir):
    cli.fail("emulator-5554", "com.b", install_error("INSTALL_FAILED_OLDER_SDK", False))
    assert main.main(["install", apk_dir, "-s", "emulator-5554"]) == main.EXIT_FAILURE


def test_install_dry_run_prints_plans(cli, apk_dir, capsys):
    assert main.main(["install", apk_dir, "--dry-run"]) == main.EXIT_OK
    out = capsys.readouterr().out
    assert "split_config.arm64_v8a.apk" in out
    assert cli.installs == []


def test_install_without_apks(cli, tmp_path):
    assert main.main(["install", str(tmp_path / "empty")]) == main.EXIT_USAGE


def test_install_without_devices(cli, apk_dir):
    cli.devices = []
    assert main.main(["install", apk_dir]) == main.EXIT_USAGE


def test_apps_and_uninstall(cli, capsys):
    cli.packages["emulator-5554"] = [("/system/app/A/A.apk", "com.alpha")]
    assert main.main(["apps", "emulator-5554", "--all"]) == main.EXIT_OK
    assert "com.alpha [system]" in capsys.readouterr().out
    assert main.main(["uninstall", "emulator-5554", "com.alpha", "--keep-data"]) == main.EXIT_OK
    assert cli.uninstalled == [("emulator-5554", "com.alpha", True)]


def test_export_missing_package_fails(cli, tmp_path):
    assert main.main(["export", "emulator-5554", "com.none", "-o", str(tmp_path)]) == main.EXIT_FAILURE


def test_missing_adb(monkeypatch):
    def missing(path=None):
        raise AdbNotFoundError("ADB binary not found at adb")

    monkeypatch.setattr(main, "AdbClient", missing)
    monkeypatch.setattr(main, "setup_logging", lambda **kwargs: None)
    assert main.main(["devices"]) == main.EXIT_FAILURE


def test_usage_error_exits_2():
    with pytest.raises(SystemExit) as info:
        main.main(["install", "--split-mode", "nope"])
    assert info.value.code == 2


@pytest.mark.parametrize("argv", [
    ["install", "x", "--retries", "-1"],
    ["install", "x", "--user", "-3"],
    ["install", "x", "--parallel", "0"],
    ["install", "x", "--throttle", "0"],
    ["apps", "emulator-5554", "--user", "-1"],
])
def test_out_of_range_numbers_are_usage_errors(argv):
    with pytest.raises(SystemExit) as info:
        main.main(argv)
    assert info.value.code == 2
