import pytest

import config
from conftest import FakeAdb, install_error
from install_strategies import (
    InstallMultipleStrategy, PmSessionStrategy, needs_session, select_strategy)
from models import ApkFile, InstallationUnit, InstallOptions, InstallStrategy


def unit_of(count, size=16, folder="/apks/com.x"):
    files = [ApkFile(path=f"{folder}/base.apk", package_name="com.x", size_bytes=size)]
    files += [ApkFile(path=f"{folder}/split_{i}.apk", package_name="com.x", is_base=False,
                      size_bytes=size) for i in range(count - 1)]
    return InstallationUnit("com.x", files)


def test_auto_prefers_install_multiple_for_small_units():
    assert isinstance(select_strategy(unit_of(3), InstallOptions()), InstallMultipleStrategy)


@pytest.mark.parametrize("unit", [
    unit_of(config.SESSION_MIN_FILES),
    unit_of(2, size=config.SESSION_MIN_TOTAL_BYTES),
    unit_of(2, folder="/home/me/My APKs/com.x"),
    unit_of(2, folder="/" + "d" * config.SESSION_MAX_PATH_LENGTH),
])
def test_auto_switches_to_pm_session(unit):
    assert needs_session(unit)
    assert isinstance(select_strategy(unit, InstallOptions()), PmSessionStrategy)


def test_explicit_strategy_wins():
    options = InstallOptions(strategy=InstallStrategy.INSTALL_MULTIPLE)
    assert isinstance(select_strategy(unit_of(20), options), InstallMultipleStrategy)


def test_single_file_uses_plain_install():
    adb = FakeAdb()
    commands = []
    InstallMultipleStrategy().install(adb, "x", unit_of(1), InstallOptions(grant_permissions=True),
                                      on_command=commands.append)
    assert adb.installs == [("x", "com.x", ["/apks/com.x/base.apk"])]
    assert commands == ["install -r -g /apks/com.x/base.apk"]


def test_session_writes_every_file_then_commits():
    adb = FakeAdb()
    progress = []
    PmSessionStrategy().install(adb, "x", unit_of(3), InstallOptions(), on_progress=progress.append)
    assert adb.session_calls == [
        ("create", "x"),
        ("write", 0, "/apks/com.x/base.apk"),
        ("write", 1, "/apks/com.x/split_0.apk"),
        ("write", 2, "/apks/com.x/split_1.apk"),
        ("commit", "7"),
    ]
    assert progress == [33, 66, 100, 100]


def test_session_is_abandoned_on_failure():
    adb = FakeAdb()
    adb.fail("x", "commit", install_error("INSTALL_FAILED_INVALID_APK", False))
    with pytest.raises(Exception, match="boom"):
        PmSessionStrategy().install(adb, "x", unit_of(2), InstallOptions())
    assert adb.session_calls[-1] == ("abandon", "7")
