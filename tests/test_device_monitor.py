import threading

from adb_client import AdbError
from conftest import FakeAdb
from device_monitor import FAST_POLLS_AFTER_CHANGE, DeviceMonitor
from models import DeviceInfo


def test_poll_once_reports_changes():
    adb = FakeAdb([DeviceInfo("a", "device"), DeviceInfo("b", "unauthorized")])
    log = []
    monitor = DeviceMonitor(
        adb,
        on_connected=lambda d: log.append(("+", d.serial)),
        on_disconnected=lambda d: log.append(("-", d.serial)),
        on_state_changed=lambda d, old: log.append(("~", d.serial, old, d.state)),
        on_changed=lambda devices: log.append(("=", len(devices))),
    )
    assert monitor.poll_once()
    assert log == [("+", "a"), ("+", "b"), ("=", 2)]

    log.clear()
    assert not monitor.poll_once()
    assert log == []

    adb.devices = [DeviceInfo("b", "device"), DeviceInfo("c", "device")]
    assert monitor.poll_once()
    assert log == [("~", "b", "unauthorized", "device"), ("+", "c"), ("-", "a"), ("=", 2)]


def test_interval_slows_down_after_quiet_polls():
    adb = FakeAdb([DeviceInfo("a", "device")])
    monitor = DeviceMonitor(adb, fast_interval=0.1, slow_interval=5)
    assert monitor.next_interval() == 5
    monitor.poll_once()
    assert monitor.next_interval() == 0.1
    for _ in range(FAST_POLLS_AFTER_CHANGE):
        monitor.poll_once()
    assert monitor.next_interval() == 5


def test_no_devices_uses_slow_interval():
    monitor = DeviceMonitor(FakeAdb(), fast_interval=0.1, slow_interval=5)
    monitor.poll_once()
    assert monitor.next_interval() == 5


def test_callback_errors_do_not_stop_polling():
    def explode(device):
        raise RuntimeError("bad handler")

    monitor = DeviceMonitor(FakeAdb([DeviceInfo("a", "device")]), on_connected=explode)
    assert monitor.poll_once()
    assert "a" in monitor.devices


def test_background_thread_survives_adb_errors():
    class FlakyAdb(FakeAdb):
        calls = 0

        def list_devices(self):
            FlakyAdb.calls += 1
            if FlakyAdb.calls == 1:
                raise AdbError("daemon restarting")
            return super().list_devices()

    connected = threading.Event()
    monitor = DeviceMonitor(FlakyAdb([DeviceInfo("a", "device")]),
                            on_connected=lambda d: connected.set(),
                            fast_interval=0.01, slow_interval=0.01)
    with monitor:
        assert monitor.is_running
        assert connected.wait(2)
    assert not monitor.is_running
