import logging
import threading
from config import MONITOR_FAST_INTERVAL, MONITOR_SLOW_INTERVAL
from adb_client import AdbError

logger = logging.getLogger("DeviceMonitor")

# quiet fast polls before falling back to the slow interval
FAST_POLLS_AFTER_CHANGE = 10


class DeviceMonitor:
    """
    Polls ``adb devices`` and reports attach, detach and state changes.

    Callbacks receive DeviceInfo objects (``on_changed`` receives the full
    current list). The interval is fast right after a change and slow once
    the device set has been stable for a while or nothing is attached.
    """

    def __init__(self, adb, on_connected=None, on_disconnected=None, on_state_changed=None,
                 on_changed=None, fast_interval=MONITOR_FAST_INTERVAL,
                 slow_interval=MONITOR_SLOW_INTERVAL):
        self.adb = adb
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected
        self.on_state_changed = on_state_changed
        self.on_changed = on_changed
        self.fast_interval = fast_interval
        self.slow_interval = slow_interval
        self.devices = {}
        self._fast_polls_left = 0
        self._stop_event = threading.Event()
        self._thread = None

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def _fire(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"Device callback failed: {e}")

    def poll_once(self):
        """Refresh the device list. Returns True when anything changed."""
        current = {d.serial: d for d in self.adb.list_devices()}
        previous = self.devices
        changed = False

        for serial, device in current.items():
            old = previous.get(serial)
            if old is None:
                logger.info(f"Device connected: {serial} ({device.state})")
                self._fire(self.on_connected, device)
                changed = True
            elif old.state != device.state:
                logger.info(f"Device {serial}: {old.state} -> {device.state}")
                self._fire(self.on_state_changed, device, old.state)
                changed = True
        for serial, device in previous.items():
            if serial not in current:
                logger.info(f"Device disconnected: {serial}")
                self._fire(self.on_disconnected, device)
                changed = True

        self.devices = current
        if changed:
            self._fast_polls_left = FAST_POLLS_AFTER_CHANGE
            self._fire(self.on_changed, list(current.values()))
        elif self._fast_polls_left:
            self._fast_polls_left -= 1
        return changed

    def next_interval(self):
        if not self.devices or not self._fast_polls_left:
            return self.slow_interval
        return self.fast_interval

    def _loop(self):
        logger.debug("Device monitor started")
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except AdbError as e:
                logger.warning(f"Device poll failed: {e}")
            self._stop_event.wait(self.next_interval())
        logger.debug("Device monitor stopped")

    def start(self):
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="device-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout=5):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
