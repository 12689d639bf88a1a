"""
Multi-device installation runs.

A run is split into two phases. ``build_plans`` analyzes the APK files once,
groups them into installation units and picks the splits each device needs.
``execute`` then walks the plans: devices one after another (or a few at a
time), units one after another per device, with retries, pacing and
cancellation checks in between.
"""
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import events
from adb_client import AdbError, InstallCancelled, InstallError
from apk_analyzer import (
    ApkAnalyzer, SplitMatchError, collect_apk_paths, group_by_package, match_splits,
    validate_unit)
from install_strategies import select_strategy
from models import (
    DeviceInfo, DeviceInstallPlan, InstallationSummary, InstallOptions, UnitResult, UnitState,
    STATE_OFFLINE)
from package_lock import PackageLocks

logger = logging.getLogger("InstallOrchestrator")


class InstallOrchestrator:

    def __init__(self, adb, analyzer=None, on_event=None, on_progress=None, locks=None):
        self.adb = adb
        self.analyzer = analyzer or ApkAnalyzer()
        self.on_event = on_event
        self.on_progress = on_progress
        self.locks = locks or PackageLocks()
        self._cancel_event = threading.Event()
        self._progress_lock = threading.Lock()
        self._device_progress = {}

    # --- events --------------------------------------------------------

    def _emit(self, event):
        logger.log(event.log_level, event.format())
        if self.on_event:
            try:
                self.on_event(event)
            except Exception as e:
                logger.warning(f"Event handler failed: {e}")

    def _report_progress(self, serial, fraction, total_devices):
        with self._progress_lock:
            self._device_progress[serial] = fraction
            overall = sum(self._device_progress.values()) / max(total_devices, 1) * 100
        if self.on_progress:
            self.on_progress(min(overall, 100.0))

    def cancel(self):
        logger.info("Cancellation requested")
        self._cancel_event.set()

    # --- planning ------------------------------------------------------

    def prepare_units(self, apk_paths, options):
        """Analyze and group APK files. Returns (valid units, {package: error})."""
        files = self.analyzer.analyze_all(apk_paths)
        units = []
        invalid = {}
        for unit in group_by_package(files):
            validation = validate_unit(unit, verify_versions=options.verify_versions)
            if validation.is_valid:
                units.append(unit)
            else:
                logger.warning(f"{unit.package_name}: {validation.error_summary}")
                invalid[unit.package_name] = validation.error_summary
        return units, invalid

    def _describe(self, device):
        try:
            return self.adb.describe_device(device.serial, device.state)
        except AdbError as e:
            self._emit(events.warning(device.serial, f"Could not read device properties: {e}"))
            return device

    def build_plans(self, devices, apk_paths, options):
        units, invalid = self.prepare_units(apk_paths, options)
        self._emit(events.preflight(f"{len(units)} valid unit(s), {len(invalid)} invalid, "
                                    f"{len(devices)} device(s)"))
        plans = []
        for device in devices:
            rejected = [UnitResult(device.serial, package, UnitState.SKIPPED, error=error)
                        for package, error in invalid.items()]
            if not device.is_online:
                if device.is_unauthorized:
                    self._emit(events.device_unauthorized(device.serial))
                else:
                    self._emit(events.device_offline(device.serial))
                plans.append(DeviceInstallPlan(device, list(units), options, rejected))
                continue

            info = self._describe(device)
            matched = []
            for unit in units:
                try:
                    selected = match_splits(unit, info, options.split_match)
                except SplitMatchError as e:
                    self._emit(events.unit_skipped(device.serial, unit.package_name, str(e)))
                    rejected.append(UnitResult(device.serial, unit.package_name, UnitState.SKIPPED,
                                               error=str(e)))
                    continue
                if unit.is_group:
                    self._emit(events.split_matching(device.serial, unit.package_name,
                                                     len(selected.files), len(unit.files)))
                matched.append(selected)
            plan = DeviceInstallPlan(info, matched, options, rejected)
            self._emit(events.plan_built(device.serial, len(matched), plan.summary()))
            plans.append(plan)
        return plans

    # --- execution -----------------------------------------------------

    def _install_unit(self, serial, unit, options, cancel_event):
        started = time.monotonic()
        attempts = 0
        last_error = None
        last_code = None

        def finish(state, error=None, code=None):
            return UnitResult(serial, unit.package_name, state, attempts=attempts, error=error,
                              error_code=code, duration=time.monotonic() - started,
                              files=len(unit.files))

        def progress(percent):
            self._emit(events.progress(serial, percent, f"Installing {unit.package_name}"))

        strategy = select_strategy(unit, options)
        with self.locks.acquire(serial, unit.package_name):
            for attempt in range(options.max_retries + 1):
                if cancel_event.is_set():
                    return finish(UnitState.CANCELLED, "Cancelled by user")
                if attempt:
                    self._emit(events.retry_attempt(serial, unit.package_name, attempt,
                                                    options.max_retries))
                attempts += 1
                try:
                    strategy.install(
                        self.adb, serial, unit, options, on_progress=progress,
                        on_command=lambda cmd: self._emit(events.adb_command(serial, cmd)),
                        cancel_event=cancel_event)
                except InstallCancelled:
                    return finish(UnitState.CANCELLED, "Cancelled by user")
                except InstallError as e:
                    last_error, last_code = str(e), e.code
                    retryable = e.retryable
                except AdbError as e:
                    last_error, last_code = str(e), None
                    retryable = True
                except OSError as e:
                    # local file or adb binary problem, another attempt will not help
                    last_error, last_code = str(e), None
                    retryable = False
                else:
                    result = finish(UnitState.COMPLETED)
                    self._emit(events.unit_success(serial, unit.package_name, result.duration))
                    return result

                will_retry = retryable and attempt < options.max_retries
                self._emit(events.unit_failure(serial, unit.package_name, last_error, will_retry))
                if not will_retry:
                    break
                if cancel_event.wait(options.retry_delay * (attempt + 1)):
                    return finish(UnitState.CANCELLED, "Cancelled by user")
        return finish(UnitState.FAILED, last_error, last_code)

    def _run_device(self, plan, index, total, options, cancel_event):
        serial = plan.serial
        results = list(plan.rejected)
        if not plan.can_execute:
            reason = f"Device {plan.device.state}"
            results.extend(UnitResult(serial, u.package_name, UnitState.SKIPPED, error=reason)
                           for u in plan.units)
            self._report_progress(serial, 1.0, total)
            return results

        if not cancel_event.is_set():
            self._emit(events.device_start(serial, index, total))
        count = len(plan.units)
        for position, unit in enumerate(plan.units, 1):
            if cancel_event.is_set():
                results.append(UnitResult(serial, unit.package_name, UnitState.CANCELLED,
                                          error="Cancelled by user"))
                continue
            self._emit(events.unit_start(serial, unit.package_name, position, count,
                                         len(unit.files)))
            result = self._install_unit(serial, unit, options, cancel_event)
            results.append(result)
            self._report_progress(serial, position / count, total)
            if position < count and options.unit_delay > 0:
                cancel_event.wait(options.unit_delay)
        if not count:
            self._report_progress(serial, 1.0, total)

        self._emit(events.device_completed(
            serial,
            sum(1 for r in results if r.state == UnitState.COMPLETED),
            sum(1 for r in results if r.state == UnitState.FAILED),
            sum(1 for r in results if r.state in (UnitState.SKIPPED, UnitState.CANCELLED))))
        return results

    def execute(self, plans, options=None, cancel_event=None):
        """Run the plans and return an InstallationSummary."""
        if options is None:
            options = plans[0].options if plans else InstallOptions.from_config()
        self._cancel_event = cancel_event or threading.Event()
        cancel_event = self._cancel_event
        self._device_progress = {}
        started_at = datetime.now()
        started = time.monotonic()
        total = len(plans)
        results = []

        workers = min(options.max_parallel_devices, total)
        if workers > 1:
            logger.info(f"Installing on {total} device(s), {workers} at a time")
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="install") as pool:
                futures = [pool.submit(self._run_device, plan, i, total, options, cancel_event)
                           for i, plan in enumerate(plans, 1)]
                for future in futures:
                    results.extend(future.result())
        else:
            for i, plan in enumerate(plans, 1):
                results.extend(self._run_device(plan, i, total, options, cancel_event))
                if i < total and plan.can_execute and options.device_delay > 0:
                    cancel_event.wait(options.device_delay)

        summary = InstallationSummary(
            total_devices=total,
            results=results,
            duration=time.monotonic() - started,
            started_at=started_at,
            cancelled=cancel_event.is_set(),
        )
        self._emit(events.all_completed(summary))
        return summary

    def resolve_devices(self, serials=None):
        """Connected devices, restricted to ``serials`` when given."""
        devices = self.adb.list_devices()
        if not serials:
            return devices
        by_serial = {d.serial: d for d in devices}
        selected = []
        for serial in serials:
            device = by_serial.get(serial)
            if device is None:
                logger.warning(f"Device {serial} is not connected")
                device = DeviceInfo(serial=serial, state=STATE_OFFLINE)
            selected.append(device)
        return selected

    def install(self, apk_paths, serials=None, options=None, cancel_event=None):
        options = options or InstallOptions.from_config()
        devices = self.resolve_devices(serials)
        if not devices:
            self._emit(events.warning("", "No devices connected"))
        paths = collect_apk_paths(apk_paths)
        plans = self.build_plans(devices, paths, options)
        return self.execute(plans, options, cancel_event)
