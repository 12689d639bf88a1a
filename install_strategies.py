"""
Ways of landing one installation unit on one device.

``install-multiple`` hands every path to adb on the command line. The PM
session strategy streams each file through ``pm install-write`` instead, which
survives long paths, many splits and large bundles.
"""
import os
import logging
import config
from adb_client import InstallCancelled
from models import InstallStrategy

logger = logging.getLogger("InstallStrategy")


class InstallMultipleStrategy:
    name = InstallStrategy.INSTALL_MULTIPLE

    def install(self, adb, serial, unit, options, on_progress=None, on_command=None,
                cancel_event=None):
        flags = options.adb_flags()
        if unit.is_group:
            command = ["install-multiple", *flags, *unit.paths]
        else:
            command = ["install", *flags, unit.paths[0]]
        if on_command:
            on_command(" ".join(command))
        if unit.is_group:
            return adb.install_multiple(serial, unit.paths, flags, on_progress=on_progress,
                                        cancel_event=cancel_event, timeout=options.timeout)
        return adb.install(serial, unit.paths[0], flags, on_progress=on_progress,
                           cancel_event=cancel_event, timeout=options.timeout)


class PmSessionStrategy:
    name = InstallStrategy.PM_SESSION

    def install(self, adb, serial, unit, options, on_progress=None, on_command=None,
                cancel_event=None):
        flags = options.adb_flags()
        total = unit.total_size
        if on_command:
            on_command(" ".join(["shell", "pm", "install-create", *flags, "-S", str(total)]))
        session_id = adb.create_session(serial, flags, total_size=total or None)
        logger.debug(f"[{serial}] Created session {session_id} for {unit.package_name}")
        sent = 0

        def count(n):
            nonlocal sent
            sent += n
            if on_progress and total:
                on_progress(min(100, int(sent * 100 / total)))

        try:
            for index, path in enumerate(unit.paths):
                if cancel_event is not None and cancel_event.is_set():
                    raise InstallCancelled("Cancelled by user")
                if on_command:
                    on_command(f"shell pm install-write {session_id} {index}_{os.path.basename(path)}")
                adb.write_session(serial, session_id, path, index=index, on_bytes=count,
                                  cancel_event=cancel_event, throttle_mbps=options.throttle_mbps,
                                  timeout=options.timeout)
            if on_command:
                on_command(f"shell pm install-commit {session_id}")
            output = adb.commit_session(serial, session_id, timeout=options.timeout)
        except Exception:
            logger.warning(f"[{serial}] Abandoning session {session_id} for {unit.package_name}")
            adb.abandon_session(serial, session_id)
            raise
        if on_progress:
            on_progress(100)
        return output


STRATEGIES = {
    InstallStrategy.INSTALL_MULTIPLE: InstallMultipleStrategy,
    InstallStrategy.PM_SESSION: PmSessionStrategy,
}


def needs_session(unit):
    """True when install-multiple is likely to trip over this unit."""
    if len(unit.files) >= config.SESSION_MIN_FILES:
        return True
    if unit.total_size > config.SESSION_MIN_TOTAL_BYTES:
        return True
    for path in unit.paths:
        if len(path) > config.SESSION_MAX_PATH_LENGTH or any(c.isspace() for c in path):
            return True
    return False


def select_strategy(unit, options):
    choice = options.strategy
    if choice == InstallStrategy.AUTO:
        choice = InstallStrategy.PM_SESSION if needs_session(unit) else InstallStrategy.INSTALL_MULTIPLE
        logger.debug(f"Auto-selected {choice.value} for {unit.package_name}")
    return STRATEGIES[choice]()
