import logging
from pathlib import Path
from adb_client import AdbError
from models import InstalledApp

logger = logging.getLogger("AppInventory")

SYSTEM_PREFIXES = ("/system/", "/product/", "/vendor/", "/apex/", "/system_ext/")


def is_system_path(apk_path):
    return apk_path.startswith(SYSTEM_PREFIXES)


class AppInventory:
    """Installed packages of a device: listing, APK export and removal."""

    def __init__(self, adb):
        self.adb = adb

    def list_installed(self, serial, third_party_only=True, user_id=None, with_details=False):
        apps = []
        for apk_path, package in self.adb.list_packages(serial, third_party_only, user_id):
            app = InstalledApp(package_name=package, apk_path=apk_path,
                               is_system=is_system_path(apk_path))
            if with_details:
                try:
                    details = self.adb.package_details(serial, package)
                except AdbError as e:
                    logger.debug(f"dumpsys failed for {package} on {serial}: {e}")
                else:
                    app.version_name = details["version_name"]
                    app.version_code = details["version_code"]
            apps.append(app)
        apps.sort(key=lambda a: a.package_name)
        logger.info(f"[{serial}] {len(apps)} package(s) installed")
        return apps

    def export_package(self, serial, package, dest):
        """Pull every APK of ``package`` into ``dest/<package>/``. Returns the local paths."""
        remote_paths = self.adb.package_paths(serial, package)
        if not remote_paths:
            raise AdbError(f"No APK paths found for {package}. Is it installed?")
        target = Path(dest) / package
        target.mkdir(parents=True, exist_ok=True)
        logger.info(f"[{serial}] Exporting {len(remote_paths)} APK file(s) of {package} to {target}")
        exported = []
        for remote in remote_paths:
            local = target / remote.rsplit("/", 1)[-1]
            if local.exists():
                local.unlink()
            self.adb.pull(serial, remote, local)
            logger.debug(f"Pulled {remote} -> {local}")
            exported.append(str(local))
        return exported

    def uninstall(self, serial, package, keep_data=False):
        logger.info(f"[{serial}] Uninstalling {package}{' (keeping data)' if keep_data else ''}")
        return self.adb.uninstall(serial, package, keep_data=keep_data)
