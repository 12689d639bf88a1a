import sys
import argparse
import threading
import config
from adb_client import AdbClient, AdbError
from apk_analyzer import ApkAnalyzer, collect_apk_paths
from app_inventory import AppInventory
from device_monitor import DeviceMonitor
from install_orchestrator import InstallOrchestrator
from models import InstallOptions, InstallStrategy, SplitMatchMode, format_bytes
from notifier import WebhookNotifier
from logger_config import setup_logging, get_logger

logger = get_logger("MainController")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def int_at_least(minimum):
    def parse(text):
        try:
            value = int(text)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid integer: '{text}'")
        if value < minimum:
            raise argparse.ArgumentTypeError(f"must be >= {minimum}, got {value}")
        return value
    return parse


def positive_float(text):
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: '{text}'")
    if not value > 0:
        raise argparse.ArgumentTypeError(f"must be > 0, got {text}")
    return value


def build_parser():
    parser = argparse.ArgumentParser(prog="apk-installer",
                                     description="Batch install APK files on Android devices over adb")
    parser.add_argument("-v", "--verbose", action="store_true", help="show every adb command")
    parser.add_argument("-q", "--quiet", action="store_true", help="only show warnings and errors")
    parser.add_argument("--adb", default=None, help="adb executable (default: ADB_BIN)")
    parser.add_argument("--log-dir", default=None, help="log directory (default: LOG_DIR)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("devices", help="list connected devices")

    install = sub.add_parser("install", help="install APK files or folders")
    install.add_argument("paths", nargs="*", help=f"APK files or folders (default: {config.APK_REPO_DIR})")
    install.add_argument("-s", "--serial", action="append", dest="serials",
                         help="target device, may be repeated (default: all)")
    install.add_argument("--no-reinstall", action="store_true", help="do not pass -r")
    install.add_argument("-g", "--grant", action="store_true", help="grant runtime permissions")
    install.add_argument("-d", "--downgrade", action="store_true", help="allow version downgrade")
    install.add_argument("--user", type=int_at_least(0), default=None, help="install for this user id")
    install.add_argument("--retries", type=int_at_least(0), default=None, help="retries per unit")
    install.add_argument("--split-mode", choices=[m.value for m in SplitMatchMode], default=None)
    install.add_argument("--strategy", choices=[s.value for s in InstallStrategy], default=None)
    install.add_argument("--parallel", type=int_at_least(1), default=None, help="devices installed at once")
    install.add_argument("--throttle", type=positive_float, default=None,
                         help="MiB/s cap for pm session uploads")
    install.add_argument("--no-verify", action="store_true", help="skip versionCode checks")
    install.add_argument("--webhook", default=None, help="POST the run summary here")
    install.add_argument("--dry-run", action="store_true", help="show the plans and stop")

    apps = sub.add_parser("apps", help="list installed packages")
    apps.add_argument("serial")
    apps.add_argument("--all", action="store_true", help="include system packages")
    apps.add_argument("--user", type=int_at_least(0), default=None)
    apps.add_argument("--details", action="store_true", help="read versions with dumpsys")

    export = sub.add_parser("export", help="pull the APK files of an installed package")
    export.add_argument("serial")
    export.add_argument("package")
    export.add_argument("-o", "--output", default=str(config.APK_REPO_DIR))

    uninstall = sub.add_parser("uninstall", help="remove a package")
    uninstall.add_argument("serial")
    uninstall.add_argument("package")
    uninstall.add_argument("--keep-data", action="store_true")

    sub.add_parser("monitor", help="watch devices being attached and detached")
    return parser


def options_from_args(args):
    return InstallOptions.from_config(
        reinstall=False if args.no_reinstall else None,
        grant_permissions=True if args.grant else None,
        allow_downgrade=True if args.downgrade else None,
        user_id=args.user,
        max_retries=args.retries,
        split_match=SplitMatchMode(args.split_mode) if args.split_mode else None,
        strategy=InstallStrategy(args.strategy) if args.strategy else None,
        max_parallel_devices=args.parallel,
        throttle_mbps=args.throttle,
        verify_versions=False if args.no_verify else None,
    )


class MainController:

    def __init__(self, adb, out=None):
        self.adb = adb
        self.out = out or sys.stdout
        self.cancel_event = threading.Event()

    def echo(self, text=""):
        print(text, file=self.out)

    def devices(self, args):
        devices = self.adb.list_devices()
        if not devices:
            self.echo("No devices connected")
            return EXIT_USAGE
        for device in devices:
            if device.is_online:
                device = self.adb.describe_device(device.serial, device.state)
                abis = ",".join(device.abilist) or "?"
                self.echo(f"{device.serial:<24} {device.state:<14} {device.model or '-':<20} "
                          f"SDK {device.sdk or '?':<4} {abis} {device.density_bucket or '?'}")
            else:
                self.echo(f"{device.serial:<24} {device.state}")
        return EXIT_OK

    def _print_plans(self, plans):
        for plan in plans:
            self.echo(f"{plan.device.label()} [{plan.device.state}]: {plan.summary()}")
            for unit in plan.units:
                self.echo(f"  {unit.package_name} ({format_bytes(unit.total_size)})")
                for apk in unit.files:
                    self.echo(f"    - {apk.file_name}")
            for rejected in plan.rejected:
                self.echo(f"  SKIP {rejected.package_name}: {rejected.error}")

    def install(self, args):
        options = options_from_args(args)
        orchestrator = InstallOrchestrator(self.adb, ApkAnalyzer())
        devices = orchestrator.resolve_devices(args.serials)
        if not devices:
            logger.error("No devices connected")
            return EXIT_USAGE
        paths = collect_apk_paths(args.paths or [config.APK_REPO_DIR])
        if not paths:
            logger.error("No APK files to install")
            return EXIT_USAGE

        plans = orchestrator.build_plans(devices, paths, options)
        if args.dry_run:
            self._print_plans(plans)
            return EXIT_OK

        outcome = {}

        def work():
            outcome["summary"] = orchestrator.execute(plans, options, self.cancel_event)

        worker = threading.Thread(target=work, name="installer")
        worker.start()
        try:
            while worker.is_alive():
                worker.join(0.2)
        except KeyboardInterrupt:
            logger.info("⛔ Interrupted by user, finishing current step...")
            self.cancel_event.set()
            worker.join()

        summary = outcome.get("summary")
        if summary is None:
            logger.error("Installation run did not complete")
            return EXIT_FAILURE
        self.echo(summary.describe())
        for error in summary.errors:
            self.echo(f"  {error}")

        notifier = WebhookNotifier(args.webhook)
        if notifier.enabled:
            notifier.notify_summary(summary)
        notifier.close()

        if summary.cancelled:
            return EXIT_INTERRUPTED
        return EXIT_OK if summary.is_success else EXIT_FAILURE

    def apps(self, args):
        inventory = AppInventory(self.adb)
        apps = inventory.list_installed(args.serial, third_party_only=not args.all,
                                        user_id=args.user, with_details=args.details)
        for app in apps:
            line = app.package_name
            if app.version_name or app.version_code:
                line += f" {app.version_name} ({app.version_code})"
            if app.is_system:
                line += " [system]"
            self.echo(line)
        return EXIT_OK

    def export(self, args):
        exported = AppInventory(self.adb).export_package(args.serial, args.package, args.output)
        for path in exported:
            self.echo(path)
        return EXIT_OK

    def uninstall(self, args):
        AppInventory(self.adb).uninstall(args.serial, args.package, keep_data=args.keep_data)
        self.echo(f"Uninstalled {args.package}")
        return EXIT_OK

    def monitor(self, args):
        monitor = DeviceMonitor(
            self.adb,
            on_connected=lambda d: self.echo(f"+ {d.serial} ({d.state})"),
            on_disconnected=lambda d: self.echo(f"- {d.serial}"),
            on_state_changed=lambda d, old: self.echo(f"~ {d.serial} {old} -> {d.state}"),
        )
        self.echo("Watching devices, press Ctrl+C to stop")
        with monitor:
            self.cancel_event.wait()
        return EXIT_OK

    def run(self, args):
        return getattr(self, args.command)(args)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(log_dir=args.log_dir or config.LOG_DIR, app_name="ApkInstaller",
                  verbose=args.verbose, quiet=args.quiet)
    try:
        adb = AdbClient(args.adb)
        adb.start_server()
        controller = MainController(adb)
        return controller.run(args)
    except KeyboardInterrupt:
        logger.info("⛔ Interrupted by user")
        return EXIT_INTERRUPTED
    except AdbError as e:
        logger.error(f"❌ {e}")
        return EXIT_FAILURE
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
