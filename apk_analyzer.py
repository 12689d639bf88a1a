"""
APK metadata extraction, grouping into installation units and per-device
split selection.

Metadata comes from ``aapt dump badging`` when aapt is available, otherwise
from file names. Two naming schemes are understood:

* bundle exports, one folder per package::

      com.example.app/base.apk
      com.example.app/split_config.arm64_v8a.apk
      com.example.app/split_config.xxhdpi.apk
      com.example.app/split_config.en.apk

* flat build outputs such as ``app-arm64-v8a-release.apk``.
"""
import re
import shutil
import hashlib
import logging
import subprocess
from pathlib import Path
from config import AAPT_BIN, ADB_DEFAULT_TIMEOUT
from models import (
    ApkFile, InstallationUnit, SplitMatchMode, ValidationResult, DENSITY_VALUES)

logger = logging.getLogger("ApkAnalyzer")

ABI_NAMES = ["arm64-v8a", "armeabi-v7a", "armeabi", "x86_64", "x86", "mips64", "mips"]
DPI_NAMES = ["xxxhdpi", "xxhdpi", "xhdpi", "tvdpi", "hdpi", "mdpi", "ldpi", "nodpi"]
FILENAME_LOCALES = ["en", "es", "fr", "de", "it", "pt", "ru", "ja", "ko", "zh", "ar", "hi", "tr", "vi"]
BUILD_WORDS = {"release", "debug", "signed", "unsigned", "aligned", "universal"}

ABI_LOOKUP = {abi.replace("-", "_"): abi for abi in ABI_NAMES}
ABI_LOOKUP.update({abi: abi for abi in ABI_NAMES})

LOCALE_TOKEN_RE = re.compile(r"^[a-z]{2,3}(?:[_-](?:r)?[A-Z]{2})?$")
BADGING_PACKAGE_RE = re.compile(r"package: name='([^']+)'")
BADGING_VERSION_RE = re.compile(r"versionCode='(\d+)'")
BADGING_SPLIT_RE = re.compile(r"split='([^']+)'")
BADGING_SDK_RE = re.compile(r"sdkVersion:'(\d+)'")


class SplitMatchError(Exception):
    """A unit cannot be installed on a device under the chosen matching rules."""


def classify_split(split_name):
    """Map a split name such as ``config.arm64_v8a`` to (abi, dpi, locale)."""
    if not split_name:
        return None, None, None
    token = split_name
    if "config." not in token:
        return None, None, None  # feature split
    token = token.split("config.", 1)[1]
    lower = token.lower()
    if lower in ABI_LOOKUP:
        return ABI_LOOKUP[lower], None, None
    if lower in DPI_NAMES:
        return None, lower, None
    if LOCALE_TOKEN_RE.match(token):
        return None, None, token
    return None, None, None


def _find_token(lower, names, separators="-_."):
    sep = re.escape(separators)
    for name in names:
        for variant in {name, name.replace("-", "_")}:
            if re.search(rf"(?:^|[{sep}]){re.escape(variant)}(?:$|[{sep}])", lower):
                return name
    return None


def file_sha256(path, chunk_size=1024 * 1024):
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def collect_apk_paths(paths):
    """
    Expand the given files and directories into a list of APK paths.

    A directory contributes its ``*.apk`` files; a directory without any APK
    of its own is treated as a repository of package folders and each
    immediate sub-directory is scanned instead.
    """
    collected = []
    for raw in paths:
        path = Path(raw).expanduser()
        if path.is_dir():
            apks = sorted(p for p in path.glob("*.apk") if p.is_file())
            if not apks:
                for folder in sorted(p for p in path.iterdir() if p.is_dir()):
                    apks.extend(sorted(p for p in folder.glob("*.apk") if p.is_file()))
            if not apks:
                logger.warning(f"No APK files found in {path}")
            collected.extend(str(p) for p in apks)
        elif path.is_file() and path.suffix.lower() == ".apk":
            collected.append(str(path))
        else:
            logger.warning(f"Skipping {path}: not an APK file or directory")
    seen = set()
    unique = []
    for p in collected:
        if p not in seen:
            seen.add(p)
            unique.append(p)
    return unique


class ApkAnalyzer:

    def __init__(self, aapt_path=None, compute_digest=False):
        self.aapt_path = str(aapt_path or AAPT_BIN)
        self.compute_digest = compute_digest
        self.aapt_available = Path(self.aapt_path).exists() or shutil.which(self.aapt_path) is not None
        if not self.aapt_available:
            logger.debug(f"aapt not found at {self.aapt_path}; APK metadata will come from file names")

    def _run_aapt(self, path):
        if not self.aapt_available:
            return None
        try:
            result = subprocess.run([self.aapt_path, "dump", "badging", str(path)],
                                    capture_output=True, text=True, encoding="utf-8",
                                    errors="replace", timeout=ADB_DEFAULT_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"aapt failed on {path}: {e}")
            return None
        if result.returncode != 0:
            logger.debug(f"aapt exited with {result.returncode} on {path}")
            return None
        return result.stdout

    def parse_badging(self, output, path):
        package = BADGING_PACKAGE_RE.search(output)
        if not package:
            return None
        version = BADGING_VERSION_RE.search(output)
        split = BADGING_SPLIT_RE.search(output)
        sdk = BADGING_SDK_RE.search(output)
        split_name = split.group(1) if split else None
        abi, dpi, locale = classify_split(split_name)
        return ApkFile(
            path=str(path),
            package_name=package.group(1),
            is_base=split_name is None,
            abi=abi,
            dpi=dpi,
            locale=locale,
            version_code=int(version.group(1)) if version else 0,
            split_name=split_name,
            min_sdk=int(sdk.group(1)) if sdk else None,
        )

    def info_from_filename(self, path):
        path = Path(path)
        stem = path.stem
        lower = stem.lower()
        folder = path.parent.name

        if lower == "base":
            return ApkFile(path=str(path), package_name=folder, is_base=True)
        if lower.startswith("split_"):
            split_name = stem[len("split_"):]
            abi, dpi, locale = classify_split(split_name)
            return ApkFile(path=str(path), package_name=folder, is_base=False, abi=abi,
                           dpi=dpi, locale=locale, split_name=split_name)

        abi = _find_token(lower, ABI_NAMES)
        dpi = _find_token(lower, DPI_NAMES)
        locale = _find_token(lower, FILENAME_LOCALES, separators="-_")
        package = stem.split("-", 1)[0] if "-" in stem else stem
        if package.lower() in BUILD_WORDS or not package:
            package = folder
        if not package:
            return None
        is_base = not (abi or dpi or locale)
        split_name = None
        if not is_base:
            split_name = "config." + (abi or dpi or locale).replace("-", "_")
        return ApkFile(path=str(path), package_name=package, is_base=is_base, abi=abi,
                       dpi=dpi, locale=locale, split_name=split_name)

    def analyze(self, path):
        """Return an ApkFile for ``path`` or None if it cannot be used."""
        path = Path(path)
        if not path.is_file():
            logger.warning(f"APK not found: {path}")
            return None
        info = None
        output = self._run_aapt(path)
        if output:
            info = self.parse_badging(output, path)
        if info is None:
            info = self.info_from_filename(path)
        if info is None:
            logger.warning(f"Could not determine package of {path.name}")
            return None
        info.size_bytes = path.stat().st_size
        if self.compute_digest:
            info.sha256 = file_sha256(path)
        return info

    def analyze_all(self, paths):
        return [info for info in (self.analyze(p) for p in paths) if info is not None]


def group_by_package(apk_files):
    """Group analyzed files into installation units, base first."""
    groups = {}
    for apk in apk_files:
        if not apk.is_valid:
            continue
        groups.setdefault(apk.package_name, []).append(apk)

    units = []
    for package, members in groups.items():
        bases = [m for m in members if m.is_base]
        if len(members) == 1 and not bases:
            units.append(InstallationUnit(package, [members[0].as_base()]))
        elif bases:
            units.append(InstallationUnit(package, bases + [m for m in members if not m.is_base]))
        else:
            logger.warning(f"Package {package} has no base APK, skipping {len(members)} split(s)")
    return units


def _nearest_density(splits, density):
    ranked = [s for s in splits if s.dpi in DENSITY_VALUES]
    if not ranked:
        return []
    return [min(ranked, key=lambda s: abs(DENSITY_VALUES[s.dpi] - density))]


def match_splits(unit, device, mode=SplitMatchMode.RELAXED):
    """Select the files of ``unit`` that suit ``device``."""
    base = unit.base_apk
    if base is None:
        raise SplitMatchError(f"{unit.package_name} has no base APK")
    if base.min_sdk and device.sdk and device.sdk < base.min_sdk:
        raise SplitMatchError(
            f"{unit.package_name} requires SDK {base.min_sdk}, device has {device.sdk}")
    if not unit.is_group:
        return unit

    splits = unit.split_apks
    abi_splits = [s for s in splits if s.abi]
    dpi_splits = [s for s in splits if s.dpi and not s.abi]
    other = [s for s in splits if not s.abi and not s.dpi]

    abi_missing = False
    if abi_splits and device.abilist:
        abi_selected = []
        # device ABI list is ordered by preference
        for abi in device.abilist:
            abi_selected = [s for s in abi_splits if s.abi.lower() == abi.lower()]
            if abi_selected:
                break
        abi_missing = not abi_selected
    else:
        abi_selected = abi_splits

    dpi_missing = False
    bucket = device.density_bucket
    if dpi_splits and bucket:
        dpi_selected = [s for s in dpi_splits if s.dpi in (bucket, "nodpi")]
        if not dpi_selected:
            dpi_missing = True
            dpi_selected = _nearest_density(dpi_splits, device.density)
    else:
        dpi_selected = dpi_splits

    if mode == SplitMatchMode.STRICT and abi_missing:
        raise SplitMatchError(
            f"No ABI split of {unit.package_name} matches {','.join(device.abilist)}")
    if mode == SplitMatchMode.BASE_ONLY and (abi_missing or dpi_missing):
        logger.info(f"{unit.package_name}: splits do not match {device.serial}, installing base only")
        return InstallationUnit(unit.package_name, [base])

    files = [base] + abi_selected + dpi_selected + other
    return InstallationUnit(unit.package_name, files)


def validate_unit(unit, verify_versions=True):
    errors = []
    bases = [f for f in unit.files if f.is_base]
    splits = [f for f in unit.files if not f.is_base]
    if len(bases) != 1:
        errors.append(f"Group must contain exactly one base APK (found {len(bases)})")
    if len({f.package_name for f in unit.files}) > 1:
        errors.append("Mixed package names in group")
    if verify_versions and len(bases) == 1 and bases[0].version_code:
        base_version = bases[0].version_code
        mismatched = [s for s in splits if s.version_code and s.version_code != base_version]
        if mismatched:
            errors.append(f"Version mismatch: {len(mismatched)} split(s) have a different "
                          f"versionCode than base ({base_version})")
    profiles = {}
    for split in splits:
        if split.sha256:
            profiles.setdefault(split.profile_id, set()).add(split.sha256)
    for profile, digests in profiles.items():
        if len(digests) > 1:
            errors.append(f"Conflicting duplicates for profile {profile}: "
                          f"different content but same ABI/DPI/locale")
    return ValidationResult(is_valid=not errors, errors=errors)
