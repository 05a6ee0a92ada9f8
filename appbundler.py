#!/usr/bin/env python3
"""appbundler - wrap an executable or shell command in a macOS .app bundle.

This module provides tools for:
1. Creating the .app directory layout with Info.plist, PkgInfo and a
   launcher script that runs the wrapped command
2. Converting a PNG, SVG or ICNS icon into the bundle's icon.icns
3. Generating entitlements and codesigning the finished bundle

Icon conversion and signing are delegated to the macOS command line tools
(sips, iconutil, qlmanage, codesign), so those stages only work on macOS.
The bundle itself can be assembled on any POSIX system.

Security note: the wrapped command is written into the launcher script
verbatim, without any quoting or escaping. Only bundle commands you trust.

Usage (CLI):
    # Wrap a command line tool
    appbundler 'Midnight Commander' /Applications /usr/local/bin/mc

    # With an icon, signed with hardened runtime
    appbundler MyTool ~/Applications '/opt/mytool/run.sh --gui' \\
        --icon mytool.svg --sign 'Developer ID Application: John Doe' \\
        --hardened-runtime --allow-jit

Usage (API):
    from appbundler import Bundle, BundleOptions, make_bundle

    bundle_path = make_bundle("Demo", "/tmp/out", "/bin/true")

    options = BundleOptions("Demo", "/tmp/out", "/bin/true", icon="demo.png")
    Bundle(options).create()
"""

import argparse
import contextlib
import datetime
import logging
import os
import plistlib
import re
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, NamedTuple

from dotenv import load_dotenv

# ----------------------------------------------------------------------------
# Constants

__version__ = "1.0.0"

# Type aliases
Pathlike = Path | str

# Bundle package type identifier (APPL = Application, ???? = creator code)
PKG_INFO_CONTENT = b"APPL????"

# Bundle identifier synthesis
BUNDLE_ID_PREFIX = "com.appbundlegenerator."
FALLBACK_BUNDLE_ID = "com.appbundlegenerator.app"

# Info.plist defaults
DEFAULT_DEVELOPMENT_REGION = "en"
DEFAULT_MIN_OS_VERSION = "12.0"
DEFAULT_CATEGORY = "public.app-category.utilities"
DEFAULT_SHORT_VERSION = "1.0.0"
DEFAULT_BUILD_VERSION = "1"
INFO_DICTIONARY_VERSION = "6.0"
PRINCIPAL_CLASS = "NSApplication"

# Bundle layout names
BUNDLE_EXT = ".app"
RESOURCES_LANG = "English.lproj"
ICON_FILENAME = "icon.icns"

# Default time limit (seconds) for any external tool
DEFAULT_COMMAND_TIMEOUT = 300.0

# Environment variable names
ENV_SIGN_IDENTITY = "APPBUNDLER_SIGN_IDENTITY"
ENV_TIMEOUT = "APPBUNDLER_TIMEOUT"

# (pixel size, file name) pairs expected by iconutil in an .iconset folder
ICONSET_SIZES = [
    (16, "icon_16x16.png"),
    (32, "icon_16x16@2x.png"),
    (32, "icon_32x32.png"),
    (64, "icon_32x32@2x.png"),
    (128, "icon_128x128.png"),
    (256, "icon_128x128@2x.png"),
    (256, "icon_256x256.png"),
    (512, "icon_256x256@2x.png"),
    (512, "icon_512x512.png"),
    (1024, "icon_512x512@2x.png"),
]

# Resolution of the raster rendered from an SVG source
SVG_RENDER_SIZE = 1024

# Entitlement keys
ENTITLEMENT_ALLOW_JIT = "com.apple.security.cs.allow-jit"
ENTITLEMENT_ALLOW_UNSIGNED_MEMORY = (
    "com.apple.security.cs.allow-unsigned-executable-memory"
)
ENTITLEMENT_ALLOW_DYLD_VARS = (
    "com.apple.security.cs.allow-dyld-environment-variables"
)
ENTITLEMENT_DISABLE_LIBRARY_VALIDATION = (
    "com.apple.security.cs.disable-library-validation"
)
ENTITLEMENT_PLACEHOLDER = "com.apple.security.get-task-allow"

log = logging.getLogger("appbundler")

# ----------------------------------------------------------------------------
# Environment

load_dotenv()

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .appbundler.toml in current directory
    3. appbundler.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Example .appbundler.toml:
        [bundle]
        identifier = "com.example.mytool"
        min_os = "13.0"
        category = "public.app-category.developer-tools"
        version = "2.1.0"

        [sign]
        identity = "Developer ID Application: John Doe (ABCD123456)"
        entitlements = "entitlements.plist"
    """
    if sys.version_info >= (3, 11):
        import tomllib
    else:
        import tomli as tomllib

    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".appbundler.toml",
            cwd / "appbundler.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError) as e:
                log.warning("ignoring unreadable config %s: %s", path, e)
                continue

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "bundle", "sign")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_command_timeout() -> float:
    """Return the time limit for external tools, in seconds."""
    value = os.getenv(ENV_TIMEOUT)
    if value:
        try:
            timeout = float(value)
        except ValueError:
            log.warning("ignoring invalid %s=%r", ENV_TIMEOUT, value)
        else:
            if timeout > 0:
                return timeout
            log.warning("ignoring non-positive %s=%r", ENV_TIMEOUT, value)
    return DEFAULT_COMMAND_TIMEOUT


# ----------------------------------------------------------------------------
# Error handling


class ErrorCode(Enum):
    """User-facing outcome of a bundle build."""

    SUCCESS = 0
    INVALID_ARGUMENTS = 1
    DIRECTORY_CREATION_FAILED = 2
    METADATA_GENERATION_FAILED = 3
    SCRIPT_GENERATION_FAILED = 4
    ICON_CONVERSION_FAILED = 5
    CODE_SIGNING_FAILED = 6
    FILE_NOT_FOUND = 7
    PERMISSION_DENIED = 8

    @property
    def description(self) -> str:
        return _ERROR_DESCRIPTIONS[self]


_ERROR_DESCRIPTIONS = {
    ErrorCode.SUCCESS: "Success",
    ErrorCode.INVALID_ARGUMENTS: "Invalid arguments",
    ErrorCode.DIRECTORY_CREATION_FAILED: "Failed to create directory",
    ErrorCode.METADATA_GENERATION_FAILED: "Failed to generate bundle metadata",
    ErrorCode.SCRIPT_GENERATION_FAILED: "Failed to generate launcher script",
    ErrorCode.ICON_CONVERSION_FAILED: "Icon conversion failed",
    ErrorCode.CODE_SIGNING_FAILED: "Code signing failed",
    ErrorCode.FILE_NOT_FOUND: "File not found",
    ErrorCode.PERMISSION_DENIED: "Permission denied",
}


class BundlerError(Exception):
    """Base exception class for appbundler errors.

    Every error maps to exactly one ErrorCode, used for the one-line
    report printed by the command line interface.
    """

    code = ErrorCode.INVALID_ARGUMENTS

    def __init__(self, details: str = "", code: ErrorCode | None = None):
        if code is not None:
            self.code = code
        self.details = details
        super().__init__(details or self.code.description)


class ValidationError(BundlerError):
    """Exception raised when an argument or input file is invalid."""


class MissingFileError(BundlerError):
    """Exception raised when a required input file does not exist."""

    code = ErrorCode.FILE_NOT_FOUND


class AccessError(BundlerError):
    """Exception raised when the filesystem refuses an operation."""

    code = ErrorCode.PERMISSION_DENIED


class DirectoryError(BundlerError):
    """Exception raised when a bundle directory cannot be created."""

    code = ErrorCode.DIRECTORY_CREATION_FAILED


class MetadataError(BundlerError):
    """Exception raised when Info.plist or PkgInfo cannot be written."""

    code = ErrorCode.METADATA_GENERATION_FAILED


class ScriptError(BundlerError):
    """Exception raised when the launcher script cannot be written."""

    code = ErrorCode.SCRIPT_GENERATION_FAILED


class IconConversionError(BundlerError):
    """Exception raised when the icon cannot be converted or copied."""

    code = ErrorCode.ICON_CONVERSION_FAILED


class CodesignError(BundlerError):
    """Exception raised when codesigning or verification fails."""

    code = ErrorCode.CODE_SIGNING_FAILED


class CommandError(BundlerError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class CommandTimeoutError(CommandError):
    """Exception raised when a command exceeds its time limit."""

    def __init__(self, command: str, timeout: float, output: str | None = None):
        self.timeout = timeout
        super().__init__(command, -1, output)
        self.details = f"Command '{command}' timed out after {timeout:g}s"
        self.args = (self.details,)


def format_error(error: BundlerError) -> str:
    """Render an error as the one-line report shown to the user."""
    message = f"ERROR: {error.code.description}"
    if error.details:
        message += f" - {error.details}"
    return message


def _os_error(
    error_class: type[BundlerError], message: str, err: OSError
) -> BundlerError:
    """Map an OSError onto the matching BundlerError subclass."""
    if isinstance(err, PermissionError):
        return AccessError(f"{message}: {err.strerror or err}")
    return error_class(f"{message}: {err.strerror or err}")


# ----------------------------------------------------------------------------
# File validation


def validate_file(path: Pathlike) -> None:
    """Validate an input file before handing it to the pipeline.

    Checks that the path exists, is a regular file, is readable and is
    not empty.

    Args:
        path: Path to the file to validate

    Raises:
        MissingFileError: If the file does not exist
        ValidationError: If any other check fails
    """
    path = Path(path)

    if not path.exists():
        raise MissingFileError(f"File does not exist: {path}")

    if not path.is_file():
        raise ValidationError(f"Path is not a regular file: {path}")

    if not os.access(path, os.R_OK):
        raise AccessError(f"File is not readable: {path}")

    try:
        size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Cannot stat file {path}: {e}") from e

    if size == 0:
        raise ValidationError(f"File is empty (zero bytes): {path}")


def validate_bundle_name(name: str) -> None:
    """Reject bundle names that would escape the destination directory.

    Args:
        name: The bundle display name

    Raises:
        ValidationError: If the name is empty, spans several lines, or is
            not a single path segment
    """
    if not name or not name.strip():
        raise ValidationError("Bundle name cannot be empty")
    if name in (".", "..") or any(c in name for c in "/\0\n\r"):
        raise ValidationError(f"Bundle name is not a valid file name: '{name}'")


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        cyan = "\x1b[36;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    dry_run: bool = False,
    log: logging.Logger | None = None,
    timeout: float | None = None,
) -> str:
    """Run a command and return its combined output.

    This is the command execution utility used by every external tool
    stage. Uses shell=False, merges stderr into stdout, and never waits
    longer than the configured time limit.

    Args:
        command: The command as a list of arguments
        dry_run: If True, log command but don't execute (default: False)
        log: Optional logger for debug/dry-run output
        timeout: Time limit in seconds (default: get_command_timeout())

    Returns:
        The command output

    Raises:
        CommandError: If the command fails or cannot be started
        CommandTimeoutError: If the command exceeds the time limit
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    if dry_run:
        if log:
            log.info("[DRY RUN] %s", cmd_str)
        return ""
    if timeout is None:
        timeout = get_command_timeout()
    try:
        result = subprocess.run(
            command,
            shell=False,
            check=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.output) from e
    except subprocess.TimeoutExpired as e:
        output = e.output
        if isinstance(output, bytes):
            output = output.decode(errors="replace")
        raise CommandTimeoutError(cmd_str, timeout, output) from e
    except FileNotFoundError as e:
        # same status a shell reports for a missing program
        raise CommandError(cmd_str, 127, str(e)) from e


@contextlib.contextmanager
def scratch_path(path: Pathlike) -> Iterator[Path]:
    """Remove a temporary file or directory on entry and on every exit.

    Args:
        path: The scratch file or directory

    Yields:
        The scratch path as a Path
    """
    path = Path(path)
    _remove_path(path)
    try:
        yield path
    finally:
        _remove_path(path)


def _remove_path(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as e:
        log.warning("could not remove %s: %s", path, e)


# ----------------------------------------------------------------------------
# Bundle options and layout


@dataclass(frozen=True)
class BundleOptions:
    """Everything needed to build one bundle.

    Args:
        name: Bundle display name, also the launcher script name
        destination: Directory that will contain <name>.app
        command: Executable path or shell command line to wrap
        icon: Optional icon source (.png, .svg or .icns)
        identifier: Custom bundle identifier (default: derived from name)
        min_os_version: Minimum macOS version (default: "12.0")
        category: App Store category (default: utilities)
        version: Version string for both version keys (default: None,
            meaning "1.0.0" short version and "1" build version)
        sign_identity: Codesigning identity; None skips signing
        hardened_runtime: Sign with the hardened runtime
        entitlements: Entitlements file to sign with
        force_sign: Replace an existing signature
        allow_jit: Grant the JIT exception under hardened runtime
        allow_unsigned_memory: Grant unsigned executable memory
        allow_dyld_vars: Grant DYLD environment variables
    """

    name: str
    destination: Pathlike
    command: str
    icon: Pathlike | None = None
    identifier: str | None = None
    min_os_version: str = DEFAULT_MIN_OS_VERSION
    category: str = DEFAULT_CATEGORY
    version: str | None = None
    sign_identity: str | None = None
    hardened_runtime: bool = False
    entitlements: Pathlike | None = None
    force_sign: bool = False
    allow_jit: bool = False
    allow_unsigned_memory: bool = False
    allow_dyld_vars: bool = False


@dataclass(frozen=True)
class SignOptions:
    """Codesigning parameters; an empty identity disables signing."""

    identity: str | None
    hardened_runtime: bool = False
    entitlements: Pathlike | None = None
    force: bool = False
    timestamp: bool = True


class BundleLayout(NamedTuple):
    """Directory layout of a bundle."""

    bundle: Path
    contents: Path
    macos: Path
    resources: Path
    resources_lang: Path

    @property
    def info_plist(self) -> Path:
        return self.contents / "Info.plist"

    @property
    def pkg_info(self) -> Path:
        return self.contents / "PkgInfo"

    @property
    def icon(self) -> Path:
        return self.resources / ICON_FILENAME

    @property
    def executable(self) -> Path:
        return self.macos / self.bundle.stem

    @property
    def directories(self) -> list[Path]:
        """All bundle directories, outermost first."""
        return [
            self.bundle,
            self.contents,
            self.macos,
            self.resources,
            self.resources_lang,
        ]


def bundle_layout(name: str, destination: Pathlike) -> BundleLayout:
    """Compute the directory layout for a bundle.

    The name is not validated here; see validate_bundle_name().

    Args:
        name: Bundle name
        destination: Directory where the bundle goes

    Returns:
        The bundle layout
    """
    bundle = Path(destination) / f"{name}{BUNDLE_EXT}"
    contents = bundle / "Contents"
    resources = contents / "Resources"
    return BundleLayout(
        bundle=bundle,
        contents=contents,
        macos=contents / "MacOS",
        resources=resources,
        resources_lang=resources / RESOURCES_LANG,
    )


def make_bundle_identifier(name: str, identifier: str | None = None) -> str:
    """Return the custom identifier, or synthesize one from the name.

    "My Tool 2" becomes "com.appbundlegenerator.my-tool-2". A name with no
    usable characters yields FALLBACK_BUNDLE_ID.
    """
    if identifier:
        return identifier
    slug = re.sub(r"[^a-z0-9-]", "", name.lower().replace(" ", "-"))
    if not slug:
        return FALLBACK_BUNDLE_ID
    return BUNDLE_ID_PREFIX + slug


# ----------------------------------------------------------------------------
# Directory scaffolding


def ancestor_paths(path: Pathlike) -> list[Path]:
    """Return every path segment from the root down to path, in order."""
    path = Path(path)
    return [*reversed(path.parents), path]


def ensure_directory_tree(path: Pathlike) -> Path:
    """Create path and every missing parent directory.

    Existing directories are left alone, so calling this twice on the
    same path succeeds both times.

    Args:
        path: The directory to create

    Returns:
        The directory path

    Raises:
        DirectoryError: If a segment cannot be created
        AccessError: If a segment cannot be created for lack of permission
    """
    path = Path(path)
    for segment in ancestor_paths(path):
        if segment.is_dir():
            continue
        try:
            segment.mkdir()
        except FileExistsError as e:
            if not segment.is_dir():
                raise DirectoryError(
                    f"{segment} exists and is not a directory"
                ) from e
        except OSError as e:
            raise _os_error(DirectoryError, f"cannot create {segment}", e) from e
    return path


# ----------------------------------------------------------------------------
# Bundle metadata


def build_info_plist(options: BundleOptions) -> dict[str, object]:
    """Build the Info.plist dictionary for a bundle."""
    short_version = options.version or DEFAULT_SHORT_VERSION
    build_version = options.version or DEFAULT_BUILD_VERSION
    return {
        "CFBundleDevelopmentRegion": DEFAULT_DEVELOPMENT_REGION,
        "CFBundleExecutable": options.name,
        "CFBundleIdentifier": make_bundle_identifier(
            options.name, options.identifier
        ),
        "CFBundleInfoDictionaryVersion": INFO_DICTIONARY_VERSION,
        "CFBundleName": options.name,
        "CFBundleDisplayName": options.name,
        "CFBundlePackageType": "APPL",
        "CFBundleShortVersionString": short_version,
        "CFBundleVersion": build_version,
        "CFBundleSignature": "????",
        "CFBundleIconFile": ICON_FILENAME,
        "LSMinimumSystemVersion": options.min_os_version
        or DEFAULT_MIN_OS_VERSION,
        "NSHighResolutionCapable": True,
        "LSApplicationCategoryType": options.category or DEFAULT_CATEGORY,
        "NSSupportsAutomaticGraphicsSwitching": True,
        "NSPrincipalClass": PRINCIPAL_CLASS,
    }


def write_info_plist(path: Pathlike, options: BundleOptions) -> Path:
    """Write a binary Info.plist.

    Raises:
        MetadataError: If the dictionary cannot be encoded or written
        AccessError: If the file cannot be opened for lack of permission
    """
    path = Path(path)
    try:
        data = plistlib.dumps(build_info_plist(options), fmt=plistlib.FMT_BINARY)
    except (TypeError, ValueError, OverflowError) as e:
        raise MetadataError(f"cannot encode Info.plist: {e}") from e
    try:
        with open(path, "wb") as fopen:
            fopen.write(data)
    except OSError as e:
        raise _os_error(MetadataError, f"cannot write {path}", e) from e
    return path


def write_pkg_info(contents_dir: Pathlike) -> Path:
    """Write the legacy PkgInfo marker into a Contents directory."""
    path = Path(contents_dir) / "PkgInfo"
    try:
        with open(path, "wb") as fopen:
            fopen.write(PKG_INFO_CONTENT)
    except OSError as e:
        raise _os_error(MetadataError, f"cannot write {path}", e) from e
    return path


LAUNCHER_SCRIPT_TMPL = """\
#!/bin/sh
# Launcher script for {name}

{command}

# EOF
"""


def write_launcher_script(path: Pathlike, name: str, command: str) -> Path:
    """Write the shell script that runs the wrapped command.

    The command is inserted verbatim; quoting is the caller's job. Only the
    first line of the name goes into the banner comment.

    Raises:
        ScriptError: If the script cannot be written
        AccessError: If the script cannot be written for lack of permission
    """
    path = Path(path)
    banner = (name.splitlines() or [""])[0]
    try:
        with open(path, "w", encoding="utf-8") as fopen:
            fopen.write(LAUNCHER_SCRIPT_TMPL.format(name=banner, command=command))
        os.chmod(path, 0o755)
    except OSError as e:
        raise _os_error(ScriptError, f"cannot write {path}", e) from e
    return path


# ----------------------------------------------------------------------------
# Icon conversion


class IconFormat(Enum):
    """Icon source formats, detected from the file extension."""

    UNKNOWN = "unknown"
    PNG = "png"
    SVG = "svg"
    ICNS = "icns"


_ICON_EXTENSIONS = {
    ".png": IconFormat.PNG,
    ".svg": IconFormat.SVG,
    ".icns": IconFormat.ICNS,
}


def detect_icon_format(path: Pathlike) -> IconFormat:
    """Classify an icon by the text after the last dot of its name, ignoring case.

    A bare dotfile such as ".png" counts as a PNG.
    """
    _, dot, extension = Path(path).name.rpartition(".")
    if not dot:
        return IconFormat.UNKNOWN
    return _ICON_EXTENSIONS.get("." + extension.lower(), IconFormat.UNKNOWN)


class IconConverter:
    """Converts an icon source into the bundle's .icns file.

    - ICNS sources are copied byte for byte.
    - PNG sources are resized with sips into an .iconset folder, which
      iconutil packs into an .icns file.
    - SVG sources are first rendered to a 1024px PNG with qlmanage, then
      handled like PNG sources.

    Scratch folders live in the system temp directory, are keyed by the
    process id, and are removed whether or not the conversion succeeds.

    Args:
        source: Path to the icon source
        destination: Path of the .icns file to produce

    Example:
        IconConverter("logo.svg", "My.app/Contents/Resources/icon.icns").convert()
    """

    def __init__(self, source: Pathlike, destination: Pathlike):
        self.source = Path(source)
        self.destination = Path(destination)
        self.format = detect_icon_format(self.source)
        self.scratch_root = Path(tempfile.gettempdir())
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str]) -> str:
        """Run an external tool through run_command()."""
        return run_command(command, log=self.log)

    def convert(self) -> Path:
        """Produce the destination .icns file.

        Returns:
            The destination path

        Raises:
            IconConversionError: If any stage fails
            MissingFileError: If the source does not exist
        """
        if self.format is IconFormat.UNKNOWN:
            raise IconConversionError(
                f"unsupported icon format: {self.source.name} "
                "(expected .png, .svg or .icns)"
            )
        validate_file(self.source)

        self.log.info("Converting %s icon %s", self.format.value, self.source)
        if self.format is IconFormat.ICNS:
            self.copy_icns()
        elif self.format is IconFormat.PNG:
            self.convert_png()
        else:
            self.convert_svg()
        self.log.info("Added icon: %s", self.destination)
        return self.destination

    def copy_icns(self) -> None:
        """Copy a ready-made .icns file."""
        try:
            shutil.copyfile(self.source, self.destination)
        except OSError as e:
            raise IconConversionError(
                f"cannot copy {self.source} to {self.destination}: {e}"
            ) from e

    def convert_png(self) -> None:
        """Convert the PNG source through a scratch iconset."""
        iconset = self.scratch_root / f"appbundle_{os.getpid()}.iconset"
        with scratch_path(iconset):
            self._make_scratch_dir(iconset)
            self.generate_iconset(self.source, iconset)
            self.pack_iconset(iconset)

    def convert_svg(self) -> None:
        """Render an SVG to PNG, then convert it like a PNG."""
        work_dir = self.scratch_root / f"appbundle_{os.getpid()}"
        with scratch_path(work_dir):
            iconset = work_dir / "temp.iconset"
            self._make_scratch_dir(iconset)

            try:
                self.run_command(
                    [
                        "qlmanage",
                        "-t",
                        "-s",
                        str(SVG_RENDER_SIZE),
                        "-o",
                        str(work_dir),
                        str(self.source),
                    ]
                )
            except CommandError as e:
                raise IconConversionError(
                    f"qlmanage failed to render {self.source.name} "
                    f"(exit code {e.returncode})"
                ) from e

            base_png = work_dir / "base.png"
            rendered = self.find_rendered_image(work_dir)
            try:
                rendered.rename(base_png)
            except OSError as e:
                raise IconConversionError(
                    f"cannot rename {rendered}: {e}"
                ) from e

            self.generate_iconset(base_png, iconset)
            self.pack_iconset(iconset)

    def find_rendered_image(self, work_dir: Path) -> Path:
        """Locate qlmanage's output, whose naming varies between releases.

        Tries <name>.png first (e.g. logo.svg.png), then <name> itself.
        """
        candidates = [
            work_dir / f"{self.source.name}.png",
            work_dir / self.source.name,
        ]
        for candidate in candidates:
            if candidate.exists():
                return candidate
        raise IconConversionError(
            f"could not find qlmanage output for {self.source.name} "
            f"in {work_dir}"
        )

    def generate_iconset(self, png: Path, iconset_dir: Path) -> None:
        """Resize png into every size in ICONSET_SIZES.

        Raises:
            IconConversionError: On the first size that fails
        """
        for pixels, filename in ICONSET_SIZES:
            output = iconset_dir / filename
            self.log.debug("creating %s (%dx%d)", filename, pixels, pixels)
            try:
                self.run_command(
                    [
                        "sips",
                        "-z",
                        str(pixels),
                        str(pixels),
                        str(png),
                        "--out",
                        str(output),
                    ]
                )
            except CommandError as e:
                raise IconConversionError(
                    f"sips failed for size {pixels}x{pixels} "
                    f"(exit code {e.returncode})"
                ) from e

    def pack_iconset(self, iconset_dir: Path) -> None:
        """Pack an iconset folder into the destination .icns file."""
        try:
            self.run_command(
                [
                    "iconutil",
                    "-c",
                    "icns",
                    str(iconset_dir),
                    "-o",
                    str(self.destination),
                ]
            )
        except CommandError as e:
            raise IconConversionError(
                f"iconutil failed (exit code {e.returncode})"
            ) from e

    def _make_scratch_dir(self, path: Path) -> None:
        try:
            ensure_directory_tree(path)
        except BundlerError as e:
            raise IconConversionError(
                f"cannot create scratch directory: {e.details}"
            ) from e


# ----------------------------------------------------------------------------
# Entitlements


def build_entitlements(
    hardened_runtime: bool = False,
    allow_jit: bool = False,
    allow_unsigned_memory: bool = False,
    allow_dyld_vars: bool = False,
) -> dict[str, bool]:
    """Build the entitlements dictionary used when signing.

    The exception flags only apply under the hardened runtime, which also
    always disables library validation so the launcher script can start
    binaries signed by other teams. The result is never empty: without
    any entitlement, a harmless placeholder is added.
    """
    entitlements: dict[str, bool] = {}

    if hardened_runtime:
        if allow_jit:
            entitlements[ENTITLEMENT_ALLOW_JIT] = True
        if allow_unsigned_memory:
            entitlements[ENTITLEMENT_ALLOW_UNSIGNED_MEMORY] = True
        if allow_dyld_vars:
            entitlements[ENTITLEMENT_ALLOW_DYLD_VARS] = True
        entitlements[ENTITLEMENT_DISABLE_LIBRARY_VALIDATION] = True

    if not entitlements:
        # some tools reject an entitlements file without any entry
        entitlements[ENTITLEMENT_PLACEHOLDER] = True

    return entitlements


def write_entitlements(
    path: Pathlike,
    hardened_runtime: bool = False,
    allow_jit: bool = False,
    allow_unsigned_memory: bool = False,
    allow_dyld_vars: bool = False,
) -> Path:
    """Write an XML entitlements plist (codesign does not accept binary).

    Raises:
        CodesignError: If the file cannot be written
    """
    path = Path(path)
    entitlements = build_entitlements(
        hardened_runtime, allow_jit, allow_unsigned_memory, allow_dyld_vars
    )
    log.debug("entitlements: %s", ", ".join(entitlements))
    try:
        with open(path, "wb") as fopen:
            plistlib.dump(entitlements, fopen, fmt=plistlib.FMT_XML)
    except OSError as e:
        raise _os_error(
            CodesignError, f"cannot write entitlements {path}", e
        ) from e
    return path


# ----------------------------------------------------------------------------
# Codesigning


class Codesigner:
    """Codesign a bundle and verify the signature.

    Args:
        path: Path to the bundle to sign
        options: Signing identity and flags
        dry_run: If True, only log the codesign commands

    Example:
        signer = Codesigner("MyTool.app", SignOptions("Developer ID Application: John Doe"))
        signer.sign()
        signer.verify()
    """

    def __init__(
        self,
        path: Pathlike,
        options: SignOptions,
        dry_run: bool = False,
    ) -> None:
        self.path = Path(path)
        self.options = options
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

        self.entitlements: Path | None
        if options.entitlements:
            self.entitlements = Path(options.entitlements)
            if not self.dry_run and not self.entitlements.exists():
                raise MissingFileError(
                    f"Entitlements file not found: {self.entitlements}"
                )
        else:
            self.entitlements = None

    @property
    def enabled(self) -> bool:
        """True when an identity was given."""
        return bool(self.options.identity)

    def run_command(self, command: list[str]) -> str:
        """Run a command through run_command()."""
        return run_command(command, dry_run=self.dry_run, log=self.log)

    def sign_command(self) -> list[str]:
        """Build the codesign invocation."""
        command = ["codesign", "--sign", str(self.options.identity)]
        if self.options.hardened_runtime:
            command.extend(["--options", "runtime"])
        if self.options.force:
            command.append("--force")
        if self.options.timestamp:
            command.append("--timestamp")
        if self.entitlements:
            command.extend(["--entitlements", str(self.entitlements)])
        command.extend(["--verbose", str(self.path)])
        return command

    def sign(self) -> None:
        """Sign the bundle; does nothing without an identity.

        Raises:
            CodesignError: If codesign exits with a non-zero status
        """
        if not self.enabled:
            self.log.debug("no signing identity, skipping %s", self.path)
            return

        self.log.info("signing %s as '%s'", self.path, self.options.identity)
        try:
            output = self.run_command(self.sign_command())
        except CommandError as e:
            raise CodesignError(
                f"codesign exited with code {e.returncode}"
                + _tail(e.output)
            ) from e
        if output:
            self.log.debug("%s", output.strip())

    def verify(self) -> None:
        """Verify the bundle's signature.

        Raises:
            CodesignError: If verification fails
        """
        try:
            self.run_command(["codesign", "--verify", "--verbose", str(self.path)])
        except CommandError as e:
            raise CodesignError(
                f"signature verification failed with code {e.returncode}"
                + _tail(e.output)
            ) from e
        self.log.info("verified: %s", self.path)


def _tail(output: str | None) -> str:
    """Return the last line of tool output, formatted for an error message."""
    lines = (output or "").strip().splitlines()
    return f": {lines[-1]}" if lines else ""


# ----------------------------------------------------------------------------
# Bundle assembly


class Bundle:
    """Creates a macOS application bundle around a command.

    The build runs in this order: directories, launcher script, PkgInfo,
    Info.plist, icon, then entitlements, signing and verification. Errors
    in the first four stages abort the build. Icon and signing errors
    leave a working, unsigned or icon-less bundle behind; they are logged
    and collected in `errors`.

    Args:
        options: The bundle options
        dry_run: If True, only show what would be done without doing it

    Example:
        bundle = Bundle(BundleOptions("Demo", "/tmp/out", "/bin/true"))
        bundle.create()
    """

    def __init__(self, options: BundleOptions, dry_run: bool = False):
        self.options = options
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

        self.layout = bundle_layout(options.name, options.destination)
        self.identifier = make_bundle_identifier(
            options.name, options.identifier
        )
        self.errors: list[BundlerError] = []

    @property
    def bundle(self) -> Path:
        return self.layout.bundle

    def create_directories(self) -> None:
        """Create every bundle directory."""
        for directory in self.layout.directories:
            if self.dry_run:
                self.log.info("[DRY RUN] Would create %s", directory)
                continue
            ensure_directory_tree(directory)

    def create_launcher_script(self) -> None:
        """Create the launcher script in Contents/MacOS."""
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would create %s running: %s",
                self.layout.executable,
                self.options.command,
            )
            return
        write_launcher_script(
            self.layout.executable, self.options.name, self.options.command
        )

    def create_pkg_info(self) -> None:
        """Create the PkgInfo file."""
        if self.dry_run:
            self.log.info("[DRY RUN] Would create %s", self.layout.pkg_info)
            return
        write_pkg_info(self.layout.contents)

    def create_info_plist(self) -> None:
        """Create the Info.plist file."""
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would create %s (%s)",
                self.layout.info_plist,
                self.identifier,
            )
            return
        write_info_plist(self.layout.info_plist, self.options)

    def create_icon(self) -> None:
        """Convert the icon into Resources/icon.icns (best effort)."""
        icon = self.options.icon
        if not icon:
            return
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would convert icon %s to %s", icon, self.layout.icon
            )
            return
        try:
            IconConverter(icon, self.layout.icon).convert()
        except BundlerError as e:
            self.log.warning("%s; continuing without icon", format_error(e))
            self.errors.append(e)

    def sign(self) -> None:
        """Sign and verify the bundle (best effort).

        When the hardened runtime is requested without an entitlements
        file, a temporary one is generated from the exception flags.
        """
        opts = self.options
        if not opts.sign_identity:
            return

        if not opts.hardened_runtime and (
            opts.allow_jit or opts.allow_unsigned_memory or opts.allow_dyld_vars
        ):
            self.log.warning(
                "entitlement exceptions are ignored without --hardened-runtime"
            )

        try:
            with contextlib.ExitStack() as stack:
                entitlements = opts.entitlements
                if opts.hardened_runtime and not entitlements:
                    entitlements = stack.enter_context(
                        scratch_path(
                            Path(tempfile.gettempdir())
                            / f"appbundle_{os.getpid()}_entitlements.plist"
                        )
                    )
                    if self.dry_run:
                        self.log.info(
                            "[DRY RUN] Would generate entitlements %s",
                            entitlements,
                        )
                    else:
                        write_entitlements(
                            entitlements,
                            hardened_runtime=True,
                            allow_jit=opts.allow_jit,
                            allow_unsigned_memory=opts.allow_unsigned_memory,
                            allow_dyld_vars=opts.allow_dyld_vars,
                        )

                signer = Codesigner(
                    self.bundle,
                    SignOptions(
                        identity=opts.sign_identity,
                        hardened_runtime=opts.hardened_runtime,
                        entitlements=entitlements,
                        force=opts.force_sign,
                        timestamp=True,
                    ),
                    dry_run=self.dry_run,
                )
                signer.sign()
                signer.verify()
        except BundlerError as e:
            self.log.error("%s", format_error(e))
            self.errors.append(e)

    def create(self) -> Path:
        """Create the complete bundle.

        Returns:
            Path to the created bundle

        Raises:
            BundlerError: If a directory, the launcher script, PkgInfo or
                Info.plist cannot be created
        """
        if self.dry_run:
            self.log.info("[DRY RUN] Would create bundle at %s", self.bundle)
        else:
            self.log.info("Creating bundle at %s", self.bundle)

        self.create_directories()
        self.create_launcher_script()
        self.create_pkg_info()
        self.create_info_plist()
        self.create_icon()
        self.sign()

        if self.dry_run:
            self.log.info("[DRY RUN] Bundle would be created at: %s", self.bundle)
        elif self.errors:
            self.log.warning(
                "Bundle created with %d error(s): %s",
                len(self.errors),
                self.bundle,
            )
        else:
            self.log.info("Bundle created successfully: %s", self.bundle)
        return self.bundle


# ----------------------------------------------------------------------------
# Functional API


def make_bundle(
    name: str,
    destination: Pathlike,
    command: str,
    dry_run: bool = False,
    **kwargs: object,
) -> Path:
    """Create a macOS application bundle around a command.

    This is a convenience function that creates a Bundle instance
    and calls create() on it.

    Args:
        name: Bundle name
        destination: Directory where the bundle goes
        command: Executable path or command line to wrap
        dry_run: If True, only show what would be done
        **kwargs: Any other BundleOptions field

    Returns:
        Path to the created bundle

    Example:
        bundle_path = make_bundle("Demo", "/tmp/out", "/bin/true", version="2.0")
    """
    options = BundleOptions(
        name=name, destination=destination, command=command, **kwargs
    )
    return Bundle(options, dry_run=dry_run).create()


# ----------------------------------------------------------------------------
# Command-line interface


class ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser reporting usage errors as ValidationError."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        raise ValidationError(message)


def build_parser() -> ArgumentParser:
    """Build the command line parser."""
    parser = ArgumentParser(
        prog="appbundler",
        description="Wrap an executable or shell command in a macOS .app bundle.",
        epilog=(
            "Examples:\n"
            "  appbundler 'Midnight Commander' /Applications /usr/local/bin/mc\n"
            "  appbundler MyTool ~/Applications '/opt/mytool/run --gui' --icon tool.png\n"
            "  appbundler MyTool dist ./mytool --sign 'Developer ID Application: John Doe' \\\n"
            "      --hardened-runtime --allow-jit\n"
            "\n"
            "The command is written into the launcher script verbatim.\n"
            "Only bundle commands you trust."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("name", metavar="BundleName", help="name of the bundle")
    parser.add_argument(
        "destination",
        metavar="DestinationDir",
        help="directory where the bundle is created",
    )
    parser.add_argument(
        "command",
        metavar="ExecutableOrCommand",
        help="executable or shell command line run by the bundle",
    )
    parser.add_argument(
        "icon_path",
        metavar="IconPath",
        nargs="?",
        help="icon file (same as --icon, kept for compatibility)",
    )
    parser.add_argument(
        "--icon",
        metavar="FILE",
        help="icon file (.png, .svg or .icns)",
    )
    parser.add_argument(
        "--sign",
        metavar="IDENTITY",
        help=f"codesigning identity (or set {ENV_SIGN_IDENTITY} env var)",
    )
    parser.add_argument(
        "--hardened-runtime",
        action="store_true",
        help="sign with the hardened runtime",
    )
    parser.add_argument(
        "--entitlements",
        metavar="FILE",
        help="entitlements plist to sign with (default: generated)",
    )
    parser.add_argument(
        "--force-sign",
        action="store_true",
        help="replace an existing signature",
    )
    parser.add_argument(
        "--identifier",
        metavar="ID",
        help=f"bundle identifier (default: {BUNDLE_ID_PREFIX}<name>)",
    )
    parser.add_argument(
        "--min-os",
        metavar="VERSION",
        help=f"minimum macOS version (default: {DEFAULT_MIN_OS_VERSION})",
    )
    parser.add_argument(
        "--category",
        metavar="UTI",
        help=f"application category (default: {DEFAULT_CATEGORY})",
    )
    parser.add_argument(
        "--version",
        metavar="VERSION",
        help=f"bundle version (default: {DEFAULT_SHORT_VERSION})",
    )
    parser.add_argument(
        "--allow-jit",
        action="store_true",
        help="entitlement: allow JIT compilation (hardened runtime)",
    )
    parser.add_argument(
        "--allow-unsigned",
        action="store_true",
        help="entitlement: allow unsigned executable memory (hardened runtime)",
    )
    parser.add_argument(
        "--allow-dyld-vars",
        action="store_true",
        help="entitlement: allow DYLD environment variables (hardened runtime)",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="configuration file (default: ./.appbundler.toml)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be done without doing it",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    return parser


def options_from_args(
    args: argparse.Namespace, config: dict[str, object]
) -> BundleOptions:
    """Merge parsed arguments, config values and environment into options.

    Command line values win over config values, which win over the
    environment and the built-in defaults.

    Raises:
        ValidationError: If the bundle name or command is unusable
        MissingFileError: If the entitlements file does not exist
    """
    validate_bundle_name(args.name)
    if not args.command.strip():
        raise ValidationError("Executable or command cannot be empty")

    icon = args.icon
    if args.icon_path:
        if icon and icon != args.icon_path:
            log.warning(
                "both --icon and IconPath given, using --icon %s", icon
            )
        icon = icon or args.icon_path
    if icon is None:
        icon = get_config_value(config, "bundle", "icon")

    sign_identity = (
        args.sign
        or get_config_value(config, "sign", "identity")
        or os.getenv(ENV_SIGN_IDENTITY)
    )
    entitlements = args.entitlements or get_config_value(
        config, "sign", "entitlements"
    )
    if entitlements and not Path(entitlements).is_file():
        raise MissingFileError(f"Entitlements file not found: {entitlements}")

    return BundleOptions(
        name=args.name,
        destination=Path(args.destination),
        command=args.command,
        icon=Path(icon) if icon else None,
        identifier=args.identifier
        or get_config_value(config, "bundle", "identifier"),
        min_os_version=args.min_os
        or get_config_value(config, "bundle", "min_os", DEFAULT_MIN_OS_VERSION)
        or DEFAULT_MIN_OS_VERSION,
        category=args.category
        or get_config_value(config, "bundle", "category", DEFAULT_CATEGORY)
        or DEFAULT_CATEGORY,
        version=args.version or get_config_value(config, "bundle", "version"),
        sign_identity=sign_identity or None,
        hardened_runtime=args.hardened_runtime,
        entitlements=Path(entitlements) if entitlements else None,
        force_sign=args.force_sign,
        allow_jit=args.allow_jit,
        allow_unsigned_memory=args.allow_unsigned,
        allow_dyld_vars=args.allow_dyld_vars,
    )


def main(argv: list[str] | None = None) -> None:
    """Command line interface for appbundler."""
    try:
        args = build_parser().parse_args(argv)
        setup_logging(args.verbose, not args.no_color)

        config = load_config(Path(args.config)) if args.config else get_config()
        options = options_from_args(args, config)

        bundle = Bundle(options, dry_run=args.dry_run)
        bundle_path = bundle.create()

        if any(isinstance(e, CodesignError) for e in bundle.errors):
            sys.exit(1)
        log.info("Created: %s", bundle_path)

    except BundlerError as e:
        print(format_error(e), file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"ERROR: Unexpected error - {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
