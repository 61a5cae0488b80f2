"""
GDrive Backup - upload a file or directory to Google Drive via rclone

Copyright 2026 UAA Software

Permission is hereby granted, free of charge, to any person obtaining a copy of
this software and associated documentation files (the “Software”), to deal in
the Software without restriction, including without limitation the rights to
use, copy, modify, merge, publish, distribute, sublicense, and/or sell copies of
the Software, and to permit persons to whom the Software is furnished to do so,
subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS
FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR
COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER
IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

import argparse
import contextlib
import enum
import getpass
import glob
import logging
import os
import platform
import shutil
import socket
import stat
import subprocess
import sys
import tarfile
import tempfile
import tomllib
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import zstandard
from filelock import FileLock as _FileLock


# Module-level logger
logger = logging.getLogger("gdrive_backup")


APP_NAME = "gdrive-backup"
DEFAULT_REMOTE_DIR = "transfer"
DEFAULT_REMOTE_NAME = "gdrive"
ARCHIVE_FORMATS = ("tar.gz", "tar.zst")

RCLONE_DOWNLOAD_URL = "https://downloads.rclone.org/rclone-current-linux-{arch}.zip"

# uname -m -> rclone release naming
RCLONE_ARCHITECTURES = {
    "x86_64": "amd64",
    "aarch64": "arm64",
    "armv7l": "arm-v7",
}

# rclone's local OAuth redirect listener
AUTH_FORWARD_PORT = 53682


# =============================================================================
# Exceptions
# =============================================================================


class BackupError(Exception):
    """Fatal error that aborts the run with exit code 1."""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.hint = hint


class UsageError(BackupError):
    """Conflicting or malformed command line options."""


class ValidationError(BackupError):
    """Input path missing, invalid or ambiguous."""


class ConfigError(BackupError):
    """Error in configuration."""


class ArchiveError(BackupError):
    """Directory could not be archived."""


class ProvisioningError(BackupError):
    """rclone could not be located, downloaded or extracted."""


class AuthorizationError(BackupError):
    """rclone remote could not be created or reconnected."""


class TransferError(BackupError):
    """rclone copy operation failed."""


class RcloneError(Exception):
    """Error from rclone subprocess."""

    def __init__(self, message: str, returncode: int, stdout: str, stderr: str):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


# =============================================================================
# Output Helpers
# =============================================================================


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    BOLD_YELLOW = "\033[1;33m"


def use_color() -> bool:
    """Check if color output should be used.

    Colors are disabled if:
    - NO_COLOR environment variable is set
    - CI environment variable is set
    - stdout is not a TTY

    Returns:
        True if color should be used
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("CI"):
        return False
    if not sys.stdout.isatty():
        return False
    return True


def colorize(text: str, color: str) -> str:
    """Wrap text in ANSI color codes if appropriate.

    Args:
        text: Text to colorize
        color: Color name (e.g., 'RED', 'BOLD_YELLOW')

    Returns:
        Colorized text or plain text
    """
    if not use_color():
        return text
    color_code = getattr(Colors, color.upper(), "")
    if color_code:
        return f"{color_code}{text}{Colors.RESET}"
    return text


def format_bytes(size: int) -> str:
    """Format byte size as human-readable string."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024:
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}PB"


def info(message: str) -> None:
    """Print a progress line and mirror it to the log."""
    print(f":: {message}")
    logger.info(message)


def die(message: str, hint: str | None = None, exit_code: int = 1) -> int:
    """Report a fatal error on stderr and in the log.

    Args:
        message: Error message to display
        hint: Optional remediation hint
        exit_code: Exit code to return

    Returns:
        exit_code, for main() to return to the shell
    """
    error_msg = f"Error: {message}"
    if use_color():
        error_msg = f"{Colors.RED}{error_msg}{Colors.RESET}"
    print(error_msg, file=sys.stderr)

    if hint:
        hint_msg = f"Hint: {hint}"
        if use_color():
            hint_msg = f"{Colors.YELLOW}{hint_msg}{Colors.RESET}"
        print(hint_msg, file=sys.stderr)

    logger.error(f"Exited with code {exit_code}: {message}")
    if hint:
        logger.error(f"Hint: {hint}")

    return exit_code


# =============================================================================
# Logging
# =============================================================================


def get_log_dir() -> Path:
    """Return the directory holding gdrive-backup.log."""
    base = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))
    return base / APP_NAME


def setup_logging(verbosity: int = 0, log_file: bool = True) -> None:
    """Set up logging with console and file handlers.

    Args:
        verbosity: 0=INFO, 1=DEBUG, 2=DEBUG with logger names
        log_file: Whether to write to log file
    """
    if verbosity >= 2:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    elif verbosity >= 1:
        level = logging.DEBUG
        fmt = "%(asctime)s - %(levelname)s - %(message)s"
    else:
        level = logging.INFO
        fmt = "%(asctime)s - %(levelname)s - %(message)s"

    # Clear existing handlers
    logger.handlers = []
    logger.setLevel(level)

    # Progress lines already go to stdout, so the console only shows warnings
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING if verbosity == 0 else level)
    console_handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(console_handler)

    if log_file:
        log_dir = get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / f"{APP_NAME}.log"

        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(file_handler)

        logger.debug(f"Logging initialized (verbosity={verbosity})")


# =============================================================================
# Configuration
# =============================================================================


def get_user_config_dir() -> Path:
    """Return ~/.config/gdrive-backup/, honoring overrides."""
    env_override = os.environ.get("GDRIVE_BACKUP_CONFIG_DIR")
    if env_override:
        return Path(env_override)
    base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return base / APP_NAME


def get_persist_dir() -> Path:
    """Return the persistent cache for rclone and its credentials."""
    return Path.home() / ".local" / "share" / APP_NAME


def load_user_config(config_dir: Path | None = None) -> dict[str, Any]:
    """Load defaults from config.toml in the user config dir.

    Recognised keys are remote_dir, remote_name, keep_rclone and
    archive_format; anything else is ignored.

    Raises:
        ConfigError: If the file is not valid TOML or a value has the wrong type
    """
    config_file = (config_dir or get_user_config_dir()) / "config.toml"
    if not config_file.exists():
        return {}

    try:
        with config_file.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid config file {config_file}: {e}") from e

    expected = {
        "remote_dir": str,
        "remote_name": str,
        "keep_rclone": bool,
        "archive_format": str,
    }
    config = {}
    for key, kind in expected.items():
        if key not in data:
            continue
        if not isinstance(data[key], kind):
            raise ConfigError(
                f"'{key}' in {config_file} must be a {kind.__name__}"
            )
        config[key] = data[key]

    if config.get("archive_format", "tar.gz") not in ARCHIVE_FORMATS:
        raise ConfigError(
            f"Unsupported archive_format '{config['archive_format']}' in {config_file}",
            hint=f"Use one of: {', '.join(ARCHIVE_FORMATS)}",
        )

    logger.debug(f"Loaded config from {config_file}: {sorted(config)}")
    return config


# =============================================================================
# Run State
# =============================================================================


class SourceKind(enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class UploadRequest:
    """What to upload and where."""

    source_path: Path
    source_kind: SourceKind
    remote_folder: str
    remote_name: str


@dataclass
class RunContext:
    """Per-run state threaded through every step."""

    scratch_dir: Path
    persist_dir: Path
    keep_rclone: bool = False
    remote_session: bool = False


@dataclass
class ToolInstallation:
    binary_path: Path
    config_path: Path | None = None
    persistent: bool = False


def is_interactive() -> bool:
    """Check whether stdin is attached to a terminal."""
    return sys.stdin.isatty()


def is_remote_session(environ: dict[str, str] | None = None) -> bool:
    """Check for SSH session markers."""
    env = os.environ if environ is None else environ
    return bool(env.get("SSH_CLIENT") or env.get("SSH_TTY"))


# =============================================================================
# Input Resolution
# =============================================================================


def _enable_path_completion() -> None:
    """Bind Tab to filesystem path completion for input()."""
    try:
        import readline
    except ImportError:
        return

    def complete(text: str, state: int) -> str | None:
        matches = []
        for match in sorted(glob.glob(os.path.expanduser(text) + "*")):
            matches.append(match + os.sep if os.path.isdir(match) else match)
        return matches[state] if state < len(matches) else None

    readline.set_completer_delims(" \t\n")
    readline.set_completer(complete)
    if "libedit" in (readline.__doc__ or ""):
        readline.parse_and_bind("bind ^I rl_complete")
    else:
        readline.parse_and_bind("tab: complete")


def _read_line(prompt: str, complete_paths: bool = False) -> str:
    if complete_paths:
        _enable_path_completion()
    try:
        return input(prompt).strip()
    except EOFError:
        return ""


def resolve_source(
    file_path: str | None, dir_path: str | None, interactive: bool
) -> tuple[Path, SourceKind]:
    """Pick the upload source and return its canonical path and kind.

    Raises:
        UsageError: If both a file and a directory were given
        ValidationError: If nothing usable was given or the path does not exist
    """
    if file_path and dir_path:
        raise UsageError("Provide either --file or --dir, not both.")

    if not file_path and not dir_path:
        if not interactive:
            raise ValidationError(
                "No file or directory given.",
                hint="Pass --file or --dir when not running in a terminal",
            )
        user_input = _read_line(
            "Path to a file or directory to upload (Tab for autocomplete): ",
            complete_paths=True,
        )
        if not user_input:
            raise ValidationError("Nothing provided.")
        probe = Path(user_input).expanduser()
        if probe.is_dir():
            dir_path = user_input
        elif probe.is_file():
            file_path = user_input
        else:
            raise ValidationError(f"'{user_input}' is not a valid file or directory.")

    if dir_path:
        path = Path(dir_path).expanduser()
        if not path.is_dir():
            raise ValidationError(f"Directory not found: {dir_path}")
        return path.resolve(), SourceKind.DIRECTORY

    path = Path(file_path).expanduser()
    if not path.is_file():
        raise ValidationError(f"File not found: {file_path}")
    return path.resolve(), SourceKind.FILE


def resolve_remote_folder(remote_dir: str | None, interactive: bool) -> str:
    """Return the destination folder, prompting on a terminal if unset."""
    if remote_dir:
        return remote_dir
    if not interactive:
        return DEFAULT_REMOTE_DIR
    answer = _read_line(f"Google Drive destination folder [{DEFAULT_REMOTE_DIR}]: ")
    return answer or DEFAULT_REMOTE_DIR


def resolve_request(
    file_path: str | None,
    dir_path: str | None,
    remote_dir: str | None = None,
    remote_name: str = DEFAULT_REMOTE_NAME,
    interactive: bool = False,
) -> UploadRequest:
    """Build a validated UploadRequest from flags and prompts."""
    source_path, source_kind = resolve_source(file_path, dir_path, interactive)
    remote_folder = resolve_remote_folder(remote_dir, interactive)
    logger.debug(
        f"Resolved {source_kind.value} {source_path} -> {remote_name}:{remote_folder}"
    )
    return UploadRequest(
        source_path=source_path,
        source_kind=source_kind,
        remote_folder=remote_folder,
        remote_name=remote_name,
    )


# =============================================================================
# Archiving
# =============================================================================


def archive_directory(
    source_dir: Path, dest_dir: Path, archive_format: str = "tar.gz"
) -> Path:
    """Compress source_dir into dest_dir/<name>.<archive_format>.

    Members are rooted at the directory's base name so extraction
    recreates the folder.

    Raises:
        ArchiveError: If the directory cannot be read or the archive written
    """
    if archive_format not in ARCHIVE_FORMATS:
        raise ArchiveError(f"Unsupported archive format: {archive_format}")

    name = source_dir.name
    archive_path = dest_dir / f"{name}.{archive_format}"
    info(f"Archiving directory -> {archive_path}")

    try:
        if archive_format == "tar.zst":
            cctx = zstandard.ZstdCompressor(level=3)
            with archive_path.open("wb") as raw, cctx.stream_writer(raw) as writer:
                with tarfile.open(fileobj=writer, mode="w|") as tar:
                    tar.add(str(source_dir), arcname=name)
        else:
            with tarfile.open(archive_path, "w:gz") as tar:
                tar.add(str(source_dir), arcname=name)
    except (OSError, tarfile.TarError) as e:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to archive {source_dir}: {e}") from e

    logger.debug(f"Archive size: {format_bytes(archive_path.stat().st_size)}")
    return archive_path


# =============================================================================
# Rclone Provisioning
# =============================================================================


def with_file_lock(path: Path, timeout: float = -1):
    """Context manager for cross-platform file locking.

    Args:
        path: Path to lock file
        timeout: Seconds to wait for lock (-1 waits forever)

    Returns:
        Context manager that acquires/releases lock
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    return _FileLock(path, timeout=timeout)


def download_http(url: str, dest: Path, timeout: float | None = None) -> None:
    """Download URL to dest atomically."""
    import urllib.request

    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=dest.parent)
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:
            while chunk := resp.read(65536):
                os.write(fd, chunk)
        os.close(fd)
        os.replace(temp_path, dest)
    except Exception:
        try:
            os.close(fd)
        except OSError:
            pass
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def rclone_arch(machine: str | None = None) -> str:
    """Map a machine name to rclone's release naming.

    Raises:
        ProvisioningError: For anything but x86_64, aarch64 and armv7l
    """
    machine = machine or platform.machine()
    try:
        return RCLONE_ARCHITECTURES[machine]
    except KeyError:
        raise ProvisioningError(
            f"Unsupported architecture: {machine}",
            hint="Install rclone manually from https://rclone.org/downloads/",
        ) from None


def find_rclone_binary(search_dir: Path) -> Path | None:
    """Return the first regular file named rclone under search_dir."""
    if not search_dir.is_dir():
        return None
    for candidate in sorted(search_dir.rglob("rclone")):
        if candidate.is_file():
            return candidate
    return None


def find_cached_rclone(persist_dir: Path) -> Path | None:
    """Return a usable rclone from the persistent cache, if any."""
    binary = find_rclone_binary(persist_dir / "rclone")
    if binary and os.access(binary, os.X_OK):
        return binary
    return None


def ensure_executable(path: Path) -> None:
    if os.access(path, os.X_OK):
        return
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def download_rclone(dest_dir: Path, scratch_dir: Path, arch: str) -> Path:
    """Download and unpack the rclone release for arch into dest_dir.

    The zip is staged in scratch_dir and removed once extracted.

    Returns:
        Path to the extracted, executable rclone binary

    Raises:
        ProvisioningError: On network, extraction or layout failures
    """
    url = RCLONE_DOWNLOAD_URL.format(arch=arch)
    zip_path = scratch_dir / "rclone.zip"

    info(f"Fetching {url}")
    try:
        download_http(url, zip_path)
    except OSError as e:
        raise ProvisioningError(
            f"Failed to download {url}: {e}",
            hint="Check your network connection",
        ) from e

    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(zip_path) as archive:
            archive.extractall(dest_dir)
    except (zipfile.BadZipFile, OSError) as e:
        raise ProvisioningError(f"Failed to extract {zip_path.name}: {e}") from e
    finally:
        zip_path.unlink(missing_ok=True)

    binary = find_rclone_binary(dest_dir)
    if binary is None:
        raise ProvisioningError(f"rclone binary not found in {url}")

    ensure_executable(binary)
    return binary


def provision_rclone(ctx: RunContext, machine: str | None = None) -> ToolInstallation:
    """Locate or download rclone and pick the config file it will use."""
    binary = find_cached_rclone(ctx.persist_dir)

    if binary:
        info(f"Using cached rclone -> {binary}")
    elif ctx.keep_rclone:
        arch = rclone_arch(machine)
        info(f"Downloading rclone (will be kept in {ctx.persist_dir})...")
        with with_file_lock(ctx.persist_dir / "install.lock"):
            # Another run may have finished the install while we waited
            binary = find_cached_rclone(ctx.persist_dir) or download_rclone(
                ctx.persist_dir / "rclone", ctx.scratch_dir, arch
            )
        info(f"rclone installed -> {binary}")
    else:
        arch = rclone_arch(machine)
        info("Downloading rclone (temporary)...")
        binary = download_rclone(ctx.scratch_dir / "rclone", ctx.scratch_dir, arch)
        info(f"rclone installed -> {binary}")

    return ToolInstallation(
        binary_path=binary,
        config_path=select_config_path(binary, ctx),
        persistent=binary.is_relative_to(ctx.persist_dir),
    )


# =============================================================================
# Rclone
# =============================================================================


def run_rclone(
    tool: ToolInstallation,
    args: list[str],
    *,
    interactive: bool = False,
    check: bool = True,
) -> tuple[int, str, str]:
    """Run rclone subprocess and return (returncode, stdout, stderr).

    Args:
        tool: rclone binary and config file to use
        args: Command line arguments for rclone (not including the binary)
        interactive: Attach rclone to the terminal instead of capturing output
        check: Raise RcloneError on a non-zero exit

    Returns:
        Tuple of (returncode, stdout, stderr); empty strings when interactive

    Raises:
        RcloneError: If check is set and returncode is non-zero
    """
    cmd = [str(tool.binary_path)] + args
    run_env = os.environ.copy()
    if tool.config_path:
        cmd += ["--config", str(tool.config_path)]
        run_env["RCLONE_CONFIG"] = str(tool.config_path)

    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        if interactive:
            result = subprocess.run(cmd, env=run_env)
        else:
            result = subprocess.run(cmd, capture_output=True, text=True, env=run_env)
    except FileNotFoundError as exc:
        raise RcloneError(
            f"rclone not found at {tool.binary_path}",
            127,
            "",
            str(exc),
        ) from exc
    except OSError as exc:
        # Exec format error, permission denied, ...
        raise RcloneError(
            f"Cannot run rclone at {tool.binary_path}: {exc.strerror or exc}",
            126,
            "",
            str(exc),
        ) from exc

    stdout = result.stdout or ""
    stderr = result.stderr or ""
    if check and result.returncode != 0:
        raise RcloneError(
            f"rclone failed with code {result.returncode}: {stderr}",
            result.returncode,
            stdout,
            stderr,
        )

    return result.returncode, stdout, stderr


# =============================================================================
# Remote Authorization
# =============================================================================


class TokenStatus(enum.Enum):
    VALID = "valid"
    EMPTY_TOKEN = "empty_token"
    OAUTH_CLIENT_FAILURE = "oauth_client_failure"
    INVALID_GRANT = "invalid_grant"


# Checked in order; the first substring found in probe output wins
TOKEN_FAILURE_SIGNATURES = (
    ("invalid_grant", TokenStatus.INVALID_GRANT),
    ("failed to create oauth client", TokenStatus.OAUTH_CLIENT_FAILURE),
    ("empty token found", TokenStatus.EMPTY_TOKEN),
)

# Extra flags for each successive `config reconnect`
RECONNECT_FLAGS = (
    [],
    [],
    ["--rclone-no-auto-config"],
)


def classify_probe_output(output: str) -> TokenStatus:
    """Classify `rclone lsd` output into a TokenStatus."""
    for signature, status in TOKEN_FAILURE_SIGNATURES:
        if signature in output:
            return status
    return TokenStatus.VALID


def select_config_path(binary: Path, ctx: RunContext) -> Path:
    """Pick rclone.conf: persistent alongside a kept rclone, else scratch."""
    if ctx.keep_rclone or binary.is_relative_to(ctx.persist_dir):
        ctx.persist_dir.mkdir(parents=True, exist_ok=True)
        return ctx.persist_dir / "rclone.conf"
    return ctx.scratch_dir / "rclone.conf"


def remote_exists(tool: ToolInstallation, remote_name: str) -> bool:
    _, stdout, _ = run_rclone(tool, ["listremotes"], check=False)
    return f"{remote_name}:" in (line.strip() for line in stdout.splitlines())


def probe_remote(tool: ToolInstallation, remote_name: str) -> TokenStatus:
    """List the remote root and classify the result."""
    _, stdout, stderr = run_rclone(tool, ["lsd", f"{remote_name}:"], check=False)
    status = classify_probe_output(stdout + stderr)
    logger.debug(f"Probe of '{remote_name}:' -> {status.value}")
    return status


def print_remote_auth_hint(title: str, footer: str) -> None:
    """Print the SSH port-forwarding command for a remote OAuth flow."""
    user = getpass.getuser()
    host = socket.getfqdn()
    rule = "-" * 71
    lines = [
        rule,
        title,
        "To authorize, run this command in a NEW terminal on your LOCAL machine:",
        "",
        f"    ssh {user}@{host} -N -L {AUTH_FORWARD_PORT}:127.0.0.1:{AUTH_FORWARD_PORT}",
        "",
        footer,
        rule,
    ]
    print(colorize("\n".join(lines), "BOLD_YELLOW"))


def create_remote(tool: ToolInstallation, ctx: RunContext, remote_name: str) -> None:
    """Run rclone's interactive Google Drive remote creation."""
    info(f"No remote '{remote_name}' found - starting configuration.")
    if ctx.remote_session:
        print_remote_auth_hint(
            "REMOTE AUTHENTICATION HINT",
            "Then continue here. When rclone shows a 127.0.0.1 link, it will work.",
        )

    try:
        run_rclone(tool, ["config", "create", remote_name, "drive"], interactive=True)
    except RcloneError as e:
        raise AuthorizationError(
            f"rclone config create failed for '{remote_name}' "
            f"(exit code {e.returncode})",
            hint="Re-run and complete the browser authorization",
        ) from e


def reconnect_remote(
    tool: ToolInstallation, remote_name: str, extra_flags: list[str]
) -> None:
    try:
        run_rclone(
            tool,
            ["config", "reconnect", f"{remote_name}:"] + extra_flags,
            interactive=True,
        )
    except RcloneError as e:
        raise AuthorizationError(
            f"rclone config reconnect failed for '{remote_name}' "
            f"(exit code {e.returncode})"
        ) from e


def _announce_reconnect(ctx: RunContext, remote_name: str, attempt: int) -> None:
    info(f"Token for '{remote_name}' is missing or invalid.")
    if attempt == 1:
        if ctx.remote_session:
            print_remote_auth_hint(
                "REMOTE AUTHENTICATION REQUIRED",
                "After running it, continue here and choose 'y' for 'Use auto config?'",
            )
        info("Starting re-authorization...")
    elif attempt == 2:
        info(
            "Follow the prompts below. When asked 'Use auto config?', "
            "select 'n' (No) for remote/headless setup."
        )
    else:
        info("Re-authorizing without auto config...")


def ensure_remote_authorized(
    tool: ToolInstallation, ctx: RunContext, remote_name: str
) -> bool:
    """Make sure remote_name exists and holds a working token.

    Creates the remote when missing, then probes it and runs up to
    len(RECONNECT_FLAGS) reconnects while the probe reports a token failure.

    Returns:
        True if a probe confirmed the token, False if the reconnects ran out
        unconfirmed. The upload still proceeds in that case and reports the
        real error itself.
    """
    if not remote_exists(tool, remote_name):
        create_remote(tool, ctx, remote_name)

    for attempt, extra_flags in enumerate(RECONNECT_FLAGS, start=1):
        if probe_remote(tool, remote_name) is TokenStatus.VALID:
            return True
        _announce_reconnect(ctx, remote_name, attempt)
        reconnect_remote(tool, remote_name, extra_flags)

    logger.warning(
        f"Token for '{remote_name}' unverified after {len(RECONNECT_FLAGS)} "
        "reconnect attempts; continuing"
    )
    return False


# =============================================================================
# Upload
# =============================================================================


def upload(tool: ToolInstallation, payload: Path, request: UploadRequest) -> str:
    """Copy payload to <remote>:<folder>/<name> and return that location.

    Raises:
        TransferError: If rclone copyto exits non-zero
    """
    name = payload.name
    destination = f"{request.remote_name}:{request.remote_folder}/{name}"

    info(f"Uploading '{name}' -> {request.remote_name}:{request.remote_folder}/")
    try:
        run_rclone(
            tool, ["copyto", str(payload), destination, "--progress"], interactive=True
        )
    except RcloneError as e:
        raise TransferError(
            f"Upload of '{name}' failed (rclone exit code {e.returncode})"
        ) from e

    info(f"Done! File available at {destination}")
    return destination


# =============================================================================
# Cleanup
# =============================================================================


@contextlib.contextmanager
def scratch_area(cleanup: bool = True, parent: Path | None = None) -> Iterator[Path]:
    """Create a per-run scratch directory, removing it on exit unless told not to."""
    path = Path(tempfile.mkdtemp(prefix=f"{APP_NAME}-", dir=parent))
    logger.debug(f"Scratch area: {path}")
    try:
        yield path
    finally:
        if cleanup:
            info("Cleaning up temporary files...")
            shutil.rmtree(path, ignore_errors=True)
        else:
            info(f"Keeping temporary files in {path}")


def remove_persistent_rclone(persist_dir: Path) -> int:
    """Delete the kept rclone install and credentials."""
    if persist_dir.exists():
        shutil.rmtree(persist_dir)
        info(f"Removed rclone from {persist_dir}")
    else:
        info(f"Nothing to remove - {persist_dir} does not exist.")
    return 0


# =============================================================================
# CLI Entry Point
# =============================================================================


def execute(
    request: UploadRequest, ctx: RunContext, archive_format: str = "tar.gz"
) -> str:
    """Archive if needed, provision rclone, authorize and upload."""
    if request.source_kind is SourceKind.DIRECTORY:
        payload = archive_directory(
            request.source_path, ctx.scratch_dir, archive_format
        )
    else:
        payload = request.source_path

    tool = provision_rclone(ctx)
    ensure_remote_authorized(tool, ctx, request.remote_name)
    return upload(tool, payload, request)


def run(args: argparse.Namespace, config: dict[str, Any], persist_dir: Path) -> int:
    interactive = is_interactive()
    request = resolve_request(
        args.file,
        args.dir,
        remote_dir=args.remote_dir or config.get("remote_dir"),
        remote_name=args.remote_name or config.get("remote_name", DEFAULT_REMOTE_NAME),
        interactive=interactive,
    )
    archive_format = args.archive_format or config.get("archive_format", "tar.gz")
    cleanup = not args.no_cleanup

    with scratch_area(cleanup=cleanup) as scratch_dir:
        ctx = RunContext(
            scratch_dir=scratch_dir,
            persist_dir=persist_dir,
            keep_rclone=args.keep_rclone or config.get("keep_rclone", False),
            remote_session=is_remote_session(),
        )
        execute(request, ctx, archive_format)

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Upload a file or directory archive to Google Drive via rclone.",
        epilog=(
            "If neither --file nor --dir is provided, "
            "you will be prompted interactively."
        ),
        exit_on_error=False,
    )

    # --file and --dir together are rejected by resolve_source
    parser.add_argument("-f", "--file", help="File to upload")
    parser.add_argument("-d", "--dir", help="Directory to archive and upload")

    parser.add_argument(
        "-r",
        "--remote-dir",
        help=f"Google Drive destination folder (default: {DEFAULT_REMOTE_DIR})",
    )
    parser.add_argument(
        "-n",
        "--remote-name",
        help=f"rclone remote name (default: {DEFAULT_REMOTE_NAME})",
    )
    parser.add_argument(
        "--keep-rclone",
        action="store_true",
        help=f"Keep rclone for future runs (~/.local/share/{APP_NAME})",
    )
    parser.add_argument(
        "--remove-rclone",
        action="store_true",
        help="Remove previously kept rclone and exit",
    )
    parser.add_argument(
        "--no-cleanup",
        action="store_true",
        help="Keep temporary files after upload",
    )
    parser.add_argument(
        "--archive-format",
        choices=ARCHIVE_FORMATS,
        help="Compression used when uploading a directory (default: tar.gz)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use -v for DEBUG, -vv for DEBUG with logger names)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse exits on --help (0) and on some usage errors (2)
        return 0 if e.code in (0, None) else 1
    except argparse.ArgumentError as e:
        return die(str(e), hint=f"Run '{APP_NAME} --help' for usage")

    setup_logging(verbosity=args.verbose, log_file=True)

    persist_dir = get_persist_dir()

    try:
        if args.remove_rclone:
            return remove_persistent_rclone(persist_dir)
        config = load_user_config()
        return run(args, config, persist_dir)
    except BackupError as e:
        return die(str(e), hint=e.hint)
    except RcloneError as e:
        return die(str(e))
    except OSError as e:
        return die(str(e))
    except KeyboardInterrupt:
        return die("Interrupted")


if __name__ == "__main__":
    sys.exit(main())
