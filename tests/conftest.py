"""Test fixtures and utilities for gdrive-backup."""

import io
import subprocess
import zipfile
from pathlib import Path
from typing import Any, Callable

import pytest

import gdrive_backup


@pytest.fixture
def rclone_mock(mocker: Any) -> Callable:
    """Mock rclone subprocess calls.

    Returns a callable that can be configured to return specific exit codes
    and outputs for different rclone subcommands. `config` subcommands are
    keyed with their action, e.g. 'config create' or 'config reconnect'.

    Usage:
        def test_something(rclone_mock):
            mock = rclone_mock({
                'listremotes': (0, 'gdrive:\n', ''),
                'lsd': (0, '', ''),
                'copyto': (1, '', 'quota exceeded'),
            })

    Advanced usage with handler:
        def test_something(rclone_mock):
            def handler(cmd):
                if cmd[1] == 'lsd':
                    return (0, '', 'empty token found')
                return (0, '', '')
            mock = rclone_mock({'_handler': handler})
    """

    def _create_mock(responses: dict[str, Any] | None = None) -> dict:
        call_log: list[list[str]] = []
        env_log: list[dict[str, str] | None] = []
        responses = responses or {}
        handler = responses.get("_handler")

        def mock_run(*args: Any, **kwargs: Any) -> Any:
            cmd = args[0] if args else kwargs.get("args", [])
            call_log.append(list(cmd))
            env_log.append(kwargs.get("env"))

            subcommand = cmd[1] if len(cmd) > 1 else "unknown"
            if subcommand == "config" and len(cmd) > 2:
                subcommand = f"config {cmd[2]}"

            if handler:
                returncode, stdout, stderr = handler(cmd)
            elif subcommand in responses:
                returncode, stdout, stderr = responses[subcommand]
            else:
                returncode, stdout, stderr = 0, "", ""

            class MockResult:
                def __init__(self, rc: int, out: str, err: str) -> None:
                    self.returncode = rc
                    self.stdout = out
                    self.stderr = err

            return MockResult(returncode, stdout, stderr)

        mocker.patch("gdrive_backup.subprocess.run", side_effect=mock_run)

        return {"calls": call_log, "envs": env_log, "responses": responses}

    return _create_mock


@pytest.fixture(autouse=True)
def fake_home(tmp_path: Path, monkeypatch: Any) -> Path:
    """Point HOME and the XDG dirs at a temp directory for every test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_STATE_HOME", str(home / ".local" / "state"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.delenv("GDRIVE_BACKUP_CONFIG_DIR", raising=False)
    monkeypatch.delenv("SSH_CLIENT", raising=False)
    monkeypatch.delenv("SSH_TTY", raising=False)
    monkeypatch.setenv("NO_COLOR", "1")
    return home


@pytest.fixture(autouse=True)
def non_interactive(monkeypatch: Any) -> None:
    """Behave as if stdin is not a terminal unless a test says otherwise."""
    monkeypatch.setattr("gdrive_backup.is_interactive", lambda: False)


@pytest.fixture
def scratch_root(tmp_path: Path, monkeypatch: Any) -> Path:
    """Redirect tempfile.mkdtemp so scratch areas land in a known directory."""
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr("tempfile.tempdir", str(root))
    return root


@pytest.fixture
def persist_dir(fake_home: Path) -> Path:
    return fake_home / ".local" / "share" / "gdrive-backup"


@pytest.fixture
def ctx(tmp_path: Path, persist_dir: Path) -> gdrive_backup.RunContext:
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    return gdrive_backup.RunContext(scratch_dir=scratch, persist_dir=persist_dir)


@pytest.fixture
def tool(tmp_path: Path) -> gdrive_backup.ToolInstallation:
    return gdrive_backup.ToolInstallation(
        binary_path=tmp_path / "bin" / "rclone",
        config_path=tmp_path / "rclone.conf",
    )


@pytest.fixture
def cached_rclone(persist_dir: Path) -> Path:
    """Install an executable fake rclone in the persistent cache."""
    binary = persist_dir / "rclone" / "rclone-v1.66.0-linux-amd64" / "rclone"
    binary.parent.mkdir(parents=True)
    binary.write_text("#!/bin/sh\nexit 0\n")
    binary.chmod(0o755)
    return binary


@pytest.fixture
def rclone_zip() -> Callable:
    """Build zip bytes shaped like an rclone release."""

    def _build(with_binary: bool = True) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("rclone-v1.66.0-linux-amd64/README.txt", "rclone")
            if with_binary:
                zf.writestr("rclone-v1.66.0-linux-amd64/rclone", "#!/bin/sh\nexit 0\n")
        return buf.getvalue()

    return _build


@pytest.fixture
def fake_download(mocker: Any) -> Callable:
    """Replace download_http with a writer of canned bytes.

    Usage:
        urls = fake_download(rclone_zip())
        # urls collects every URL requested
    """

    def _install(payload: bytes | Exception) -> list[str]:
        urls: list[str] = []

        def _download(url: str, dest: Path, timeout: float | None = None) -> None:
            urls.append(url)
            if isinstance(payload, Exception):
                raise payload
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(payload)

        mocker.patch("gdrive_backup.download_http", side_effect=_download)
        return urls

    return _install


@pytest.fixture(autouse=True)
def block_real_subprocess(monkeypatch: Any) -> None:
    """Block real rclone calls to prevent hangs on interactive auth.

    Tests that need specific rclone behaviour must use the rclone_mock
    fixture, which overrides this with a proper mock.
    """
    original_run = subprocess.run

    def guarded_run(*args: Any, **kwargs: Any) -> Any:
        cmd = args[0] if args else kwargs.get("args", [])
        if cmd and Path(str(cmd[0])).name.startswith("rclone"):

            class FakeResult:
                returncode = 0
                stdout = ""
                stderr = ""

            return FakeResult()
        return original_run(*args, **kwargs)

    monkeypatch.setattr("gdrive_backup.subprocess.run", guarded_run)


@pytest.fixture(autouse=True)
def reset_logger() -> Any:
    """Drop handlers added by setup_logging so log files get closed."""
    yield
    for handler in gdrive_backup.logger.handlers:
        handler.close()
    gdrive_backup.logger.handlers = []
