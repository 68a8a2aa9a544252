"""
Pytest configuration and shared fixtures for espkit tests.
"""

import io
import subprocess
import tarfile
import zipfile
from pathlib import Path

import pytest

from espkit.core.config import EspkitConfig, RetrySettings
from espkit.core.directory import InstallLayout
from espkit.core.platform import HostPlatform, clear_host_cache
from espkit.core.retry import RetryPolicy


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep tests away from the real ~/.espkit, ~/.rustup and GitHub token."""
    monkeypatch.setenv("ESPKIT_HOME", str(tmp_path / "espkit-home"))
    monkeypatch.setenv("RUSTUP_HOME", str(tmp_path / "rustup"))
    for var in ("GITHUB_TOKEN", "ESPKIT_PROXY", "ESPKIT_CONFIG"):
        monkeypatch.delenv(var, raising=False)
    clear_host_cache()
    yield
    clear_host_cache()


@pytest.fixture
def layout(tmp_path) -> InstallLayout:
    """Install layout rooted in a temporary directory."""
    layout = InstallLayout(home=tmp_path / "home", rustup_home=tmp_path / "rustup")
    layout.ensure()
    return layout


@pytest.fixture
def linux_host() -> HostPlatform:
    return HostPlatform("x86_64-unknown-linux-gnu")


@pytest.fixture
def windows_host() -> HostPlatform:
    return HostPlatform("x86_64-pc-windows-msvc")


@pytest.fixture
def sleeps():
    """Delays requested by a RetryPolicy, recorded instead of slept."""
    return []


@pytest.fixture
def retry_policy(sleeps) -> RetryPolicy:
    """Fast retry policy that records its delays."""
    return RetryPolicy(max_attempts=3, base_delay=1.0, jitter=0, sleep=sleeps.append)


@pytest.fixture
def config(layout) -> EspkitConfig:
    """Configuration pointing at the temporary layout, with instant retries."""
    return EspkitConfig(
        home=layout.home,
        rustup_home=layout.rustup_home,
        max_workers=2,
        retry=RetrySettings(max_attempts=2, base_delay=0, max_delay=0, jitter=0),
    )


@pytest.fixture
def make_archive(tmp_path):
    """
    Build tar.gz, tar.xz or zip archives from a ``{relative path: content}`` map.

    Paths ending in ``/`` become directories; a ``(content, mode)`` tuple sets
    the file mode.
    """

    def _make(name: str, files: dict) -> Path:
        path = tmp_path / "archives" / name
        path.parent.mkdir(parents=True, exist_ok=True)

        entries = []
        for member, value in files.items():
            content, mode = value if isinstance(value, tuple) else (value, 0o644)
            if isinstance(content, str):
                content = content.encode("utf-8")
            entries.append((member, content, mode))

        if name.endswith(".zip"):
            with zipfile.ZipFile(path, "w") as zf:
                for member, content, mode in entries:
                    info = zipfile.ZipInfo(member)
                    kind = 0o40755 if member.endswith("/") else 0o100000 | mode
                    info.external_attr = kind << 16
                    zf.writestr(info, b"" if member.endswith("/") else content)
        else:
            mode_flag = "w:gz" if name.endswith(".tar.gz") else "w:xz"
            with tarfile.open(path, mode_flag) as tar:
                for member, content, mode in entries:
                    info = tarfile.TarInfo(member.rstrip("/"))
                    if member.endswith("/"):
                        info.type = tarfile.DIRTYPE
                        info.mode = 0o755
                        tar.addfile(info)
                    else:
                        info.size = len(content)
                        info.mode = mode
                        tar.addfile(info, io.BytesIO(content))
        return path

    return _make


class FakeRustup:
    """
    subprocess.run stand-in that keeps rustup state in memory.

    ``channels`` maps a channel to its installed components. ``missing``
    makes every call fail like an absent executable; ``fail_on`` makes the
    matching subcommand (e.g. ``"target"``) exit with code 1.
    """

    def __init__(self, missing=False, fail_on=None):
        self.channels = {}
        self.commands = []
        self.missing = missing
        self.fail_on = fail_on

    def __call__(self, command, **kwargs):
        if self.missing:
            raise FileNotFoundError(2, "No such file or directory", command[0])
        self.commands.append(list(command))
        args = command[1:]
        if args == ["--version"]:
            return subprocess.CompletedProcess(command, 0, "rustup 1.28.1 (2025-03-05)\n", "")
        if self.fail_on and args[0] == self.fail_on:
            return subprocess.CompletedProcess(command, 1, "", f"error: {self.fail_on} failed")

        channel = args[args.index("--toolchain") + 1] if "--toolchain" in args else args[2]
        if args[:2] == ["toolchain", "install"]:
            self.channels.setdefault(channel, set())
        elif args[:2] == ["component", "list"]:
            if channel not in self.channels:
                return subprocess.CompletedProcess(
                    command, 1, "", f"error: toolchain '{channel}' is not installed"
                )
            return subprocess.CompletedProcess(
                command, 0, "".join(f"{c}\n" for c in sorted(self.channels[channel])), ""
            )
        elif args[:2] == ["component", "add"]:
            self.channels[channel].add(args[2])
        elif args[:2] == ["target", "add"]:
            self.channels[channel].update(f"rust-std-{t}" for t in args[4:])
        elif args[:2] == ["target", "remove"]:
            self.channels[channel].difference_update(f"rust-std-{t}" for t in args[4:])
        return subprocess.CompletedProcess(command, 0, "", "")


@pytest.fixture
def rustup_runner():
    """In-memory rustup."""
    return FakeRustup()
