"""
Where activation output goes.

Every host gets the activation scripts written to disk. On Windows the
variables are additionally written into the current user's persistent
environment (``HKEY_CURRENT_USER\\Environment``) so new terminals pick them up
without sourcing anything. Machine-wide environment scope is never touched.

Use ``select_environment_target`` to get the right implementation for a host.
"""

import logging
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Protocol

from espkit.core.exceptions import ActivationError
from espkit.core.filesystem import atomic_write
from espkit.core.manifest import Manifest
from espkit.core.platform import HostPlatform
from espkit.env.synthesizer import (
    ActivationArtifact,
    EnvironmentSynthesizer,
    ShellDialect,
    apply_path_entries,
    environment_for,
    remove_path_entries,
)

logger = logging.getLogger(__name__)


class EnvironmentTarget(ABC):
    """Applies and removes an installation's activation environment."""

    def __init__(self, host: HostPlatform, synthesizer: Optional[EnvironmentSynthesizer] = None):
        self.host = host
        self.synthesizer = synthesizer or EnvironmentSynthesizer()

    @abstractmethod
    def apply(self, manifest: Manifest, export_dir: Path) -> List[Path]:
        """Make the environment of ``manifest`` available; returns written files."""

    @abstractmethod
    def clean(self, manifest: Manifest, export_dir: Path) -> None:
        """Undo ``apply`` for ``manifest``."""


class FileEnvironmentTarget(EnvironmentTarget):
    """Writes one activation script per shell dialect into ``export_dir``."""

    def apply(self, manifest: Manifest, export_dir: Path) -> List[Path]:
        written = []
        for artifact in self.synthesizer.synthesize(manifest, self.host):
            written.append(self._write(artifact, export_dir))
        logger.info(f"Activation scripts written to {export_dir}")
        return written

    def _write(self, artifact: ActivationArtifact, export_dir: Path) -> Path:
        path = Path(export_dir) / artifact.filename
        try:
            content = artifact.content
            if artifact.dialect == ShellDialect.CMD:
                content = content.replace("\n", "\r\n")
            # Bytes keep line endings exactly as rendered on every host
            atomic_write(path, content.encode("utf-8"))
            if artifact.dialect == ShellDialect.POSIX and not self.host.is_windows:
                path.chmod(0o755)
        except OSError as e:
            raise ActivationError(f"Failed to write {path}: {e}") from e
        logger.debug(f"Wrote {path}")
        return path

    def clean(self, manifest: Manifest, export_dir: Path) -> None:
        for dialect in ShellDialect:
            path = Path(export_dir) / dialect.filename
            if path.exists():
                path.unlink()
                logger.debug(f"Removed {path}")


class UserEnvironmentStore(Protocol):
    """Persistent, per-user environment variables."""

    def get(self, name: str) -> Optional[str]:
        ...

    def set(self, name: str, value: str) -> None:
        ...

    def delete(self, name: str) -> None:
        ...


class RegistryEnvironmentStore:
    """User environment stored under HKEY_CURRENT_USER\\Environment."""

    KEY = "Environment"

    def __init__(self):
        if sys.platform != "win32":
            raise ActivationError("The registry environment store is only available on Windows")
        import winreg

        self._winreg = winreg

    def get(self, name: str) -> Optional[str]:
        winreg = self._winreg
        with winreg.OpenKey(winreg.HKEY_CURRENT_USER, self.KEY, 0, winreg.KEY_READ) as key:
            try:
                value, _ = winreg.QueryValueEx(key, name)
            except FileNotFoundError:
                return None
        return value

    def set(self, name: str, value: str) -> None:
        winreg = self._winreg
        kind = winreg.REG_EXPAND_SZ if name.upper() == "PATH" else winreg.REG_SZ
        with winreg.OpenKey(winreg.HKEY_CURRENT_USER, self.KEY, 0, winreg.KEY_WRITE) as key:
            winreg.SetValueEx(key, name, 0, kind, value)
        self._broadcast_change()

    def delete(self, name: str) -> None:
        winreg = self._winreg
        with winreg.OpenKey(winreg.HKEY_CURRENT_USER, self.KEY, 0, winreg.KEY_WRITE) as key:
            try:
                winreg.DeleteValue(key, name)
            except FileNotFoundError:
                return
        self._broadcast_change()

    @staticmethod
    def _broadcast_change() -> None:
        """Tell running programs (Explorer) that the environment changed."""
        import ctypes

        HWND_BROADCAST = 0xFFFF
        WM_SETTINGCHANGE = 0x001A
        SMTO_ABORTIFHUNG = 0x0002
        result = ctypes.c_ulong()
        ctypes.windll.user32.SendMessageTimeoutW(
            HWND_BROADCAST,
            WM_SETTINGCHANGE,
            0,
            "Environment",
            SMTO_ABORTIFHUNG,
            5000,
            ctypes.byref(result),
        )


class WindowsEnvironmentTarget(FileEnvironmentTarget):
    """
    Activation scripts plus persistent user environment variables.

    Args:
        host: Host platform
        store: Persistent user environment (registry by default)
        modify_env: Write to the persistent store at all
    """

    def __init__(
        self,
        host: HostPlatform,
        store: Optional[UserEnvironmentStore] = None,
        modify_env: bool = True,
        synthesizer: Optional[EnvironmentSynthesizer] = None,
    ):
        super().__init__(host, synthesizer)
        self.modify_env = modify_env
        self._store = store

    @property
    def store(self) -> UserEnvironmentStore:
        if self._store is None:
            self._store = RegistryEnvironmentStore()
        return self._store

    def apply(self, manifest: Manifest, export_dir: Path) -> List[Path]:
        written = super().apply(manifest, export_dir)
        if not self.modify_env:
            return written

        env = environment_for(manifest, self.host)
        try:
            for name, value in env.variables.items():
                self.store.set(name, value)
            if env.path_entries:
                current = self.store.get("PATH") or ""
                updated = apply_path_entries(current, env.path_entries, ";")
                if updated != current:
                    self.store.set("PATH", updated)
        except OSError as e:
            raise ActivationError(f"Failed to update the user environment: {e}") from e

        logger.info("User environment updated; open a new terminal to use it")
        return written

    def clean(self, manifest: Manifest, export_dir: Path) -> None:
        super().clean(manifest, export_dir)
        if not self.modify_env:
            return

        env = environment_for(manifest, self.host)
        try:
            for name, value in env.variables.items():
                # Another installation may have set the variable since
                if self.store.get(name) == value:
                    self.store.delete(name)
            current = self.store.get("PATH")
            if current and env.path_entries:
                updated = remove_path_entries(current, env.path_entries, ";")
                if updated != current:
                    self.store.set("PATH", updated)
        except OSError as e:
            raise ActivationError(f"Failed to clean the user environment: {e}") from e


def select_environment_target(
    host: HostPlatform,
    modify_env: bool = True,
    store: Optional[UserEnvironmentStore] = None,
) -> EnvironmentTarget:
    """Pick the environment target implementation for ``host``."""
    if host.is_windows:
        return WindowsEnvironmentTarget(host, store=store, modify_env=modify_env)
    return FileEnvironmentTarget(host)
