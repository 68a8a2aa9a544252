"""
RISC-V target support through rustup.

The RISC-V chips build with the upstream Rust compiler, so nothing is
downloaded from a release index for them. Instead rustup is asked to
install a channel (``stable`` unless configured otherwise) and to add the
standard library sources and the rustc targets the requested chips need.

rustup itself is not installed by espkit; a missing rustup is reported with
instructions rather than worked around.
"""

import logging
import os
import subprocess
import threading
from typing import Callable, Iterable, List, Optional, Set

from espkit.core.directory import InstallLayout
from espkit.core.exceptions import ComponentInstallError, OperationCancelled
from espkit.toolchain.installer import InstallOutcome, InstallResult
from espkit.toolchain.planner import InstallOperation

logger = logging.getLogger(__name__)

RUSTUP_INSTALL_URL = "https://rustup.rs"


class RustupInstaller:
    """
    Adds and removes RISC-V targets on a rustup channel.

    Args:
        layout: Directory layout; rustup runs against its rustup home
        rustup: rustup executable
        runner: subprocess.run compatible callable (replaceable in tests)
    """

    def __init__(
        self,
        layout: InstallLayout,
        rustup: str = "rustup",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.layout = layout
        self.rustup = rustup
        self.runner = runner

    def check(self) -> str:
        """
        Make sure rustup can be run.

        Returns:
            rustup's version line

        Raises:
            ComponentInstallError: If rustup is missing or broken
        """
        try:
            result = self._execute([self.rustup, "--version"])
        except OSError as e:
            raise ComponentInstallError(
                f"rustup was not found ({e}). "
                f"Install it from {RUSTUP_INSTALL_URL} and run espkit again."
            ) from e
        if result.returncode != 0:
            raise ComponentInstallError(
                f"rustup --version exited with code {result.returncode}. "
                f"Reinstall rustup from {RUSTUP_INSTALL_URL}."
            )
        version = (result.stdout or "").strip()
        logger.debug(f"Found {version}")
        return version

    def install_commands(self, channel: str, targets: Iterable[str]) -> List[List[str]]:
        """rustup commands preparing ``channel`` for ``targets``."""
        return [
            [self.rustup, "toolchain", "install", channel, "--profile", "minimal"],
            [self.rustup, "component", "add", "rust-src", "--toolchain", channel],
            [self.rustup, "target", "add", "--toolchain", channel, *targets],
        ]

    def remove_command(self, channel: str, targets: Iterable[str]) -> List[str]:
        return [self.rustup, "target", "remove", "--toolchain", channel, *targets]

    def installed_components(self, channel: str) -> Set[str]:
        """
        Components installed on ``channel``; empty if the channel is missing.

        rustc targets show up as ``rust-std-<target>``.
        """
        try:
            result = self._execute(
                [self.rustup, "component", "list", "--installed", "--toolchain", channel]
            )
        except OSError:
            return set()
        if result.returncode != 0:
            return set()
        return {line.strip() for line in (result.stdout or "").splitlines() if line.strip()}

    def install(
        self, operation: InstallOperation, cancel_event: Optional[threading.Event] = None
    ) -> InstallResult:
        """
        Install the channel, rust-src and the operation's rustc targets.

        Nothing is run when the channel already has all of them.

        Raises:
            ComponentInstallError: If rustup is missing or a command fails
            OperationCancelled: If ``cancel_event`` is set between commands
        """
        self.check()
        channel = operation.version
        needed = {"rust-src"} | {f"rust-std-{t}" for t in operation.targets}
        if needed <= self.installed_components(channel):
            logger.info(f"The {channel} Rust channel already has {', '.join(operation.targets)}")
            return InstallResult(operation, InstallOutcome.REUSED, operation.destination)

        logger.info(f"Adding {', '.join(operation.targets)} to the {channel} Rust channel")
        for command in self.install_commands(channel, operation.targets):
            _check_cancelled(cancel_event)
            self._run(command)
        return InstallResult(operation, InstallOutcome.INSTALLED, operation.destination)

    def remove(self, channel: str, targets: Iterable[str]) -> None:
        """
        Remove ``targets`` from ``channel``; the channel itself stays.

        Raises:
            ComponentInstallError: If rustup is missing or the command fails
        """
        targets = list(targets)
        if not targets:
            return
        self.check()
        self._run(self.remove_command(channel, targets))
        logger.info(f"Removed {', '.join(targets)} from the {channel} Rust channel")

    def _execute(self, command: List[str]) -> subprocess.CompletedProcess:
        env = dict(os.environ, RUSTUP_HOME=str(self.layout.rustup_home))
        return self.runner(command, capture_output=True, text=True, env=env)

    def _run(self, command: List[str]) -> None:
        logger.debug(f"Running {' '.join(command)}")
        try:
            result = self._execute(command)
        except OSError as e:
            raise ComponentInstallError(f"Failed to run rustup: {e}") from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise ComponentInstallError(
                f"{' '.join(command[:3])} exited with code {result.returncode}: "
                f"{output[-500:]}"
            )


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("rustup setup cancelled")
