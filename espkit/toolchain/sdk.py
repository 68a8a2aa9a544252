"""
ESP-IDF installation through its own tooling.

espkit only decides *whether* ESP-IDF is installed and with which
parameters. Cloning is done with git and the toolchain setup is delegated
to the SDK's own ``install.sh``/``install.bat``; espkit only checks the
exit status.
"""

import logging
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Tuple

from espkit.core.directory import InstallLayout
from espkit.core.exceptions import OperationCancelled, SdkInstallError
from espkit.core.filesystem import promote_directory, safe_rmtree, temporary_directory
from espkit.toolchain.versions import SourceRefKind, VersionSpec

logger = logging.getLogger(__name__)

ESP_IDF_REPOSITORY = "https://github.com/espressif/esp-idf.git"


@dataclass(frozen=True)
class SdkRequest:
    """
    Parameters handed to the SDK installer.

    Attributes:
        destination: Final ESP-IDF checkout directory
        ref: Git commit, tag or branch to check out
        minimal: Shallow clone to save disk space
        targets: Chip targets to install SDK tools for
    """

    destination: Path
    ref: VersionSpec
    minimal: bool = False
    targets: Tuple[str, ...] = field(default_factory=tuple)


class SdkInstaller(Protocol):
    def install(
        self, request: SdkRequest, cancel_event: Optional[threading.Event] = None
    ) -> None:
        ...


class GitSdkInstaller:
    """
    Clone ESP-IDF and run its installer script.

    The clone is staged and promoted like any other component; if the SDK's
    own installer then fails the checkout is removed again.
    """

    def __init__(
        self,
        layout: InstallLayout,
        windows: bool = False,
        repository: str = ESP_IDF_REPOSITORY,
        git: str = "git",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.layout = layout
        self.windows = windows
        self.repository = repository
        self.git = git
        self.runner = runner

    def clone_commands(self, request: SdkRequest, checkout: Path) -> List[List[str]]:
        """Git commands producing a checkout of ``request.ref`` in ``checkout``."""
        ref = request.ref
        if ref.ref_kind == SourceRefKind.COMMIT:
            return [
                [self.git, "clone", "--recursive", self.repository, str(checkout)],
                [self.git, "-C", str(checkout), "checkout", ref.value],
                [self.git, "-C", str(checkout), "submodule", "update", "--init", "--recursive"],
            ]

        command = [self.git, "clone", "--branch", ref.value, "--recursive"]
        if request.minimal:
            command += ["--depth", "1", "--shallow-submodules"]
        return [command + [self.repository, str(checkout)]]

    def install_command(self, request: SdkRequest) -> List[str]:
        targets = ",".join(request.targets) or "all"
        if self.windows:
            return ["cmd", "/c", str(request.destination / "install.bat"), targets]
        return ["/bin/bash", str(request.destination / "install.sh"), targets]

    def install(
        self, request: SdkRequest, cancel_event: Optional[threading.Event] = None
    ) -> None:
        """
        Raises:
            SdkInstallError: If git or the SDK installer fails
            OperationCancelled: If ``cancel_event`` is set between steps
        """
        logger.info(f"Installing ESP-IDF {request.ref} into {request.destination}")

        with temporary_directory(prefix="esp-idf-", parent=self.layout.staging_dir) as staging:
            checkout = staging / "esp-idf"
            for command in self.clone_commands(request, checkout):
                _check_cancelled(cancel_event)
                self._run(command, "git")
            _check_cancelled(cancel_event)
            promote_directory(checkout, request.destination)

        try:
            _check_cancelled(cancel_event)
            self._run(self.install_command(request), "ESP-IDF installer", cwd=request.destination)
        except BaseException:
            safe_rmtree(request.destination)
            raise

    def _run(self, command: List[str], what: str, cwd: Optional[Path] = None) -> None:
        logger.debug(f"Running {' '.join(command)}")
        try:
            result = self.runner(
                command,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise SdkInstallError(f"Failed to run {what}: {e}") from e

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise SdkInstallError(
                f"{what} exited with code {result.returncode}: {output[-500:]}"
            )


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("ESP-IDF installation cancelled")
