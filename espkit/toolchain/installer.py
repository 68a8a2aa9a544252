"""
Component download and extraction.

This module turns one planned install operation into a populated
destination directory:

1. Locate the release assets for the component and host
2. Download each asset into a private staging directory
3. Extract it next to the download
4. Assemble the final tree (run the Rust distribution's own installer,
   or strip the archive's single root directory)
5. Promote the assembled tree into the destination with one rename

The destination never exists in a partially extracted state. Staging is
discarded on success, failure and cancellation alike. When an operation
replaces a different version at the same destination, the previous tree is
kept as a backup that the orchestrator deletes or restores.
"""

import enum
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import requests

from espkit.core.directory import InstallLayout
from espkit.core.download import download_file
from espkit.core.exceptions import ComponentInstallError, OperationCancelled
from espkit.core.filesystem import (
    extract_archive,
    normalize_root_directory,
    promote_directory,
    swap_directory,
    temporary_directory,
)
from espkit.core.platform import HostPlatform
from espkit.core.retry import RetryPolicy
from espkit.toolchain.components import ComponentKind
from espkit.toolchain.planner import InstallOperation
from espkit.toolchain.releases import ReleaseAsset, ReleaseLocator

logger = logging.getLogger(__name__)

RUST_INSTALLER_SCRIPT = "install.sh"


class InstallOutcome(str, enum.Enum):
    INSTALLED = "installed"
    REUSED = "reused"


@dataclass
class InstallResult:
    """Result of one successful component installation."""

    operation: InstallOperation
    outcome: InstallOutcome
    path: Path
    duration: float = 0.0
    backup: Optional[Path] = None


class ComponentInstaller:
    """
    Installs release-asset based components (Rust, LLVM, GCC).

    Args:
        locator: Release locator used to pick assets
        layout: Directory layout (staging lives under it)
        host: Host platform the assets are selected for
        session: HTTP session for downloads (proxy settings live here)
        retry_policy: Backoff policy for the download step
        timeout: Network timeout in seconds
        runner: subprocess.run compatible callable (replaceable in tests)
    """

    def __init__(
        self,
        locator: ReleaseLocator,
        layout: InstallLayout,
        host: HostPlatform,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.locator = locator
        self.layout = layout
        self.host = host
        self.session = session
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.runner = runner

    def install(
        self, operation: InstallOperation, cancel_event: Optional[threading.Event] = None
    ) -> InstallResult:
        """
        Install ``operation`` into its destination.

        Raises:
            ReleaseNotFound: If the release or an asset is missing
            DownloadFailed: If a download keeps failing
            ArchiveExtractionError: If an archive is damaged
            ComponentInstallError: If the bundled installer fails
            OperationCancelled: If ``cancel_event`` is set
        """
        start = time.monotonic()
        destination = operation.destination

        if destination.exists() and not operation.replace_existing:
            logger.warning(
                f"Previous installation of {operation.name} exists in '{destination}'. "
                "Reusing this installation."
            )
            return InstallResult(operation, InstallOutcome.REUSED, destination)

        assets = self.locator.locate_all(
            operation.component, operation.version, self.host, operation.variant
        )
        logger.info(f"Installing {operation.name} {operation.version}")

        with temporary_directory(
            prefix=f"{operation.name}-", parent=self.layout.staging_dir
        ) as staging:
            extracted = [
                self._fetch(asset, staging, index, cancel_event)
                for index, asset in enumerate(assets)
            ]
            _check_cancelled(cancel_event)

            tree = self._assemble(operation, extracted, staging)
            _check_cancelled(cancel_event)

            backup = None
            if destination.exists():
                backup = swap_directory(tree, destination)
            else:
                promote_directory(tree, destination)

        duration = time.monotonic() - start
        logger.info(f"Installed {operation.name} {operation.version} in {duration:.1f}s")
        return InstallResult(
            operation, InstallOutcome.INSTALLED, destination, duration, backup
        )

    def _fetch(
        self,
        asset: ReleaseAsset,
        staging: Path,
        index: int,
        cancel_event: Optional[threading.Event],
    ) -> Path:
        """Download and extract one asset; returns the extraction directory."""
        archive = download_file(
            asset.url,
            staging / "downloads" / asset.name,
            expected_sha256=asset.sha256,
            session=self.session,
            retry_policy=self.retry_policy,
            cancel_event=cancel_event,
            timeout=self.timeout,
        )
        _check_cancelled(cancel_event)

        extract_dir = staging / f"extract-{index}"
        logger.debug(f"Extracting {asset.name} to {extract_dir}")
        extract_archive(archive, extract_dir, asset.archive_kind)
        archive.unlink()
        return extract_dir

    def _assemble(
        self, operation: InstallOperation, extracted: List[Path], staging: Path
    ) -> Path:
        """Return the directory that becomes the destination."""
        if operation.kind == ComponentKind.TOOLCHAIN:
            return self._assemble_rust(extracted, staging)

        if operation.kind == ComponentKind.SUPPORT_LIBRARY:
            # Keep the archive's esp-clang/ directory; LIBCLANG_PATH points into it
            return extracted[0]

        return normalize_root_directory(extracted[0])

    def _assemble_rust(self, extracted: List[Path], staging: Path) -> Path:
        roots = [normalize_root_directory(path) for path in extracted]
        scripts = [root / RUST_INSTALLER_SCRIPT for root in roots]

        if self.host.is_windows or not all(script.exists() for script in scripts):
            return roots[0]

        tree = staging / "toolchain"
        tree.mkdir()
        for script in scripts:
            self._run_rust_installer(script, tree)
        return tree

    def _run_rust_installer(self, script: Path, destdir: Path) -> None:
        command = [
            "/bin/bash",
            str(script),
            f"--destdir={destdir}",
            "--prefix=",
            "--without=rust-docs",
        ]
        logger.debug(f"Running {' '.join(command)}")
        result = self.runner(command, cwd=str(script.parent), capture_output=True, text=True)
        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise ComponentInstallError(
                f"{script.parent.name}/{RUST_INSTALLER_SCRIPT} exited with code "
                f"{result.returncode}: {output[-500:]}"
            )


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("Installation cancelled")
