"""
Per-installation locking for espkit.

Only one process may install, update or uninstall a given installation name
at a time. Different names never contend with each other.

Usage:
    from espkit.core.locking import LockManager

    lock_manager = LockManager(layout.lock_dir)
    with lock_manager.installation_lock("esp"):
        # Safely modify the 'esp' installation and its manifest
        pass
"""

import logging
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout as LockTimeout

from espkit.core.exceptions import InstallationLockedError

logger = logging.getLogger(__name__)


class LockManager:
    """
    File-based locks keyed by installation name.

    Uses the `filelock` library for cross-platform, cross-process locking that
    is released automatically when the holding process dies.

    Attributes:
        lock_dir: Directory where lock files are stored
    """

    def __init__(self, lock_dir: Path):
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    def lock_path(self, name: str) -> Path:
        return self.lock_dir / f"{name}.lock"

    @contextmanager
    def installation_lock(self, name: str, timeout: float = 0):
        """
        Hold the exclusive lock for an installation name.

        Args:
            name: Installation name
            timeout: Seconds to wait for a competing holder (0 fails immediately)

        Raises:
            InstallationLockedError: If the lock can't be acquired within timeout
        """
        lock_path = self.lock_path(name)
        lock = FileLock(str(lock_path), timeout=timeout)

        try:
            lock.acquire()
        except LockTimeout as e:
            logger.error(f"Could not acquire lock for installation '{name}'")
            raise InstallationLockedError(name, str(lock_path)) from e

        logger.debug(f"Acquired installation lock: {lock_path}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Released installation lock: {lock_path}")
