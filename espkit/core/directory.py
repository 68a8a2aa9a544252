"""
Directory layout for espkit.

Directory Structure:
    espkit home (~/.espkit/ or %USERPROFILE%\\.espkit\\, or $ESPKIT_HOME):
        - installations/<name>/ : Cross-compilers, LLVM, SDK and activation scripts
        - manifests/<name>.json : Record of what each named installation owns
        - lock/<name>.lock      : Per-name single-writer lock
        - staging/              : Private download and extraction area
        - config.yaml           : Optional user configuration

    Rust toolchains live under $RUSTUP_HOME/toolchains/<name>/ so that
    'cargo +<name>' picks them up.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from espkit.core.exceptions import ConfigurationError


def get_espkit_home() -> Path:
    """
    Get the espkit home directory.

    Returns:
        $ESPKIT_HOME when set, otherwise ~/.espkit (%USERPROFILE%\\.espkit on Windows)
    """
    override = os.environ.get("ESPKIT_HOME")
    if override:
        return Path(override).expanduser()

    if os.name == "nt":
        user_profile = os.environ.get("USERPROFILE")
        if not user_profile:
            raise ConfigurationError(
                "USERPROFILE environment variable is not set. "
                "Cannot determine the espkit home directory."
            )
        return Path(user_profile) / ".espkit"
    return Path.home() / ".espkit"


def get_rustup_home() -> Path:
    """Get $RUSTUP_HOME, defaulting to ~/.rustup."""
    override = os.environ.get("RUSTUP_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".rustup"


@dataclass(frozen=True)
class InstallLayout:
    """
    On-disk locations used by one espkit run.

    Attributes:
        home: espkit home directory
        rustup_home: rustup home the Rust toolchain is registered under
    """

    home: Path
    rustup_home: Path

    @classmethod
    def default(
        cls, home: Optional[Path] = None, rustup_home: Optional[Path] = None
    ) -> "InstallLayout":
        return cls(
            home=Path(home) if home else get_espkit_home(),
            rustup_home=Path(rustup_home) if rustup_home else get_rustup_home(),
        )

    @property
    def installations_dir(self) -> Path:
        return self.home / "installations"

    @property
    def manifests_dir(self) -> Path:
        return self.home / "manifests"

    @property
    def lock_dir(self) -> Path:
        return self.home / "lock"

    @property
    def staging_dir(self) -> Path:
        return self.home / "staging"

    def installation_root(self, name: str) -> Path:
        """Root directory for the non-Rust components of an installation."""
        return self.installations_dir / name

    def toolchain_dir(self, name: str) -> Path:
        """Directory rustup resolves 'cargo +<name>' to."""
        return self.rustup_home / "toolchains" / name

    def owned_roots(self):
        """Directories espkit is allowed to delete from."""
        return (self.installations_dir, self.rustup_home / "toolchains")

    def ensure(self) -> None:
        """Create the espkit-owned directories."""
        for path in (
            self.installations_dir,
            self.manifests_dir,
            self.lock_dir,
            self.staging_dir,
        ):
            path.mkdir(parents=True, exist_ok=True)
