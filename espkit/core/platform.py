"""
Host platform detection for espkit.

Maps the running interpreter's OS and CPU onto the Rust-style host triples
used by the Espressif Rust toolchain release assets, and onto the
architecture names used by the Espressif GCC and LLVM release assets.

Usage:
    from espkit.core.platform import detect_host, HostPlatform

    host = detect_host()
    print(host.triple)        # e.g. 'x86_64-unknown-linux-gnu'
    print(host.asset_arch)    # e.g. 'x86_64-linux-gnu'
"""

import functools
import platform
from dataclasses import dataclass

from espkit.core.exceptions import ConfigurationError

SUPPORTED_HOSTS = (
    "x86_64-unknown-linux-gnu",
    "aarch64-unknown-linux-gnu",
    "x86_64-pc-windows-msvc",
    "x86_64-pc-windows-gnu",
    "x86_64-apple-darwin",
    "aarch64-apple-darwin",
)

# Host triple -> architecture string used by Espressif GCC/LLVM archives
_ASSET_ARCH = {
    "x86_64-unknown-linux-gnu": "x86_64-linux-gnu",
    "aarch64-unknown-linux-gnu": "aarch64-linux-gnu",
    "x86_64-pc-windows-msvc": "x86_64-w64-mingw32",
    "x86_64-pc-windows-gnu": "x86_64-w64-mingw32",
    "x86_64-apple-darwin": "x86_64-apple-darwin",
    "aarch64-apple-darwin": "aarch64-apple-darwin",
}


@dataclass(frozen=True)
class HostPlatform:
    """
    A supported host platform.

    Attributes:
        triple: Rust host triple, e.g. 'aarch64-apple-darwin'
    """

    triple: str

    def __post_init__(self):
        if self.triple not in SUPPORTED_HOSTS:
            raise ConfigurationError(
                f"Unsupported host '{self.triple}'. "
                f"Supported hosts: {', '.join(SUPPORTED_HOSTS)}"
            )

    @property
    def os(self) -> str:
        """Normalized OS name: 'linux', 'macos' or 'windows'."""
        if "windows" in self.triple:
            return "windows"
        if "apple" in self.triple:
            return "macos"
        return "linux"

    @property
    def is_windows(self) -> bool:
        return self.os == "windows"

    @property
    def asset_arch(self) -> str:
        """Architecture name used in Espressif GCC and LLVM archive names."""
        return _ASSET_ARCH[self.triple]

    @property
    def archive_extension(self) -> str:
        """Preferred archive extension for compiler distributions on this host."""
        return "zip" if self.is_windows else "tar.xz"

    def __str__(self) -> str:
        return self.triple


@functools.lru_cache(maxsize=1)
def detect_host() -> HostPlatform:
    """
    Detect the host platform of the running interpreter.

    This function is cached - it only runs detection once per process.

    Raises:
        ConfigurationError: If the OS/CPU combination is not supported
    """
    return HostPlatform(_detect_triple(platform.system(), platform.machine()))


def _detect_triple(system: str, machine: str) -> str:
    system = system.lower()
    arch = _normalize_architecture(machine)

    if system == "linux":
        return f"{arch}-unknown-linux-gnu"
    elif system == "darwin":
        return f"{arch}-apple-darwin"
    elif system == "windows":
        return f"{arch}-pc-windows-msvc"
    else:
        raise ConfigurationError(f"Unsupported operating system: {system}")


def _normalize_architecture(machine: str) -> str:
    machine = machine.lower()

    if machine in ("x86_64", "amd64", "x64"):
        return "x86_64"
    elif machine in ("aarch64", "arm64"):
        return "aarch64"
    else:
        raise ConfigurationError(f"Unsupported CPU architecture: {machine}")


def clear_host_cache():
    """Clear the cached host detection (used by tests)."""
    detect_host.cache_clear()
