"""
espkit - installs and manages Rust toolchains for Espressif SoCs.

Installs the Xtensa-enabled Rust toolchain, Espressif's LLVM fork, the GCC
cross-compilers for the selected targets and, optionally, an ESP-IDF
checkout, then writes activation scripts for every supported shell.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("espkit")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
