"""
Catalog of installable components.

Each component is published on its own GitHub release index with its own
tag and asset naming scheme. This module is the single place that knows
those schemes.
"""

import enum
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern

from espkit.core.exceptions import ConfigurationError
from espkit.core.platform import HostPlatform
from espkit.toolchain.targets import RISCV_GCC, XTENSA_GCC


class ComponentKind(str, enum.Enum):
    """Role of a component within an installation."""

    TOOLCHAIN = "toolchain"
    CROSS_COMPILER = "cross-compiler"
    SUPPORT_LIBRARY = "support-library"
    TARGET_SUPPORT = "target-support"
    SDK = "sdk"

    @property
    def shared(self) -> bool:
        """Installed once regardless of how many targets are requested."""
        return self in (
            ComponentKind.TOOLCHAIN,
            ComponentKind.SUPPORT_LIBRARY,
            ComponentKind.TARGET_SUPPORT,
        )


RUST_VERSION = re.compile(r"^\d+\.\d+\.\d+\.\d+$")
ESPRESSIF_VERSION = re.compile(r"^\d+\.\d+\.\d+_\d{8}$")
INCOMPLETE_VERSION = re.compile(r"^\d+(\.\d+){0,2}$")


@dataclass(frozen=True)
class Component:
    """
    Static description of one installable component.

    Attributes:
        name: Component name, also used for directory names
        kind: Role of the component
        repository: GitHub ``owner/repo`` hosting the releases
        tag_prefix: Prefix turning a version into a release tag
        version_pattern: Pattern an exact version must match (None for the SDK)
    """

    name: str
    kind: ComponentKind
    repository: str
    tag_prefix: str
    version_pattern: Optional[Pattern] = None

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.name}"

    def tag_for(self, version: str) -> str:
        return f"{self.tag_prefix}{version}"

    def version_from_tag(self, tag: str) -> Optional[str]:
        """Extract an exact version from a release tag, or None if it isn't one."""
        if not tag.startswith(self.tag_prefix):
            return None
        version = tag[len(self.tag_prefix):]
        if self.version_pattern is not None and not self.version_pattern.match(version):
            return None
        return version

    def strip_prefix(self, raw: str) -> str:
        """Accept user input written as a tag (``v1.85.0.0``, ``esp-19.1.2_...``)."""
        if self.tag_prefix and raw.startswith(self.tag_prefix):
            return raw[len(self.tag_prefix):]
        return raw


XTENSA_RUST = Component(
    name="xtensa-rust",
    kind=ComponentKind.TOOLCHAIN,
    repository="esp-rs/rust-build",
    tag_prefix="v",
    version_pattern=RUST_VERSION,
)

LLVM = Component(
    name="llvm",
    kind=ComponentKind.SUPPORT_LIBRARY,
    repository="espressif/llvm-project",
    tag_prefix="esp-",
    version_pattern=ESPRESSIF_VERSION,
)

XTENSA_ESP_ELF = Component(
    name=XTENSA_GCC,
    kind=ComponentKind.CROSS_COMPILER,
    repository="espressif/crosstool-NG",
    tag_prefix="esp-",
    version_pattern=ESPRESSIF_VERSION,
)

RISCV32_ESP_ELF = Component(
    name=RISCV_GCC,
    kind=ComponentKind.CROSS_COMPILER,
    repository="espressif/crosstool-NG",
    tag_prefix="esp-",
    version_pattern=ESPRESSIF_VERSION,
)

# Standard library sources and rustc targets added to a rustup channel
RISCV_RUST = Component(
    name="riscv-rust",
    kind=ComponentKind.TARGET_SUPPORT,
    repository="rust-lang/rust",
    tag_prefix="",
)

ESP_IDF = Component(
    name="esp-idf",
    kind=ComponentKind.SDK,
    repository="espressif/esp-idf",
    tag_prefix="",
)

COMPONENTS: Dict[str, Component] = {
    c.name: c
    for c in (XTENSA_RUST, LLVM, XTENSA_ESP_ELF, RISCV32_ESP_ELF, RISCV_RUST, ESP_IDF)
}

LLVM_MINIMAL = "minimal"
LLVM_EXTENDED = "extended"


def get_component(name: str) -> Component:
    try:
        return COMPONENTS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown component '{name}'") from None


def asset_names(
    component: Component,
    version: str,
    host: HostPlatform,
    variant: Optional[str] = None,
) -> List[str]:
    """
    File names of the release assets making up ``component`` on ``host``.

    The first name is the main archive. The Rust toolchain on POSIX hosts
    additionally ships its standard library sources as a separate archive.

    Example:
        >>> asset_names(XTENSA_ESP_ELF, "14.2.0_20241119", HostPlatform("x86_64-unknown-linux-gnu"))
        ['xtensa-esp-elf-14.2.0_20241119-x86_64-linux-gnu.tar.xz']
    """
    if component is XTENSA_RUST:
        names = [f"rust-{version}-{host.triple}.{host.archive_extension}"]
        if not host.is_windows:
            names.append(f"rust-src-{version}.tar.xz")
        return names

    if component is LLVM:
        prefix = "clang-esp" if variant == LLVM_EXTENDED else "libs-clang-esp"
        return [f"{prefix}-{version}-{host.asset_arch}.tar.xz"]

    if component.kind == ComponentKind.CROSS_COMPILER:
        return [f"{component.name}-{version}-{host.asset_arch}.{host.archive_extension}"]

    raise ConfigurationError(f"{component.name} is not distributed as release assets")
