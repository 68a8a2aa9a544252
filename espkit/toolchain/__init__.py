"""
Toolchain management for espkit.

This package provides:
- Chip targets and the component catalogue
- Version parsing and resolution against the release index
- Installation planning, download and extraction
- ESP-IDF checkout and rustup RISC-V target setup
- Orchestration of install, update and uninstall runs

The orchestrator lives in ``espkit.toolchain.orchestrator`` and is not
re-exported here, since it depends on ``espkit.env``.
"""

from espkit.toolchain.components import (
    COMPONENTS,
    ESP_IDF,
    LLVM,
    RISCV_RUST,
    XTENSA_RUST,
    Component,
    ComponentKind,
)
from espkit.toolchain.targets import KNOWN_TARGETS, cross_compilers_for, parse_targets, rust_targets_for
from espkit.toolchain.versions import VersionKind, VersionSpec, parse_version_spec

__all__ = [
    "COMPONENTS",
    "ESP_IDF",
    "LLVM",
    "RISCV_RUST",
    "XTENSA_RUST",
    "Component",
    "ComponentKind",
    "KNOWN_TARGETS",
    "cross_compilers_for",
    "rust_targets_for",
    "parse_targets",
    "VersionKind",
    "VersionSpec",
    "parse_version_spec",
]
