"""
Shared utilities for CLI commands.

Provides common functionality used across the install, update and uninstall
commands: turning parsed arguments into configuration, a host platform and
version specifiers, and printing run reports.
"""

import logging
from typing import Dict, Optional

from espkit.core.config import EspkitConfig, load_config
from espkit.core.platform import HostPlatform, detect_host
from espkit.toolchain.components import COMPONENTS, ESP_IDF, LLVM, XTENSA_RUST
from espkit.toolchain.orchestrator import OperationReport, OperationStatus
from espkit.toolchain.targets import RISCV_GCC, XTENSA_GCC
from espkit.toolchain.versions import VersionSpec, parse_version_spec

logger = logging.getLogger(__name__)


# ============================================================================
# Output
# ============================================================================


def safe_print(message: str, file=None):
    """
    Print message with safe encoding handling for Windows console.

    Falls back to ASCII-safe characters if Unicode emojis can't be encoded.
    """
    try:
        print(message, file=file)
    except UnicodeEncodeError:
        safe_message = (
            message.replace("⚠️", "WARNING:")
            .replace("✓", "[OK]")
            .replace("✅", "[OK]")
            .replace("❌", "[ERROR]")
            .replace("⏭️", "[SKIPPED]")
            .replace("🗑️", "[REMOVED]")
            .replace("📦", "")
        )
        print(safe_message, file=file)


_STATUS_ICONS = {
    OperationStatus.INSTALLED: "✅",
    OperationStatus.REUSED: "✓",
    OperationStatus.REMOVED: "🗑️",
    OperationStatus.FAILED: "❌",
    OperationStatus.SKIPPED: "⏭️",
}


def print_report(report: OperationReport) -> None:
    """Print one line per component followed by the summary."""
    for result in report.results:
        icon = _STATUS_ICONS[result.status]
        line = f"{icon} {result.name} {result.version}: {result.status.value}"
        if result.status in (OperationStatus.FAILED, OperationStatus.SKIPPED):
            line += f" ({result.message})"
        safe_print(line)

    if report.activation_error is not None:
        safe_print(f"⚠️  Environment not updated: {report.activation_error}")

    print()
    safe_print(report.summary())


def exit_code(report: OperationReport) -> int:
    return 0 if report.ok else 1


# ============================================================================
# Argument Translation
# ============================================================================


def load_effective_config(args) -> EspkitConfig:
    """
    Configuration from file and environment with command-line flags on top.

    Raises:
        ConfigurationError: If the file or a flag value is invalid
    """
    config = load_config(getattr(args, "config", None))
    return config.with_overrides(
        proxy=getattr(args, "proxy", None),
        github_token=getattr(args, "github_token", None),
        max_workers=getattr(args, "max_workers", None),
        export_dir=getattr(args, "export_dir", None),
        stable_version=getattr(args, "stable_version", None),
    )


def installation_name(args, config: EspkitConfig) -> str:
    return getattr(args, "name", None) or config.default_name


def resolve_host(args) -> HostPlatform:
    """Host given with --default-host, or the detected one."""
    triple = getattr(args, "default_host", None)
    if triple:
        return HostPlatform(triple)
    return detect_host()


def version_overrides(args, skip_parse: Optional[bool] = None) -> Dict[str, VersionSpec]:
    """
    VersionSpecs for the component versions given on the command line.

    Components without a flag are left out so that defaults (or the
    manifest, on update) apply.
    """
    if skip_parse is None:
        skip_parse = bool(getattr(args, "skip_version_parse", False))

    versions = {}
    if getattr(args, "toolchain_version", None):
        versions[XTENSA_RUST.name] = parse_version_spec(
            XTENSA_RUST, args.toolchain_version, skip_parse=skip_parse
        )
    if getattr(args, "llvm_version", None):
        versions[LLVM.name] = parse_version_spec(LLVM, args.llvm_version)
    if getattr(args, "gcc_version", None):
        for name in (XTENSA_GCC, RISCV_GCC):
            versions[name] = parse_version_spec(COMPONENTS[name], args.gcc_version)
    return versions


def sdk_version(args) -> Optional[VersionSpec]:
    raw = getattr(args, "esp_idf_version", None)
    if not raw:
        return None
    return parse_version_spec(ESP_IDF, raw)
