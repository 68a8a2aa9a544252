"""
Install command implementation.

Installs the Xtensa Rust toolchain, LLVM, the GCC cross-compilers for the
requested targets and optionally ESP-IDF, then writes activation scripts.
"""

import logging

from espkit.cli.utils import (
    exit_code,
    installation_name,
    load_effective_config,
    print_report,
    resolve_host,
    safe_print,
    sdk_version,
    version_overrides,
)
from espkit.toolchain.orchestrator import Orchestrator
from espkit.toolchain.planner import InstallRequest
from espkit.toolchain.targets import parse_targets

logger = logging.getLogger(__name__)


def run(args) -> int:
    """
    Run the install command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 when every component installed, 1 otherwise)
    """
    config = load_effective_config(args)
    host = resolve_host(args)
    name = installation_name(args, config)

    # Validate everything user-supplied before the first network request
    targets = parse_targets(args.targets or config.default_targets)
    orchestrator = Orchestrator(config, host)
    versions = orchestrator.default_versions()
    versions.update(version_overrides(args))

    request = InstallRequest(
        name=name,
        host=host,
        layout=config.layout,
        targets=targets,
        std_only=bool(args.std),
        extended_llvm=bool(args.extended_llvm),
        versions=versions,
        sdk_version=sdk_version(args),
        sdk_minimal=bool(args.profile_minimal),
        stable_version=config.stable_version,
        export_dir=args.export_dir,
        modify_env=not args.no_modify_env,
    )

    safe_print(f"📦 Installing '{name}' for {', '.join(targets)} on {host}")
    report = orchestrator.install(request)
    print_report(report)

    if report.manifest is not None:
        safe_print(
            f"\nTo activate: source {report.export_dir / 'export-esp.sh'}"
            if not host.is_windows
            else f"\nTo activate: {report.export_dir / 'export-esp.ps1'}"
        )
    return exit_code(report)
