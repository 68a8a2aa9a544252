"""
Update command implementation.

Re-runs an installation against its manifest, moving components to the
latest (or given) versions.
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
from espkit.toolchain.targets import parse_targets

logger = logging.getLogger(__name__)


def run(args) -> int:
    """
    Run the update command.

    Targets and flags default to what the installation was created with.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    config = load_effective_config(args)
    host = resolve_host(args)
    name = installation_name(args, config)
    targets = parse_targets(args.targets) if args.targets else None

    orchestrator = Orchestrator(config, host)
    safe_print(f"🔍 Updating '{name}'...")
    report = orchestrator.update(
        name,
        targets=targets,
        std_only=args.std,
        extended_llvm=args.extended_llvm,
        versions=version_overrides(args),
        sdk_version=sdk_version(args),
        sdk_minimal=args.profile_minimal,
        stable_version=args.stable_version,
        export_dir=args.export_dir,
        modify_env=not args.no_modify_env,
    )
    print_report(report)
    return exit_code(report)
