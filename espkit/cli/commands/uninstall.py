"""
Uninstall command implementation.

Removes exactly what an installation's manifest records.
"""

import logging

from espkit.cli.utils import (
    exit_code,
    installation_name,
    load_effective_config,
    print_report,
    resolve_host,
    safe_print,
)
from espkit.toolchain.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def run(args) -> int:
    """
    Run the uninstall command.

    Returns:
        Exit code (0 when everything was removed)
    """
    config = load_effective_config(args)
    name = installation_name(args, config)

    orchestrator = Orchestrator(config, resolve_host(args))
    safe_print(f"🗑️  Uninstalling '{name}'...")
    report = orchestrator.uninstall(name, modify_env=not args.no_modify_env)
    print_report(report)
    return exit_code(report)
