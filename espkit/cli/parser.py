"""
espkit CLI argument parser.

This module implements the command-line interface for espkit using argparse.
"""

import argparse
import importlib
import logging
import sys
from pathlib import Path
from typing import List, Optional

from espkit import __version__
from espkit.core.exceptions import EspkitError, OperationCancelled

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

COMPLETION_SHELLS = ("bash", "zsh", "fish", "powershell")


class CLI:
    """espkit command-line interface."""

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Build the top-level parser and register every subcommand."""
        parser = argparse.ArgumentParser(
            prog="espkit",
            description="espkit - Rust toolchains for Espressif SoCs",
            epilog='Use "espkit COMMAND --help" for command-specific help',
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version", action="version", version=f"espkit {__version__}"
        )

        subparsers = parser.add_subparsers(
            dest="command", help="Available commands", metavar="COMMAND"
        )

        self._add_install_command(subparsers)
        self._add_update_command(subparsers)
        self._add_uninstall_command(subparsers)
        self._add_completions_command(subparsers)

        return parser

    def _add_common_options(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--name",
            "-a",
            metavar="NAME",
            help="Installation name (default: esp)",
        )
        parser.add_argument(
            "--log-level",
            "-l",
            choices=sorted(LOG_LEVELS),
            metavar="LEVEL",
            help="Verbosity level: debug|info|warn|error [default: info]",
        )
        parser.add_argument(
            "--verbose", action="store_true", help="Same as --log-level debug"
        )
        parser.add_argument(
            "--quiet",
            "-q",
            action="store_true",
            help="Enable minimal output (errors only)",
        )
        parser.add_argument(
            "--config",
            type=Path,
            metavar="PATH",
            help="Path to configuration file (default: ~/.espkit/config.yaml)",
        )

    def _add_toolchain_options(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--targets",
            "-t",
            metavar="TARGETS",
            help="Comma or space separated list of targets, or 'all'",
        )
        parser.add_argument(
            "--toolchain-version",
            "-v",
            metavar="VERSION",
            help="Xtensa Rust toolchain version (e.g. 1.85.0.0, 1.85, latest)",
        )
        parser.add_argument(
            "--llvm-version", metavar="VERSION", help="Espressif LLVM version"
        )
        parser.add_argument(
            "--gcc-version", metavar="VERSION", help="Espressif GCC version"
        )
        parser.add_argument(
            "--esp-idf-version",
            "-e",
            metavar="REF",
            help="Install ESP-IDF at this tag, branch or commit (e.g. v5.1, commit:abc123)",
        )
        parser.add_argument(
            "--stable-version",
            "-b",
            metavar="CHANNEL",
            help="Rust channel the RISC-V targets are added to (default: stable)",
        )
        parser.add_argument(
            "--std",
            "-s",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Only install what std applications need (no GCC toolchains)",
        )
        parser.add_argument(
            "--extended-llvm",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Install the full LLVM distribution including clang",
        )
        parser.add_argument(
            "--profile-minimal",
            "-m",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Shallow ESP-IDF clone",
        )
        parser.add_argument(
            "--default-host",
            "-d",
            metavar="TRIPLE",
            help="Install for this host triple instead of the detected one",
        )
        parser.add_argument(
            "--export-dir",
            "-f",
            type=Path,
            metavar="DIR",
            help="Directory for the export-esp activation scripts",
        )
        parser.add_argument(
            "--skip-version-parse",
            "-k",
            action="store_true",
            help="Use the toolchain version as given, without validation",
        )
        parser.add_argument(
            "--no-modify-env",
            action="store_true",
            help="Do not persist environment variables (Windows)",
        )
        parser.add_argument(
            "--github-token",
            metavar="TOKEN",
            help="GitHub API token (default: $GITHUB_TOKEN)",
        )
        parser.add_argument(
            "--proxy", metavar="URL", help="HTTP(S) or SOCKS proxy for all requests"
        )
        parser.add_argument(
            "--max-workers",
            type=int,
            metavar="N",
            help="Number of components installed in parallel",
        )

    def _add_install_command(self, subparsers):
        """Add 'install' subcommand."""
        parser = subparsers.add_parser(
            "install",
            help="Install Rust for ESP chips",
            description="Install the Xtensa Rust toolchain, LLVM and GCC for the given targets",
        )
        self._add_common_options(parser)
        self._add_toolchain_options(parser)

    def _add_update_command(self, subparsers):
        """Add 'update' subcommand."""
        parser = subparsers.add_parser(
            "update",
            help="Update an installation",
            description="Update an existing installation to the latest (or given) versions",
        )
        self._add_common_options(parser)
        self._add_toolchain_options(parser)

    def _add_uninstall_command(self, subparsers):
        """Add 'uninstall' subcommand."""
        parser = subparsers.add_parser(
            "uninstall",
            help="Remove an installation",
            description="Remove everything recorded in an installation's manifest",
        )
        self._add_common_options(parser)
        parser.add_argument(
            "--no-modify-env",
            action="store_true",
            help="Do not touch persistent environment variables (Windows)",
        )

    def _add_completions_command(self, subparsers):
        """Add 'completions' subcommand."""
        parser = subparsers.add_parser(
            "completions",
            help="Print a shell completion script",
            description="Generate a completion script for the given shell",
        )
        parser.add_argument(
            "shell",
            choices=COMPLETION_SHELLS,
            metavar="SHELL",
            help="Shell to generate completions for (bash|zsh|fish|powershell)",
        )
        self._add_common_options(parser)

    def subcommands(self) -> dict:
        """Map of subcommand name to its parser."""
        for action in self.parser._actions:
            if isinstance(action, argparse._SubParsersAction):
                return dict(action.choices)
        return {}

    def parse_args(self, args: Optional[List[str]] = None):
        """Parse ``args`` (``sys.argv[1:]`` when None)."""
        return self.parser.parse_args(args)

    def run(self, args: Optional[List[str]] = None) -> int:
        """
        Parse ``args``, configure logging and run the selected command.

        Returns:
            Exit code: 0 on success, 1 on errors or partial failure, 130 when
            the run was interrupted
        """
        parsed_args = self.parse_args(args)

        self._configure_logging(parsed_args)

        if not parsed_args.command:
            self.parser.print_help()
            return 1

        try:
            return self._dispatch_command(parsed_args)
        except (KeyboardInterrupt, OperationCancelled):
            logger.info("Operation cancelled by user")
            return 130  # Standard exit code for SIGINT
        except EspkitError as e:
            logger.error(f"Error: {e}")
            if logger.isEnabledFor(logging.DEBUG):
                import traceback

                traceback.print_exc()
            return 1

    def _configure_logging(self, args):
        """
        Configure logging from --log-level or the verbose/quiet flags.
        """
        log_level = getattr(args, "log_level", None)
        if getattr(args, "verbose", False):
            log_level = "debug"
        elif getattr(args, "quiet", False):
            log_level = "error"
        level = LOG_LEVELS[log_level or "info"]

        if level == logging.DEBUG:
            format_str = "%(levelname)s [%(name)s] %(message)s"
        elif level >= logging.ERROR:
            format_str = "%(levelname)s: %(message)s"
        else:
            format_str = "%(message)s"

        logging.basicConfig(
            level=level,
            format=format_str,
            force=True,
        )

    def _dispatch_command(self, args) -> int:
        """Import ``espkit.cli.commands.<command>`` and call its ``run(args)``."""
        command_map = {
            "install": "espkit.cli.commands.install",
            "update": "espkit.cli.commands.update",
            "uninstall": "espkit.cli.commands.uninstall",
            "completions": "espkit.cli.commands.completions",
        }

        module_name = command_map.get(args.command)
        if not module_name:
            logger.error(f"Unknown command: {args.command}")
            return 1

        module = importlib.import_module(module_name)
        return module.run(args)


def main():
    """Console script entry point."""
    cli = CLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
