"""
Completions command implementation.

Prints a shell completion script generated from the argument parser, so
completions always match the options the CLI actually accepts.
"""

import argparse
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from jinja2 import Environment, FileSystemLoader

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"

TEMPLATES = {
    "bash": "completion.bash.j2",
    "zsh": "completion.zsh.j2",
    "fish": "completion.fish.j2",
    "powershell": "completion.ps1.j2",
}


@dataclass
class CompletionOption:
    flags: List[str]
    help: str = ""
    choices: List[str] = field(default_factory=list)
    takes_value: bool = False

    @property
    def long(self) -> str:
        return next((f for f in self.flags if f.startswith("--")), self.flags[0])

    @property
    def short(self) -> str:
        return next((f[1:] for f in self.flags if len(f) == 2), "")


@dataclass
class CompletionCommand:
    name: str
    help: str
    options: List[CompletionOption]
    positional_choices: List[str] = field(default_factory=list)


def describe(subparsers: dict, helps: dict) -> List[CompletionCommand]:
    """Extract commands and their options from subcommand parsers."""
    commands = []
    for name, sub in subparsers.items():
        options = []
        positional_choices: List[str] = []
        for action in sub._actions:
            if isinstance(action, argparse._HelpAction):
                continue
            if not action.option_strings:
                positional_choices.extend(str(c) for c in action.choices or ())
                continue
            options.append(
                CompletionOption(
                    flags=list(action.option_strings),
                    help=(action.help or "").replace("'", ""),
                    choices=[str(c) for c in action.choices or ()],
                    takes_value=action.nargs != 0,
                )
            )
        commands.append(
            CompletionCommand(name, helps.get(name, ""), options, positional_choices)
        )
    return commands


def render(shell: str, commands: List[CompletionCommand], prog: str = "espkit") -> str:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    return env.get_template(TEMPLATES[shell]).render(prog=prog, commands=commands)


def _subcommand_helps(parser: argparse.ArgumentParser) -> dict:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return {a.dest: (a.help or "").replace("'", "") for a in action._choices_actions}
    return {}


def run(args) -> int:
    """
    Run the completions command.

    Returns:
        Exit code (always 0; argparse rejects unknown shells)
    """
    from espkit.cli.parser import CLI

    cli = CLI()
    commands = describe(cli.subcommands(), _subcommand_helps(cli.parser))
    print(render(args.shell, commands), end="")
    return 0
