"""
Activation script generation.

Derives the environment an installation needs from its manifest and renders
one activation script per shell dialect from the Jinja2 templates in
``templates/``. Every script checks whether a directory is already on PATH
before prepending it, so sourcing a script repeatedly never duplicates
entries.

Exported variables:
    LIBCLANG_PATH: libclang directory of the installed LLVM
    CLANG_PATH:    clang executable (extended LLVM only)
    IDF_PATH:      ESP-IDF checkout (when installed)

PATH gains each GCC ``bin`` directory, plus the LLVM ``bin`` directory on
Windows where libclang.dll lives there.
"""

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath
from typing import Dict, Iterable, List

from jinja2 import Environment, FileSystemLoader, TemplateError

from espkit.core.exceptions import ActivationError
from espkit.core.manifest import Manifest
from espkit.core.platform import HostPlatform
from espkit.toolchain.components import LLVM_EXTENDED, ComponentKind

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
ARTIFACT_STEM = "export-esp"


class ShellDialect(str, enum.Enum):
    POSIX = "sh"
    FISH = "fish"
    POWERSHELL = "ps1"
    CMD = "bat"

    @property
    def filename(self) -> str:
        return f"{ARTIFACT_STEM}.{self.value}"

    @property
    def template(self) -> str:
        return f"{self.filename}.j2"


@dataclass(frozen=True)
class ActivationArtifact:
    """Generated activation script text for one shell dialect."""

    dialect: ShellDialect
    filename: str
    content: str


@dataclass
class ActivationEnvironment:
    """PATH prepends (highest priority first) and exported variables."""

    path_entries: List[str] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)


def _host_path(host: HostPlatform, path: str) -> PurePath:
    return PureWindowsPath(path) if host.is_windows else PurePosixPath(path)


def environment_for(manifest: Manifest, host: HostPlatform) -> ActivationEnvironment:
    """Compute the activation environment of ``manifest`` on ``host``."""
    env = ActivationEnvironment()

    for record in manifest.components:
        root = _host_path(host, record.path)

        if record.kind == ComponentKind.CROSS_COMPILER.value:
            env.path_entries.append(str(root / "bin"))

        elif record.kind == ComponentKind.SUPPORT_LIBRARY.value:
            clang = root / "esp-clang"
            if host.is_windows:
                env.variables["LIBCLANG_PATH"] = str(clang / "bin")
                env.path_entries.append(str(clang / "bin"))
            else:
                env.variables["LIBCLANG_PATH"] = str(clang / "lib")
            if record.variant == LLVM_EXTENDED:
                exe = "clang.exe" if host.is_windows else "clang"
                env.variables["CLANG_PATH"] = str(clang / "bin" / exe)

        elif record.kind == ComponentKind.SDK.value:
            env.variables["IDF_PATH"] = str(root)

    return env


def apply_path_entries(path: str, entries: Iterable[str], separator: str) -> str:
    """
    Prepend each entry to ``path`` unless it is already present.

    ``entries`` are ordered highest priority first. Mirrors what the
    generated scripts do, which makes their idempotence testable without a
    shell.

    Example:
        >>> apply_path_entries("/usr/bin", ["/opt/gcc/bin"], ":")
        '/opt/gcc/bin:/usr/bin'
    """
    for entry in reversed(list(entries)):
        current = path.split(separator) if path else []
        if entry not in current:
            path = separator.join([entry] + current)
    return path


def remove_path_entries(path: str, entries: Iterable[str], separator: str) -> str:
    """Drop every occurrence of ``entries`` from ``path``."""
    unwanted = set(entries)
    return separator.join(p for p in path.split(separator) if p and p not in unwanted)


def _sh_quote(value: str) -> str:
    """Escape for use inside double quotes in sh."""
    for char in ("\\", '"', "$", "`"):
        value = value.replace(char, "\\" + char)
    return value


def _fish_quote(value: str) -> str:
    """Escape for use inside double quotes in fish, where backticks are literal."""
    for char in ("\\", '"', "$"):
        value = value.replace(char, "\\" + char)
    return value


def _ps_quote(value: str) -> str:
    """Escape for use inside single quotes in PowerShell."""
    return value.replace("'", "''")


class EnvironmentSynthesizer:
    """Render activation scripts from manifests."""

    def __init__(self, template_dir: Path = TEMPLATE_DIR):
        if not template_dir.exists():
            raise ActivationError(f"Template directory not found: {template_dir}")

        self._jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._jinja_env.filters["sh_quote"] = _sh_quote
        self._jinja_env.filters["fish_quote"] = _fish_quote
        self._jinja_env.filters["ps_quote"] = _ps_quote
        logger.debug(f"Jinja2 templates initialized from: {template_dir}")

    def render(self, dialect: ShellDialect, manifest: Manifest, host: HostPlatform) -> str:
        env = environment_for(manifest, host)
        try:
            template = self._jinja_env.get_template(dialect.template)
            return template.render(
                name=manifest.name,
                path_entries=list(reversed(env.path_entries)),
                variables=env.variables,
            )
        except TemplateError as e:
            raise ActivationError(f"Failed to render {dialect.template}: {e}") from e

    def synthesize(self, manifest: Manifest, host: HostPlatform) -> List[ActivationArtifact]:
        """One activation artifact per supported shell dialect."""
        return [
            ActivationArtifact(dialect, dialect.filename, self.render(dialect, manifest, host))
            for dialect in ShellDialect
        ]
