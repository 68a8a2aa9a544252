"""
Espressif chip targets and the cross-compiler each one needs.
"""

import logging
import re
from typing import Iterable, List, Union

from espkit.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ALL = "all"

XTENSA_GCC = "xtensa-esp-elf"
RISCV_GCC = "riscv32-esp-elf"

# Canonical order; "all" expands to exactly this list
KNOWN_TARGETS = (
    "esp32",
    "esp32c2",
    "esp32c3",
    "esp32c6",
    "esp32h2",
    "esp32p4",
    "esp32s2",
    "esp32s3",
)

XTENSA_TARGETS = frozenset({"esp32", "esp32s2", "esp32s3"})


def is_xtensa(target: str) -> bool:
    return target in XTENSA_TARGETS


def cross_compiler_for(target: str) -> str:
    """Name of the GCC cross-compiler that builds C code for ``target``."""
    if target not in KNOWN_TARGETS:
        raise ConfigurationError(f"Unknown target '{target}'")
    return XTENSA_GCC if is_xtensa(target) else RISCV_GCC


def parse_targets(raw: Union[str, Iterable[str], None]) -> List[str]:
    """
    Parse a target list into canonical, deduplicated target names.

    Accepts comma and/or whitespace separated strings or an iterable of
    such strings. ``all`` expands to every known target.

    Example:
        >>> parse_targets("esp32c3, esp32")
        ['esp32', 'esp32c3']

    Raises:
        ConfigurationError: On unknown target names or an empty list
    """
    if raw is None:
        raw = [ALL]
    if isinstance(raw, str):
        raw = [raw]

    names = set()
    for item in raw:
        for token in re.split(r"[,\s]+", item.strip().lower()):
            if not token:
                continue
            if token == ALL:
                names.update(KNOWN_TARGETS)
            elif token in KNOWN_TARGETS:
                names.add(token)
            else:
                raise ConfigurationError(
                    f"Unknown target '{token}'. "
                    f"Known targets: {', '.join(KNOWN_TARGETS)}, {ALL}"
                )

    if not names:
        raise ConfigurationError("At least one target must be requested")

    targets = [t for t in KNOWN_TARGETS if t in names]
    logger.debug(f"Targets: {', '.join(targets)}")
    return targets


def cross_compilers_for(targets: Iterable[str]) -> List[str]:
    """Distinct cross-compilers needed by ``targets``, Xtensa first."""
    needed = {cross_compiler_for(t) for t in targets}
    return [gcc for gcc in (XTENSA_GCC, RISCV_GCC) if gcc in needed]


# rustc targets for the RISC-V chips, served by the upstream rustup channels
RUST_TARGETS = {
    "esp32c2": "riscv32imc-unknown-none-elf",
    "esp32c3": "riscv32imc-unknown-none-elf",
    "esp32c6": "riscv32imac-unknown-none-elf",
    "esp32h2": "riscv32imac-unknown-none-elf",
    "esp32p4": "riscv32imafc-unknown-none-elf",
}


def rust_targets_for(targets: Iterable[str]) -> List[str]:
    """
    Distinct rustc targets the RISC-V chips in ``targets`` compile for.

    Xtensa chips are covered by the Xtensa Rust toolchain and need none.

    Example:
        >>> rust_targets_for(["esp32", "esp32c3", "esp32c6"])
        ['riscv32imac-unknown-none-elf', 'riscv32imc-unknown-none-elf']
    """
    return sorted({RUST_TARGETS[t] for t in targets if t in RUST_TARGETS})
