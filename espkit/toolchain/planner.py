"""
Installation planning.

``build_plan`` is a pure function: it turns a request and the versions
resolved for it into the list of install operations, without touching the
network or the file system. The plan contains:

- one Rust toolchain operation and one LLVM operation, however many targets
  are requested;
- one operation per distinct GCC cross-compiler the targets need, unless
  the request is std-only (ESP-IDF then provides the C compilers);
- one operation adding the RISC-V rustc targets (and the standard library
  sources) to a rustup channel when a RISC-V chip is requested;
- one ESP-IDF operation when an SDK version was requested.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from espkit.core.config import DEFAULT_STABLE_VERSION
from espkit.core.directory import InstallLayout
from espkit.core.exceptions import ConfigurationError
from espkit.core.platform import HostPlatform
from espkit.toolchain.components import (
    COMPONENTS,
    ESP_IDF,
    LLVM,
    LLVM_EXTENDED,
    LLVM_MINIMAL,
    RISCV_RUST,
    XTENSA_RUST,
    Component,
    ComponentKind,
)
from espkit.toolchain.targets import cross_compilers_for, parse_targets, rust_targets_for
from espkit.toolchain.versions import SourceRefKind, VersionKind, VersionSpec

logger = logging.getLogger(__name__)

LLVM_DIR_NAME = "xtensa-esp32-elf-clang"
_CHANNEL_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass
class InstallRequest:
    """
    Everything the user asked for in one install or update.

    ``versions`` maps component names to their requested VersionSpec;
    components missing from it default to latest.
    """

    name: str
    host: HostPlatform
    layout: InstallLayout
    targets: List[str] = field(default_factory=lambda: ["all"])
    std_only: bool = False
    extended_llvm: bool = False
    versions: Dict[str, VersionSpec] = field(default_factory=dict)
    sdk_version: Optional[VersionSpec] = None
    sdk_minimal: bool = False
    stable_version: str = DEFAULT_STABLE_VERSION
    export_dir: Optional[Path] = None
    modify_env: bool = True

    def version_for(self, component: Component) -> VersionSpec:
        if component is ESP_IDF:
            return self.sdk_version or VersionSpec.latest()
        return self.versions.get(component.name, VersionSpec.latest())

    @property
    def root(self) -> Path:
        return self.layout.installation_root(self.name)


@dataclass(frozen=True)
class InstallOperation:
    """
    One component to install at one destination.

    Attributes:
        kind: Role of the component
        name: Component name
        version: Resolved version (git ref for the SDK)
        destination: Final directory of the component
        variant: LLVM flavour, or ESP-IDF storage profile
        depends_on: Keys of operations that must succeed first
        sdk_ref: Git reference to check out (SDK only)
        targets: Chip targets for the SDK, rustc targets for target support
        replace_existing: Swap out a different version already at destination
    """

    kind: ComponentKind
    name: str
    version: str
    destination: Path
    variant: Optional[str] = None
    depends_on: Tuple[str, ...] = ()
    sdk_ref: Optional[VersionSpec] = None
    targets: Tuple[str, ...] = ()
    replace_existing: bool = False

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.name}"

    @property
    def shared(self) -> bool:
        return self.kind.shared

    @property
    def component(self) -> Component:
        return COMPONENTS[self.name]

    def __str__(self) -> str:
        return f"{self.name} {self.version}"


@dataclass(frozen=True)
class InstallPlan:
    """Ordered, deduplicated install operations."""

    name: str
    targets: Tuple[str, ...]
    operations: Tuple[InstallOperation, ...]

    def __post_init__(self):
        keys = set()
        destinations = set()
        for op in self.operations:
            if op.key in keys:
                raise ConfigurationError(f"Component {op.name} is planned twice")
            if op.destination in destinations:
                raise ConfigurationError(
                    f"Two operations target the same destination: {op.destination}"
                )
            keys.add(op.key)
            destinations.add(op.destination)
        for op in self.operations:
            missing = [d for d in op.depends_on if d not in keys]
            if missing:
                raise ConfigurationError(
                    f"{op.name} depends on unplanned operations: {', '.join(missing)}"
                )

    def __iter__(self) -> Iterator[InstallOperation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def of_kind(self, kind: ComponentKind) -> List[InstallOperation]:
        return [op for op in self.operations if op.kind == kind]

    def get(self, key: str) -> Optional[InstallOperation]:
        for op in self.operations:
            if op.key == key:
                return op
        return None


def sdk_directory_name(ref: VersionSpec) -> str:
    """Filesystem-safe directory name for an SDK reference."""
    return re.sub(r"[^A-Za-z0-9._-]+", "-", ref.value).strip("-") or "default"


def build_plan(request: InstallRequest, resolved: Dict[str, str]) -> InstallPlan:
    """
    Build the install plan for ``request``.

    Args:
        request: What the user asked for
        resolved: Concrete versions keyed by component name

    Raises:
        ConfigurationError: On unknown targets, a missing resolved version,
            an invalid rustup channel or colliding destinations
    """
    targets = parse_targets(request.targets)
    root = request.root

    def version_of(component: Component) -> str:
        try:
            return resolved[component.name]
        except KeyError:
            raise ConfigurationError(f"No resolved version for {component.name}") from None

    operations = [
        InstallOperation(
            kind=XTENSA_RUST.kind,
            name=XTENSA_RUST.name,
            version=version_of(XTENSA_RUST),
            destination=request.layout.toolchain_dir(request.name),
        )
    ]

    llvm_version = version_of(LLVM)
    variant = LLVM_EXTENDED if request.extended_llvm else LLVM_MINIMAL
    llvm_dir = f"esp-{llvm_version}" + ("-extended" if request.extended_llvm else "")
    operations.append(
        InstallOperation(
            kind=LLVM.kind,
            name=LLVM.name,
            version=llvm_version,
            destination=root / LLVM_DIR_NAME / llvm_dir,
            variant=variant,
        )
    )

    if not request.std_only:
        for gcc_name in cross_compilers_for(targets):
            gcc = COMPONENTS[gcc_name]
            version = version_of(gcc)
            operations.append(
                InstallOperation(
                    kind=gcc.kind,
                    name=gcc.name,
                    version=version,
                    destination=root / gcc.name / f"esp-{version}",
                )
            )

    rust_targets = rust_targets_for(targets)
    if rust_targets:
        channel = request.stable_version
        if not _CHANNEL_PATTERN.match(channel):
            raise ConfigurationError(f"Invalid rustup channel '{channel}'")
        operations.append(
            InstallOperation(
                kind=RISCV_RUST.kind,
                name=RISCV_RUST.name,
                version=channel,
                destination=request.layout.toolchain_dir(f"{channel}-{request.host.triple}"),
                targets=tuple(rust_targets),
            )
        )

    if request.sdk_version is not None:
        ref = _sdk_ref(request.sdk_version, version_of(ESP_IDF))
        operations.append(
            InstallOperation(
                kind=ESP_IDF.kind,
                name=ESP_IDF.name,
                version=str(ref),
                destination=root / ESP_IDF.name / sdk_directory_name(ref),
                variant="minimal" if request.sdk_minimal else "full",
                sdk_ref=ref,
                targets=tuple(targets),
            )
        )

    plan = InstallPlan(name=request.name, targets=tuple(targets), operations=tuple(operations))
    logger.debug(
        f"Planned {len(plan)} operation(s) for '{request.name}': "
        + ", ".join(str(op) for op in plan)
    )
    return plan


def _sdk_ref(spec: VersionSpec, resolved: str) -> VersionSpec:
    if spec.kind == VersionKind.SOURCE_REF:
        return spec
    return VersionSpec.source_ref(SourceRefKind.BRANCH, resolved)
