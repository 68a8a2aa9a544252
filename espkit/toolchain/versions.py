"""
Version specifiers and their resolution.

Accepted forms:

================  ==============================  ==========================
Component         Exact                           Incomplete
================  ==============================  ==========================
xtensa-rust       ``1.85.0.0``                    ``1``, ``1.85``, ``1.85.0``
llvm / GCC        ``19.1.2_20250225``             ``19``, ``19.1``, ``19.1.2``
================  ==============================  ==========================

``latest`` (or no value) selects the highest published stable release.
The SDK takes git references instead: ``commit:<sha>``, ``tag:<tag>``,
``branch:<name>``; ``v5.1`` or ``5.1`` mean the tag ``v5.1`` and any other
string is taken as a branch name.
"""

import enum
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from packaging.version import InvalidVersion, Version

from espkit.core.exceptions import ConfigurationError, UnresolvableVersion
from espkit.toolchain.components import INCOMPLETE_VERSION, Component, ComponentKind

if TYPE_CHECKING:
    from espkit.toolchain.releases import ReleaseLocator

logger = logging.getLogger(__name__)

SDK_DEFAULT_BRANCH = "master"

_SDK_TAG = re.compile(r"^v?\d+\.\d+(\.\d+)?$")


class VersionKind(str, enum.Enum):
    EXACT = "exact"
    INCOMPLETE = "incomplete"
    SOURCE_REF = "source-ref"
    LATEST = "latest"


class SourceRefKind(str, enum.Enum):
    COMMIT = "commit"
    TAG = "tag"
    BRANCH = "branch"


@dataclass(frozen=True)
class VersionSpec:
    """A component version request; exactly one variant is active."""

    kind: VersionKind
    value: Optional[str] = None
    ref_kind: Optional[SourceRefKind] = None

    @classmethod
    def exact(cls, value: str) -> "VersionSpec":
        return cls(VersionKind.EXACT, value)

    @classmethod
    def incomplete(cls, value: str) -> "VersionSpec":
        return cls(VersionKind.INCOMPLETE, value)

    @classmethod
    def source_ref(cls, ref_kind: SourceRefKind, value: str) -> "VersionSpec":
        return cls(VersionKind.SOURCE_REF, value, SourceRefKind(ref_kind))

    @classmethod
    def latest(cls) -> "VersionSpec":
        return cls(VersionKind.LATEST)

    def __post_init__(self):
        if self.kind == VersionKind.LATEST:
            if self.value is not None or self.ref_kind is not None:
                raise ValueError("Latest takes no value")
        elif not self.value:
            raise ValueError(f"{self.kind.value} version requires a value")
        if (self.ref_kind is not None) != (self.kind == VersionKind.SOURCE_REF):
            raise ValueError("ref_kind is only valid for source references")

    def __str__(self) -> str:
        if self.kind == VersionKind.LATEST:
            return "latest"
        if self.kind == VersionKind.SOURCE_REF:
            return f"{self.ref_kind.value}:{self.value}"
        return self.value


def version_key(version: str) -> Version:
    """
    Sort key for published versions.

    Espressif builds carry a date suffix (``19.1.2_20250225``) that sorts as
    a fourth release component.
    """
    try:
        return Version(version.replace("_", "."))
    except InvalidVersion:
        return Version("0")


def _release_parts(version: str) -> List[str]:
    return version.split("_", 1)[0].split(".")


def parse_version_spec(
    component: Component, raw: Optional[str], skip_parse: bool = False
) -> VersionSpec:
    """
    Turn user input into a VersionSpec for ``component``.

    Args:
        component: Component the version is for
        raw: User-supplied text (None or empty means latest)
        skip_parse: Accept any non-empty string as an exact version

    Raises:
        ConfigurationError: If the text matches no accepted form, or a git
            reference is given for something other than the SDK
    """
    text = (raw or "").strip()

    if not text or text.lower() == "latest":
        return VersionSpec.latest()

    prefix, sep, rest = text.partition(":")
    if sep and prefix in {k.value for k in SourceRefKind}:
        if component.kind != ComponentKind.SDK:
            raise ConfigurationError(
                f"Git reference '{text}' is only valid for the SDK, not {component.name}"
            )
        if not rest:
            raise ConfigurationError(f"Empty {prefix} reference for {component.name}")
        return VersionSpec.source_ref(SourceRefKind(prefix), rest)

    if component.kind == ComponentKind.SDK:
        if _SDK_TAG.match(text):
            tag = text if text.startswith("v") else f"v{text}"
            return VersionSpec.source_ref(SourceRefKind.TAG, tag)
        return VersionSpec.source_ref(SourceRefKind.BRANCH, text)

    text = component.strip_prefix(text)

    if skip_parse:
        return VersionSpec.exact(text)
    if component.version_pattern is not None and component.version_pattern.match(text):
        return VersionSpec.exact(text)
    if INCOMPLETE_VERSION.match(text):
        return VersionSpec.incomplete(text)

    raise ConfigurationError(
        f"Invalid version '{raw}' for {component.name}. "
        f"Expected 'latest', a full version matching {component.version_pattern.pattern}, "
        "or a dotted prefix such as '1.2'."
    )


def complete_version(component: Component, partial: str, published: List[str]) -> str:
    """
    Pick the highest published version whose leading components equal ``partial``.

    Raises:
        UnresolvableVersion: If nothing matches
    """
    wanted = partial.split(".")
    candidates = [v for v in published if _release_parts(v)[: len(wanted)] == wanted]
    if not candidates:
        raise UnresolvableVersion(
            component.name, partial, "no published release starts with that version"
        )
    return max(candidates, key=version_key)


class VersionResolver:
    """
    Turn VersionSpecs into concrete version strings.

    Exact versions and SDK references resolve without I/O; ``latest`` and
    incomplete versions ask the release locator.
    """

    def __init__(self, locator: "ReleaseLocator"):
        self.locator = locator

    def resolve(self, component: Component, spec: VersionSpec) -> str:
        """
        Raises:
            ConfigurationError: For a git reference on a non-SDK component
            UnresolvableVersion: If an incomplete version has no completion
        """
        if spec.kind == VersionKind.SOURCE_REF:
            if component.kind != ComponentKind.SDK:
                raise ConfigurationError(
                    f"Git reference '{spec}' is only valid for the SDK, not {component.name}"
                )
            return spec.value

        if component.kind == ComponentKind.SDK:
            if spec.kind == VersionKind.LATEST:
                return SDK_DEFAULT_BRANCH
            return spec.value

        if spec.kind == VersionKind.EXACT:
            return spec.value

        if spec.kind == VersionKind.LATEST:
            version = self.locator.latest_version(component)
            logger.info(f"Latest {component.name} release: {version}")
            return version

        version = complete_version(component, spec.value, self.locator.versions(component))
        logger.info(f"Resolved {component.name} {spec.value} to {version}")
        return version
