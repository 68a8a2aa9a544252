"""
Manifest store for named installations.

A manifest records exactly which components an installation owns: kind,
version and on-disk path for each, plus the request that produced them.
Update and uninstall read it; nothing else is allowed to write it.

Manifests are JSON files at ``<espkit home>/manifests/<name>.json`` and are
written atomically. A manifest that cannot be read safely is reported as
corrupt with reinstall guidance, never repaired silently.

Example:
    >>> store = ManifestStore(layout.manifests_dir)
    >>> manifest = store.load("esp")
    >>> for record in manifest.components:
    ...     print(record.name, record.version, record.path)
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from espkit.core.exceptions import ConfigurationError, ManifestCorrupt, NotInstalled
from espkit.core.filesystem import atomic_write

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_installation_name(name: str) -> str:
    """
    Check that an installation name is usable as a file and directory name.

    Raises:
        ConfigurationError: If the name is empty or contains path separators
    """
    if not name or not _NAME_PATTERN.match(name):
        raise ConfigurationError(
            f"Invalid installation name '{name}'. Use letters, digits, '.', '_' or '-'."
        )
    return name


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@dataclass
class ComponentRecord:
    """
    One installed component.

    ``targets`` lists the rustc targets a target-support record added to its
    rustup channel; it is empty for every other kind.
    """

    kind: str
    name: str
    version: str
    path: str
    shared: bool = False
    variant: Optional[str] = None
    installed_at: str = field(default_factory=utc_now)
    targets: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.name}"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "name": self.name,
            "version": self.version,
            "path": self.path,
            "shared": self.shared,
            "variant": self.variant,
            "installed_at": self.installed_at,
            "targets": list(self.targets),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ComponentRecord":
        return cls(
            kind=data["kind"],
            name=data["name"],
            version=data["version"],
            path=data["path"],
            shared=bool(data.get("shared", False)),
            variant=data.get("variant"),
            installed_at=data.get("installed_at", ""),
            targets=list(data.get("targets") or []),
        )


@dataclass
class Manifest:
    """
    Persisted state of one named installation.

    Attributes:
        name: Installation name
        host: Host triple the components were built for
        targets: Chip targets the installation was requested for
        std_only: Whether cross-compilers were skipped
        extended_llvm: Whether the full LLVM variant was requested
        export_dir: Directory holding the activation scripts
        components: Installed components
    """

    name: str
    host: str
    targets: List[str] = field(default_factory=list)
    std_only: bool = False
    extended_llvm: bool = False
    export_dir: Optional[str] = None
    components: List[ComponentRecord] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    schema_version: int = SCHEMA_VERSION

    def component(self, key: str) -> Optional[ComponentRecord]:
        """Find a component record by its ``kind:name`` key."""
        for record in self.components:
            if record.key == key:
                return record
        return None

    def upsert(self, record: ComponentRecord) -> None:
        """Add a record, replacing any existing record with the same key."""
        self.components = [c for c in self.components if c.key != record.key]
        self.components.append(record)

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "name": self.name,
            "host": self.host,
            "targets": list(self.targets),
            "std_only": self.std_only,
            "extended_llvm": self.extended_llvm,
            "export_dir": self.export_dir,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "components": [c.to_dict() for c in self.components],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Manifest":
        return cls(
            schema_version=data["schema_version"],
            name=data["name"],
            host=data["host"],
            targets=list(data.get("targets", [])),
            std_only=bool(data.get("std_only", False)),
            extended_llvm=bool(data.get("extended_llvm", False)),
            export_dir=data.get("export_dir"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            components=[ComponentRecord.from_dict(c) for c in data["components"]],
        )


class ManifestStore:
    """
    Owns the manifest files under one directory.

    Attributes:
        root: Directory holding ``<name>.json`` files
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, name: str) -> Path:
        return self.root / f"{validate_installation_name(name)}.json"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def list_names(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))

    def load(self, name: str) -> Manifest:
        """
        Load the manifest of an installation.

        Raises:
            NotInstalled: If no manifest exists for ``name``
            ManifestCorrupt: If the file is unreadable or from an unknown schema
        """
        path = self.path_for(name)
        if not path.exists():
            raise NotInstalled(name)

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestCorrupt(str(path), f"invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ManifestCorrupt(str(path), "expected a JSON object")

        version = data.get("schema_version")
        if version is None:
            raise ManifestCorrupt(str(path), "legacy format without schema_version")
        if version != SCHEMA_VERSION:
            raise ManifestCorrupt(
                str(path),
                f"schema version {version} is not supported (expected {SCHEMA_VERSION})",
            )

        try:
            manifest = Manifest.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ManifestCorrupt(str(path), f"missing or invalid field {e}") from e

        if manifest.name != name:
            raise ManifestCorrupt(
                str(path), f"records installation '{manifest.name}', not '{name}'"
            )

        logger.debug(f"Loaded manifest {path} ({len(manifest.components)} components)")
        return manifest

    def save(self, manifest: Manifest) -> Path:
        """Atomically overwrite the manifest for ``manifest.name``."""
        path = self.path_for(manifest.name)
        atomic_write(path, json.dumps(manifest.to_dict(), indent=2) + "\n")
        logger.debug(f"Saved manifest {path}")
        return path

    def delete(self, name: str) -> None:
        """Remove the manifest record; referenced paths are the caller's job."""
        path = self.path_for(name)
        if not path.exists():
            raise NotInstalled(name)
        path.unlink()
        logger.debug(f"Deleted manifest {path}")
