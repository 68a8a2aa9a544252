"""
File system utilities for espkit.

This module provides:
- Archive extraction (tar.gz, tar.xz, zip) preserving executable bits
- Safe file operations (atomic writes, guarded deletion, atomic promotion)
- Private staging directories that are always discarded

Compiler binaries must stay executable after extraction on POSIX hosts, so
zip members get their mode restored from the archive's external attributes.
"""

import enum
import errno
import os
import shutil
import stat
import sys
import tarfile
import tempfile
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Union

IS_WINDOWS = os.name == "nt"


class FilesystemError(Exception):
    """A staging, promotion or removal step failed on disk."""

    pass


class ArchiveExtractionError(FilesystemError):
    """A release archive could not be unpacked."""

    pass


class UnsupportedArchiveFormat(ArchiveExtractionError):
    """The archive encoding is none of tar.gz, tar.xz or zip."""

    pass


class InsecureArchiveError(ArchiveExtractionError):
    """An archive member would land outside the extraction directory."""

    pass


class ArchiveKind(str, enum.Enum):
    """Archive encodings used by release assets."""

    TAR_GZ = "tar.gz"
    TAR_XZ = "tar.xz"
    ZIP = "zip"

    @classmethod
    def from_filename(cls, filename: str) -> "ArchiveKind":
        """
        Detect the archive kind from a file name.

        Raises:
            UnsupportedArchiveFormat: If the extension is not recognised
        """
        name = filename.lower()
        if name.endswith(".zip"):
            return cls.ZIP
        if name.endswith((".tar.gz", ".tgz")):
            return cls.TAR_GZ
        if name.endswith(".tar.xz"):
            return cls.TAR_XZ
        raise UnsupportedArchiveFormat(
            f"Unsupported archive format: {filename}. Supported: .zip, .tar.gz, .tar.xz"
        )


_TAR_MODES = {ArchiveKind.TAR_GZ: "r:gz", ArchiveKind.TAR_XZ: "r:xz"}


# ============================================================================
# Path Utilities
# ============================================================================


def is_relative_to(path: Path, parent: Path) -> bool:
    """Check whether ``path`` is ``parent`` or lies below it."""
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


# ============================================================================
# Archive Extraction
# ============================================================================


def _validate_archive_path(path: str, destination: Path) -> None:
    root = destination.resolve()
    if not is_relative_to((root / path).resolve(), root):
        raise InsecureArchiveError(
            f"Refusing to extract '{path}': directory traversal outside {destination}"
        )


def extract_archive(
    archive_path: Union[str, Path],
    destination: Union[str, Path],
    kind: Optional[ArchiveKind] = None,
) -> None:
    """
    Unpack a release archive into ``destination``.

    Every member is checked before anything is written, so a hostile archive
    leaves no partial output behind.

    Args:
        archive_path: Downloaded archive
        destination: Extraction directory (created if missing)
        kind: Declared archive encoding; guessed from the file name when omitted

    Raises:
        UnsupportedArchiveFormat: For an unknown encoding
        InsecureArchiveError: For members escaping ``destination``
        ArchiveExtractionError: For damaged or truncated archives

    Example:
        >>> extract_archive('rust.tar.xz', '/tmp/stage', ArchiveKind.TAR_XZ)
    """
    archive = Path(archive_path)
    if not archive.is_file():
        raise ArchiveExtractionError(f"Archive not found: {archive}")

    kind = kind or ArchiveKind.from_filename(archive.name)
    target = Path(destination)
    target.mkdir(parents=True, exist_ok=True)

    try:
        if kind == ArchiveKind.ZIP:
            _extract_zip(archive, target)
        else:
            _extract_tar(archive, target, _TAR_MODES[kind])
    except ArchiveExtractionError:
        raise
    except (OSError, tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
        raise ArchiveExtractionError(f"{archive.name} is damaged or truncated: {e}") from e


def _extract_zip(archive: Path, destination: Path) -> None:
    # zipfile drops permission bits; they live in the high word of external_attr
    with zipfile.ZipFile(archive) as zf:
        members = zf.infolist()
        for member in members:
            _validate_archive_path(member.filename, destination)
        for member in members:
            extracted = Path(zf.extract(member, destination))
            mode = (member.external_attr >> 16) & 0o777
            if mode and not IS_WINDOWS and not member.is_dir():
                extracted.chmod(mode)


def _validate_tar_link(member: tarfile.TarInfo, destination: Path) -> None:
    root = destination.resolve()
    if member.issym():
        # Symlink targets are relative to the directory holding the link
        target = root / Path(member.name).parent / member.linkname
    else:
        target = root / member.linkname
    if not is_relative_to(target.resolve(), root):
        raise InsecureArchiveError(
            f"Refusing to extract link '{member.name}' -> '{member.linkname}': "
            f"target outside {destination}"
        )


def _extract_tar(archive: Path, destination: Path, mode: str) -> None:
    with tarfile.open(archive, mode) as tar:
        members = tar.getmembers()
        for member in members:
            _validate_archive_path(member.name, destination)
            if member.issym() or member.islnk():
                _validate_tar_link(member, destination)

        # The "data" filter keeps owner exec bits and rejects unsafe links
        if hasattr(tarfile, "data_filter"):
            tar.extractall(destination, filter="data")
        else:
            tar.extractall(destination)


def normalize_root_directory(extract_dir: Path) -> Path:
    """
    Return the directory holding an extracted archive's content.

    Espressif archives wrap everything in one top-level directory
    (``xtensa-esp-elf/``, ``esp-clang/``); that wrapper is skipped.
    """
    entries = list(extract_dir.iterdir())
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return extract_dir


# ============================================================================
# Safe File Operations
# ============================================================================


def atomic_write(
    file_path: Union[str, Path], content: Union[str, bytes], encoding: str = "utf-8"
) -> None:
    """
    Replace ``file_path`` in one rename.

    Readers see either the previous content or the new content. Used for
    manifests and activation scripts.
    """
    target = Path(file_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode(encoding) if isinstance(content, str) else content

    # Same directory keeps the rename on one filesystem
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp, target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def _clear_readonly(func, path, _exc):
    # Git checkouts on Windows contain read-only pack files
    os.chmod(path, stat.S_IWRITE)
    func(path)


def safe_rmtree(
    path: Union[str, Path], require_prefix: Optional[Union[str, Path]] = None
) -> None:
    """
    Delete a directory tree, optionally only inside ``require_prefix``.

    A missing path is not an error. ``require_prefix`` itself is never
    deleted.

    Raises:
        ValueError: If ``path`` is outside (or equal to) ``require_prefix``
        FilesystemError: If ``path`` is a file or removal fails

    Example:
        >>> safe_rmtree('/home/me/.espkit/installations/esp', require_prefix='/home/me/.espkit')
    """
    target = Path(path).resolve()

    if require_prefix is not None:
        root = Path(require_prefix).resolve()
        if target == root or not is_relative_to(target, root):
            raise ValueError(f"Refusing to delete '{target}' outside '{root}'")

    if not target.exists():
        return
    if not target.is_dir():
        raise FilesystemError(f"Cannot remove '{target}': not a directory")

    handler = {}
    if IS_WINDOWS:
        key = "onexc" if sys.version_info >= (3, 12) else "onerror"
        handler[key] = _clear_readonly
    try:
        shutil.rmtree(target, **handler)
    except OSError as e:
        raise FilesystemError(f"Failed to remove '{target}': {e}") from e


def promote_directory(staged: Union[str, Path], destination: Union[str, Path]) -> Path:
    """
    Move a fully prepared staged tree into its final location.

    The rename is atomic when staging and destination share a filesystem;
    otherwise the tree is copied next to the destination first and then
    renamed, so the destination is never observed half-populated.

    Raises:
        FilesystemError: If the destination already exists or the move fails
    """
    staged = Path(staged)
    destination = Path(destination)

    if destination.exists():
        raise FilesystemError(f"Destination already exists: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    try:
        os.replace(staged, destination)
        return destination
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise FilesystemError(
                f"Failed to move '{staged}' to '{destination}': {e}"
            ) from e

    sibling = Path(
        tempfile.mkdtemp(dir=destination.parent, prefix=f".{destination.name}.")
    )
    try:
        shutil.copytree(staged, sibling / "tree", symlinks=True)
        os.replace(sibling / "tree", destination)
    finally:
        safe_rmtree(sibling)
    return destination


def swap_directory(staged: Union[str, Path], destination: Union[str, Path]) -> Path:
    """
    Replace an existing ``destination`` with ``staged``, keeping a backup.

    The old tree is renamed to a hidden sibling first and restored if the
    promotion fails. The caller decides when to delete the returned backup
    (or to put it back with ``restore_backup``).

    Returns:
        Path of the backup holding the previous tree
    """
    destination = Path(destination)
    backup = Path(
        tempfile.mkdtemp(dir=destination.parent, prefix=f".{destination.name}.old-")
    )
    backup.rmdir()
    os.replace(destination, backup)

    try:
        promote_directory(staged, destination)
    except BaseException:
        os.replace(backup, destination)
        raise
    return backup


def restore_backup(backup: Union[str, Path], destination: Union[str, Path]) -> None:
    """Put a tree saved by ``swap_directory`` back in place."""
    destination = Path(destination)
    if destination.exists():
        safe_rmtree(destination)
    os.replace(backup, destination)


# ============================================================================
# Staging
# ============================================================================


@contextmanager
def temporary_directory(
    prefix: str = "espkit_", parent: Optional[Union[str, Path]] = None
):
    """
    Yield a private staging directory, removed on exit however the block ends.

    Example:
        >>> with temporary_directory(prefix="llvm-", parent=layout.staging_dir) as staging:
        ...     download_file(url, staging / "llvm.tar.xz")
    """
    if parent is not None:
        Path(parent).mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    try:
        yield staging
    finally:
        safe_rmtree(staging)


__all__ = [
    "FilesystemError",
    "ArchiveExtractionError",
    "UnsupportedArchiveFormat",
    "InsecureArchiveError",
    "ArchiveKind",
    "is_relative_to",
    "extract_archive",
    "normalize_root_directory",
    "atomic_write",
    "safe_rmtree",
    "promote_directory",
    "swap_directory",
    "restore_backup",
    "temporary_directory",
]
