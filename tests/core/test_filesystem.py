"""
Unit tests for filesystem utilities.

Tests archive extraction, atomic writes, guarded deletion and directory
promotion.
"""

import errno
import os
import stat
import io
import sys
import tarfile
from unittest.mock import patch

import pytest

from espkit.core.filesystem import (
    ArchiveExtractionError,
    ArchiveKind,
    FilesystemError,
    InsecureArchiveError,
    UnsupportedArchiveFormat,
    atomic_write,
    extract_archive,
    is_relative_to,
    normalize_root_directory,
    promote_directory,
    restore_backup,
    safe_rmtree,
    swap_directory,
    temporary_directory,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")


class TestArchiveKind:
    """Test archive kind detection."""

    @pytest.mark.parametrize(
        "filename,kind",
        [
            ("rust-1.85.0.0-x86_64-unknown-linux-gnu.tar.xz", ArchiveKind.TAR_XZ),
            ("idf.tar.gz", ArchiveKind.TAR_GZ),
            ("idf.tgz", ArchiveKind.TAR_GZ),
            ("xtensa-esp-elf-14.2.0_20241119-x86_64-w64-mingw32.ZIP", ArchiveKind.ZIP),
        ],
    )
    def test_from_filename(self, filename, kind):
        """Test detection from file extensions."""
        assert ArchiveKind.from_filename(filename) == kind

    def test_unknown_extension(self):
        """Test unknown extensions raise."""
        with pytest.raises(UnsupportedArchiveFormat, match="Unsupported archive format"):
            ArchiveKind.from_filename("toolchain.rar")


class TestExtractArchive:
    """Test extract_archive function."""

    def test_extract_tar_xz(self, tmp_path, make_archive):
        """Test tar.xz extraction."""
        archive = make_archive(
            "gcc.tar.xz",
            {"xtensa-esp-elf/": b"", "xtensa-esp-elf/bin/gcc": "#!/bin/sh\n"},
        )
        dest = tmp_path / "out"

        extract_archive(archive, dest)

        assert (dest / "xtensa-esp-elf" / "bin" / "gcc").read_text() == "#!/bin/sh\n"

    def test_extract_tar_gz_with_declared_kind(self, tmp_path, make_archive):
        """Test the declared kind wins over the file name."""
        archive = make_archive("data.tar.gz", {"file.txt": "hello"})
        renamed = archive.with_name("download.bin")
        archive.rename(renamed)

        extract_archive(renamed, tmp_path / "out", ArchiveKind.TAR_GZ)

        assert (tmp_path / "out" / "file.txt").read_text() == "hello"

    @posix_only
    def test_tar_preserves_exec_bit(self, tmp_path, make_archive):
        """Test executables stay executable after tar extraction."""
        archive = make_archive("gcc.tar.xz", {"bin/gcc": ("elf", 0o755)})

        extract_archive(archive, tmp_path / "out")

        assert os.stat(tmp_path / "out" / "bin" / "gcc").st_mode & stat.S_IXUSR

    @posix_only
    def test_zip_preserves_exec_bit(self, tmp_path, make_archive):
        """Test zip members get their POSIX mode restored."""
        archive = make_archive(
            "clang.zip",
            {"esp-clang/bin/clang": ("elf", 0o755), "esp-clang/README": ("text", 0o644)},
        )

        extract_archive(archive, tmp_path / "out")

        clang = tmp_path / "out" / "esp-clang" / "bin" / "clang"
        readme = tmp_path / "out" / "esp-clang" / "README"
        assert os.stat(clang).st_mode & stat.S_IXUSR
        assert not os.stat(readme).st_mode & stat.S_IXUSR

    def test_traversal_blocked(self, tmp_path, make_archive):
        """Test members escaping the destination are rejected."""
        archive = make_archive("evil.zip", {"../escape.txt": "x"})

        with pytest.raises(InsecureArchiveError, match="directory traversal"):
            extract_archive(archive, tmp_path / "out")
        assert not (tmp_path / "escape.txt").exists()

    def _link_archive(self, path, link_type, linkname):
        with tarfile.open(path, "w:gz") as tar:
            link = tarfile.TarInfo("pkg/escape")
            link.type = link_type
            link.linkname = linkname
            tar.addfile(link)
            data = b"owned"
            member = tarfile.TarInfo("pkg/escape/owned.txt")
            member.size = len(data)
            tar.addfile(member, io.BytesIO(data))
        return path

    @posix_only
    def test_symlink_escape_blocked(self, tmp_path):
        """Test a symlink pointing outside cannot be used to write there."""
        outside = tmp_path / "outside"
        outside.mkdir()
        archive = self._link_archive(tmp_path / "evil.tar.gz", tarfile.SYMTYPE, str(outside))

        with pytest.raises(InsecureArchiveError, match="target outside"):
            extract_archive(archive, tmp_path / "out")
        assert not (outside / "owned.txt").exists()
        assert not (tmp_path / "out" / "pkg" / "escape").exists()

    @posix_only
    def test_relative_symlink_escape_blocked(self, tmp_path):
        """Test relative symlink targets are resolved from the link's directory."""
        (tmp_path / "outside").mkdir()
        archive = self._link_archive(
            tmp_path / "evil.tar.gz", tarfile.SYMTYPE, "../../outside"
        )

        with pytest.raises(InsecureArchiveError, match="target outside"):
            extract_archive(archive, tmp_path / "out")
        assert not (tmp_path / "outside" / "owned.txt").exists()

    def test_hardlink_escape_blocked(self, tmp_path):
        """Test hard links to files outside the destination are rejected."""
        archive = self._link_archive(tmp_path / "evil.tar.gz", tarfile.LNKTYPE, "../secret")

        with pytest.raises(InsecureArchiveError, match="target outside"):
            extract_archive(archive, tmp_path / "out")

    @posix_only
    def test_internal_symlink_kept(self, tmp_path):
        """Test links that stay inside the archive are extracted."""
        archive = tmp_path / "links.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            data = b"#!/bin/sh\n"
            real = tarfile.TarInfo("pkg/bin/clang-19")
            real.size = len(data)
            real.mode = 0o755
            tar.addfile(real, io.BytesIO(data))
            link = tarfile.TarInfo("pkg/bin/clang")
            link.type = tarfile.SYMTYPE
            link.linkname = "clang-19"
            tar.addfile(link)

        extract_archive(archive, tmp_path / "out")

        clang = tmp_path / "out" / "pkg" / "bin" / "clang"
        assert clang.is_symlink()
        assert clang.read_bytes() == b"#!/bin/sh\n"

    def test_missing_archive(self, tmp_path):
        """Test missing archive raises."""
        with pytest.raises(ArchiveExtractionError, match="Archive not found"):
            extract_archive(tmp_path / "missing.tar.xz", tmp_path / "out")

    def test_corrupt_archive(self, tmp_path):
        """Test damaged archives raise ArchiveExtractionError."""
        archive = tmp_path / "broken.zip"
        archive.write_bytes(b"not a zip")

        with pytest.raises(ArchiveExtractionError, match="damaged or truncated"):
            extract_archive(archive, tmp_path / "out")


class TestNormalizeRootDirectory:
    """Test normalize_root_directory."""

    def test_single_root(self, tmp_path):
        """Test a single top-level directory is returned."""
        (tmp_path / "xtensa-esp-elf" / "bin").mkdir(parents=True)
        assert normalize_root_directory(tmp_path) == tmp_path / "xtensa-esp-elf"

    def test_flat_archive(self, tmp_path):
        """Test flat archives keep the extraction directory."""
        (tmp_path / "bin").mkdir()
        (tmp_path / "README").write_text("x")
        assert normalize_root_directory(tmp_path) == tmp_path


class TestAtomicWrite:
    """Test atomic_write."""

    def test_write_text(self, tmp_path):
        """Test text content and parent creation."""
        target = tmp_path / "nested" / "manifest.json"
        atomic_write(target, "{}")
        assert target.read_text() == "{}"

    def test_write_bytes_keeps_line_endings(self, tmp_path):
        """Test bytes are written verbatim."""
        target = tmp_path / "export-esp.bat"
        atomic_write(target, b"@echo off\r\n")
        assert target.read_bytes() == b"@echo off\r\n"

    def test_failure_keeps_original(self, tmp_path):
        """Test a failed replace leaves the old file and no temp files."""
        target = tmp_path / "file.txt"
        target.write_text("original")

        with patch("pathlib.Path.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                atomic_write(target, "new")

        assert target.read_text() == "original"
        assert [p.name for p in tmp_path.iterdir()] == ["file.txt"]


class TestSafeRmtree:
    """Test safe_rmtree."""

    def test_remove_under_prefix(self, tmp_path):
        """Test deletion inside the required prefix."""
        victim = tmp_path / "installations" / "esp"
        (victim / "bin").mkdir(parents=True)

        safe_rmtree(victim, require_prefix=tmp_path / "installations")

        assert not victim.exists()

    def test_refuses_outside_prefix(self, tmp_path):
        """Test paths outside the prefix are refused."""
        outside = tmp_path / "elsewhere"
        outside.mkdir()

        with pytest.raises(ValueError, match="Refusing to delete"):
            safe_rmtree(outside, require_prefix=tmp_path / "installations")
        assert outside.exists()

    def test_refuses_prefix_itself(self, tmp_path):
        """Test the prefix directory itself is never deleted."""
        with pytest.raises(ValueError, match="Refusing to delete"):
            safe_rmtree(tmp_path, require_prefix=tmp_path)

    def test_missing_is_noop(self, tmp_path):
        """Test removing a missing directory does nothing."""
        safe_rmtree(tmp_path / "missing")

    def test_file_rejected(self, tmp_path):
        """Test files are not removed by safe_rmtree."""
        path = tmp_path / "file"
        path.write_text("x")
        with pytest.raises(FilesystemError, match="not a directory"):
            safe_rmtree(path)


class TestPromoteDirectory:
    """Test promote_directory and swap_directory."""

    def test_promote(self, tmp_path):
        """Test the staged tree moves into place."""
        staged = tmp_path / "staging" / "tree"
        staged.mkdir(parents=True)
        (staged / "bin").mkdir()
        dest = tmp_path / "installations" / "esp" / "gcc"

        promote_directory(staged, dest)

        assert (dest / "bin").is_dir()
        assert not staged.exists()

    def test_promote_refuses_existing(self, tmp_path):
        """Test an existing destination is never merged into."""
        staged = tmp_path / "staged"
        staged.mkdir()
        dest = tmp_path / "dest"
        dest.mkdir()

        with pytest.raises(FilesystemError, match="already exists"):
            promote_directory(staged, dest)

    def test_promote_across_filesystems(self, tmp_path):
        """Test the copy fallback when rename crosses devices."""
        staged = tmp_path / "staged"
        (staged / "bin").mkdir(parents=True)
        (staged / "bin" / "gcc").write_text("elf")
        dest = tmp_path / "dest"
        real_replace = os.replace
        calls = []

        def cross_device(src, dst):
            calls.append((src, dst))
            if len(calls) == 1:
                raise OSError(errno.EXDEV, "Invalid cross-device link")
            return real_replace(src, dst)

        with patch("espkit.core.filesystem.os.replace", side_effect=cross_device):
            promote_directory(staged, dest)

        assert (dest / "bin" / "gcc").read_text() == "elf"
        assert [p.name for p in tmp_path.iterdir() if p.name.startswith(".")] == []

    def test_swap_and_restore(self, tmp_path):
        """Test swap keeps a backup that restore_backup puts back."""
        dest = tmp_path / "toolchain"
        dest.mkdir()
        (dest / "version").write_text("1.84.0.0")
        staged = tmp_path / "staged"
        staged.mkdir()
        (staged / "version").write_text("1.85.0.0")

        backup = swap_directory(staged, dest)

        assert (dest / "version").read_text() == "1.85.0.0"
        assert (backup / "version").read_text() == "1.84.0.0"

        restore_backup(backup, dest)

        assert (dest / "version").read_text() == "1.84.0.0"
        assert not backup.exists()


class TestTemporaryDirectory:
    """Test temporary_directory."""

    def test_removed_on_error(self, tmp_path):
        """Test the directory is removed when the body raises."""
        with pytest.raises(RuntimeError):
            with temporary_directory(parent=tmp_path / "staging") as tmp:
                (tmp / "partial.tar.xz").write_bytes(b"x")
                raise RuntimeError("boom")

        assert list((tmp_path / "staging").iterdir()) == []


def test_is_relative_to(tmp_path):
    """Test is_relative_to helper."""
    assert is_relative_to(tmp_path / "a" / "b", tmp_path)
    assert not is_relative_to(tmp_path, tmp_path / "a")
