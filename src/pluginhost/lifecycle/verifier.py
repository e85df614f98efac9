"""
Package Verifier

Validates a downloaded plugin archive, extracts it into the operation's
staging directory and reads its manifest.

Checks, in order:
    1. The file is a readable zip or tar archive.
    2. No entry escapes the staging root (absolute paths, ``..``,
       links, devices) and the archive stays within size/entry limits.
       Every entry is checked before anything is written.
    3. A manifest exists at the root or inside a single top-level folder.
    4. The declared checksum, if any, matches the extracted content.
    5. The manifest signature, if a trusted key applies.
"""

from __future__ import annotations

import hashlib
import logging
import lzma
import stat
import tarfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath
from typing import BinaryIO, Optional

from cryptography.hazmat.primitives.asymmetric import ed25519

from pluginhost.exceptions import (
    ArchiveTooLargeError,
    ChecksumMismatchError,
    CorruptArchiveError,
    ManifestMismatchError,
    SignatureError,
    UnsafePathError,
    VerifyError,
)
from pluginhost.lifecycle.manifest import (
    PluginManifest,
    find_manifest,
    load_manifest,
)
from pluginhost.lifecycle.signing import verify_signature

logger = logging.getLogger(__name__)

_COPY_CHUNK = 64 * 1024
_IGNORED_TOP_LEVEL = frozenset({"__MACOSX"})


@dataclass
class VerifiedPackage:
    """A staged package that passed verification."""

    manifest: PluginManifest
    checksum: str
    root: Path


class PackageVerifier:
    """Verify and extract plugin archives.

    Args:
        max_extracted_bytes: Upper bound on the total uncompressed size.
        max_entries: Upper bound on the number of archive entries.
        trusted_keys: Mapping of manifest author to Ed25519 public key.
        require_signature: Reject packages without a trusted signature.
    """

    def __init__(
        self,
        max_extracted_bytes: int = 256 * 1024 * 1024,
        max_entries: int = 10_000,
        trusted_keys: Optional[dict[str, ed25519.Ed25519PublicKey]] = None,
        require_signature: bool = False,
    ) -> None:
        self.max_extracted_bytes = max_extracted_bytes
        self.max_entries = max_entries
        self._trusted_keys = trusted_keys or {}
        self._require_signature = require_signature

    def verify(
        self,
        raw_path: Path,
        extract_dir: Path,
        *,
        expected_id: Optional[str] = None,
    ) -> VerifiedPackage:
        """Verify *raw_path* and extract it below *extract_dir*.

        Args:
            raw_path: The downloaded archive.
            extract_dir: Staging directory private to the operation.
            expected_id: Plugin id the manifest must declare.

        Returns:
            The parsed manifest, computed checksum and package root.

        Raises:
            VerifyError: One of its subclasses for each failed check.
        """
        extract_dir.mkdir(parents=True, exist_ok=True)
        root = extract_dir.resolve()

        if zipfile.is_zipfile(raw_path):
            self._extract_zip(raw_path, root)
        elif _is_tarfile(raw_path):
            self._extract_tar(raw_path, root)
        else:
            raise CorruptArchiveError(f"Not a zip or tar archive: {raw_path.name}")

        package_root = _locate_package_root(root)
        manifest = load_manifest(package_root)
        if expected_id is not None and manifest.id != expected_id:
            raise ManifestMismatchError(
                f"Package declares plugin id {manifest.id!r}, expected {expected_id!r}"
            )

        checksum = compute_tree_checksum(package_root)
        if manifest.checksum and manifest.checksum != checksum:
            raise ChecksumMismatchError(
                f"Checksum mismatch for {manifest.id}@{manifest.version}: "
                f"declared {manifest.checksum}, computed {checksum}"
            )
        self._check_signature(manifest)

        logger.info("Verified %s@%s (sha256 %s)", manifest.id, manifest.version, checksum)
        return VerifiedPackage(manifest=manifest, checksum=checksum, root=package_root)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _extract_zip(self, raw_path: Path, root: Path) -> None:
        try:
            with zipfile.ZipFile(raw_path) as zf:
                infos = zf.infolist()
                planned = []
                for info in infos:
                    if _zip_is_symlink(info):
                        raise UnsafePathError(
                            f"Archive entry is a symbolic link: {info.filename!r}"
                        )
                    planned.append((info, _safe_target(root, info.filename, info.is_dir())))
                self._check_totals(len(infos), sum(info.file_size for info in infos))

                budget = self.max_extracted_bytes
                for info, target in planned:
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info) as src, open(target, "wb") as out:
                        budget = _copy_bounded(src, out, budget, info.filename)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, zlib.error) as exc:
            raise CorruptArchiveError(f"Corrupt zip archive: {exc}") from exc
        except (NotImplementedError, RuntimeError) as exc:
            raise CorruptArchiveError(f"Unsupported zip archive: {exc}") from exc
        except OSError as exc:
            raise VerifyError(f"Failed to extract archive: {exc}") from exc

    def _extract_tar(self, raw_path: Path, root: Path) -> None:
        try:
            with tarfile.open(raw_path, "r:*") as tf:
                members = tf.getmembers()
                planned = []
                for member in members:
                    if member.issym() or member.islnk():
                        raise UnsafePathError(f"Archive entry is a link: {member.name!r}")
                    if not (member.isfile() or member.isdir()):
                        raise UnsafePathError(f"Archive entry is a special file: {member.name!r}")
                    planned.append((member, _safe_target(root, member.name, member.isdir())))
                self._check_totals(
                    len(members), sum(m.size for m in members if m.isfile())
                )

                budget = self.max_extracted_bytes
                for member, target in planned:
                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    src = tf.extractfile(member)
                    if src is None:
                        raise CorruptArchiveError(f"Unreadable archive entry: {member.name!r}")
                    with src, open(target, "wb") as out:
                        budget = _copy_bounded(src, out, budget, member.name)
        except (tarfile.TarError, EOFError, zlib.error, lzma.LZMAError) as exc:
            raise CorruptArchiveError(f"Corrupt tar archive: {exc}") from exc
        except OSError as exc:
            raise CorruptArchiveError(f"Failed to extract archive: {exc}") from exc

    def _check_totals(self, entries: int, declared_bytes: int) -> None:
        if entries > self.max_entries:
            raise ArchiveTooLargeError(
                f"Archive has {entries} entries, limit is {self.max_entries}"
            )
        if declared_bytes > self.max_extracted_bytes:
            raise ArchiveTooLargeError(
                f"Archive expands to {declared_bytes} bytes, limit is {self.max_extracted_bytes}"
            )

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    def _check_signature(self, manifest: PluginManifest) -> None:
        key = self._trusted_keys.get(manifest.author) if manifest.author else None
        if manifest.signature and key is not None:
            verify_signature(manifest, key)
            if self._require_signature and not manifest.checksum:
                raise SignatureError(
                    f"Signed manifest for {manifest.id} must declare a content checksum"
                )
            return
        if self._require_signature:
            if not manifest.signature:
                raise SignatureError(f"Package {manifest.id}@{manifest.version} is not signed")
            raise SignatureError(f"No trusted key for author {manifest.author!r}")


def compute_tree_checksum(root: Path) -> str:
    """Return the sha256 content hash of the tree below *root*.

    Every regular file except the manifest picked by ``find_manifest``
    contributes its relative POSIX path and the sha256 of its content, in
    sorted path order. Other manifest-named files are hashed like any file.
    """
    manifest = find_manifest(root)
    entries: list[tuple[str, Path]] = []
    for path in root.rglob("*"):
        if path.is_symlink() or not path.is_file():
            continue
        rel = path.relative_to(root).as_posix()
        if manifest is not None and path == manifest:
            continue
        entries.append((rel, path))
    entries.sort(key=lambda item: item[0])

    digest = hashlib.sha256()
    for rel, path in entries:
        digest.update(rel.encode("utf-8"))
        digest.update(b"\0")
        digest.update(_file_digest(path))
    return digest.hexdigest()


def _file_digest(path: Path) -> bytes:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_COPY_CHUNK), b""):
            h.update(chunk)
    return h.digest()


def _safe_target(root: Path, name: str, is_dir: bool) -> Path:
    """Resolve an archive entry name below *root* or raise ``UnsafePathError``."""
    normalized = name.replace("\\", "/")
    if not normalized or "\x00" in normalized:
        raise UnsafePathError(f"Archive entry has an invalid name: {name!r}")
    if normalized.startswith("/") or PureWindowsPath(name).drive:
        raise UnsafePathError(f"Archive entry has an absolute path: {name!r}")
    target = (root / normalized).resolve()
    if target == root:
        if is_dir:
            return target
        raise UnsafePathError(f"Archive entry resolves to the staging root: {name!r}")
    if not target.is_relative_to(root):
        raise UnsafePathError(f"Archive entry escapes the staging root: {name!r}")
    return target


def _zip_is_symlink(info: zipfile.ZipInfo) -> bool:
    mode = info.external_attr >> 16
    return stat.S_ISLNK(mode)


def _copy_bounded(src: BinaryIO, out: BinaryIO, budget: int, name: str) -> int:
    """Copy *src* to *out*; raise once more than *budget* bytes were written."""
    while True:
        chunk = src.read(_COPY_CHUNK)
        if not chunk:
            return budget
        budget -= len(chunk)
        if budget < 0:
            raise ArchiveTooLargeError(f"Archive expands beyond the size limit at {name!r}")
        out.write(chunk)


def _is_tarfile(path: Path) -> bool:
    try:
        return tarfile.is_tarfile(path)
    except (OSError, tarfile.TarError):
        return False


def _locate_package_root(root: Path) -> Path:
    """Return the directory holding the manifest: *root* or its only subfolder."""
    if find_manifest(root) is not None:
        return root
    children = [child for child in root.iterdir() if child.name not in _IGNORED_TOP_LEVEL]
    if len(children) == 1 and children[0].is_dir() and find_manifest(children[0]) is not None:
        return children[0]
    # load_manifest raises the appropriate InvalidManifestError
    load_manifest(root)
    return root
