"""Shared fixtures and archive builders for pluginhost tests."""

from __future__ import annotations

import io
import tarfile
import zipfile
from pathlib import Path
from typing import Iterator, Optional

import httpx
import pytest
import yaml

from pluginhost.lifecycle.coordinator import InstallCoordinator
from pluginhost.lifecycle.fetcher import ArchiveFetcher, RetryPolicy
from pluginhost.lifecycle.registry import PluginRegistry
from pluginhost.lifecycle.verifier import PackageVerifier, compute_tree_checksum

DEFAULT_FILES = {
    "main.py": b"def run():\n    return 'ok'\n",
    "lib/helpers.py": b"VALUE = 42\n",
}


# ---------------------------------------------------------------------------
# Archive builders
# ---------------------------------------------------------------------------


def package_files(
    plugin_id: str = "demo",
    version: str = "1.0.0",
    files: Optional[dict[str, bytes]] = None,
    **manifest_fields: object,
) -> dict[str, bytes]:
    """Return the entries of a plugin package: manifest plus content files."""
    manifest = {"id": plugin_id, "version": version, **manifest_fields}
    entries = {"plugin.yaml": yaml.safe_dump(manifest).encode()}
    entries.update(DEFAULT_FILES if files is None else files)
    return entries


def content_checksum(tmp_path: Path, files: Optional[dict[str, bytes]] = None) -> str:
    """Compute the tree checksum the verifier will compute for *files*."""
    root = tmp_path / "checksum-src"
    for name, data in (DEFAULT_FILES if files is None else files).items():
        target = root / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
    root.mkdir(parents=True, exist_ok=True)
    return compute_tree_checksum(root)


def zip_bytes(entries: dict[str, bytes], prefix: str = "") -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in entries.items():
            zf.writestr(prefix + name, data)
    return buffer.getvalue()


def write_zip(path: Path, entries: dict[str, bytes], prefix: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(zip_bytes(entries, prefix))
    return path


def write_tar(path: Path, entries: dict[str, bytes], prefix: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tf:
        for name, data in entries.items():
            info = tarfile.TarInfo(prefix + name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return path


def mock_client(routes: dict[str, bytes]) -> httpx.Client:
    """An httpx client answering GET <url> with the bytes in *routes*."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = routes.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)

    return httpx.Client(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def plugins_dir(tmp_path: Path) -> Path:
    return tmp_path / "plugins"


@pytest.fixture()
def staging_dir(tmp_path: Path) -> Path:
    return tmp_path / "staging"


@pytest.fixture()
def registry_path(tmp_path: Path) -> Path:
    return tmp_path / "registry.json"


@pytest.fixture()
def registry(registry_path: Path) -> PluginRegistry:
    return PluginRegistry(storage_path=registry_path)


@pytest.fixture()
def fetcher() -> Iterator[ArchiveFetcher]:
    fetcher = ArchiveFetcher(retry=RetryPolicy(max_retries=0))
    yield fetcher
    fetcher.close()


@pytest.fixture()
def coordinator(
    registry: PluginRegistry,
    fetcher: ArchiveFetcher,
    plugins_dir: Path,
    staging_dir: Path,
) -> InstallCoordinator:
    return InstallCoordinator(
        registry=registry,
        fetcher=fetcher,
        verifier=PackageVerifier(),
        plugins_dir=plugins_dir,
        staging_dir=staging_dir,
    )


@pytest.fixture()
def demo_archive(tmp_path: Path) -> Path:
    return write_zip(tmp_path / "archives" / "demo-1.0.0.zip", package_files())
