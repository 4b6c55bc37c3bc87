"""
Shared fixtures for librarian tests.

Archives are built on the fly in tmp_path and served through file:// URLs,
so no test touches the network.
"""

import io
import pathlib
import tarfile
import zipfile
from typing import Callable, Dict

import pytest

from librarian.librarian_logger import LibrarianLogger
from librarian.library_cache import CacheManager


@pytest.fixture
def logger() -> LibrarianLogger:
    return LibrarianLogger()


@pytest.fixture
def make_zip(tmp_path) -> Callable[..., pathlib.Path]:
    """Returns a function building a zip archive from {member name: bytes}."""

    def _make(files: Dict[str, bytes], name: str = "archive.zip") -> pathlib.Path:
        path = tmp_path / "archives" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w") as archive:
            for member, data in files.items():
                archive.writestr(member, data)
        return path

    return _make


@pytest.fixture
def make_tar(tmp_path) -> Callable[..., pathlib.Path]:
    """Returns a function building a tar or tar.gz archive from {member name: bytes}."""

    def _make(files: Dict[str, bytes], name: str = "archive.tar.gz") -> pathlib.Path:
        path = tmp_path / "archives" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        mode = "w:gz" if name.endswith((".tar.gz", ".tgz")) else "w"
        with tarfile.open(path, mode) as archive:
            for member, data in files.items():
                info = tarfile.TarInfo(member)
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))
        return path

    return _make


@pytest.fixture
def cache_manager(tmp_path, logger) -> CacheManager:
    return CacheManager(tmp_path / "cache", logger, lock_timeout=5.0, poll_interval=0.01)
