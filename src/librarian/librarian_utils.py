"""
This file contains various utility functions like hashing files, atomic writes and platform detection
"""

import hashlib
import os
import pathlib
import re
import shutil
import uuid
from enum import Enum
from typing import Tuple, Union

PathLike = Union[str, os.PathLike]

_VERSIONED_SO = re.compile(r"\.so(\.\d+)*$")


class PlatformFamily(str, Enum):
    """
    Platform families, as far as library file naming is concerned.
    """

    WINDOWS = "windows"
    APPLE = "apple"
    UNIX = "unix"


class PlatformUtils:
    """
    Maps target triples to library naming conventions.
    """

    @staticmethod
    def family_for_triple(target_triple: str) -> PlatformFamily:
        """
        Returns the platform family of a target triple, e.g.
        x86_64-pc-windows-msvc -> WINDOWS, aarch64-apple-darwin -> APPLE.
        """
        triple = target_triple.lower()
        if "windows" in triple:
            return PlatformFamily.WINDOWS
        if "apple" in triple or "darwin" in triple:
            return PlatformFamily.APPLE
        return PlatformFamily.UNIX

    @staticmethod
    def link_suffixes(family: PlatformFamily) -> Tuple[str, ...]:
        """Suffixes of files the linker can be pointed at for the given family."""
        if family == PlatformFamily.WINDOWS:
            return (".lib", ".a")
        if family == PlatformFamily.APPLE:
            return (".a", ".dylib")
        return (".a", ".so")

    @staticmethod
    def dylib_extension(family: PlatformFamily) -> str:
        if family == PlatformFamily.WINDOWS:
            return ".dll"
        if family == PlatformFamily.APPLE:
            return ".dylib"
        return ".so"

    @staticmethod
    def is_dynamic_library(file_name: str, family: PlatformFamily) -> bool:
        name = file_name.lower()
        if family == PlatformFamily.UNIX:
            return bool(_VERSIONED_SO.search(name))
        return name.endswith(PlatformUtils.dylib_extension(family))

    @staticmethod
    def is_link_library(file_name: str, family: PlatformFamily) -> bool:
        name = file_name.lower()
        if family == PlatformFamily.UNIX and _VERSIONED_SO.search(name):
            return True
        return name.endswith(PlatformUtils.link_suffixes(family))


class FileUtils:
    """
    Utility functions for hashing, writing and removing files
    """

    @staticmethod
    def file_digest(path: PathLike, algorithm: str = "sha256") -> str:
        """Compute the ``algorithm`` hex digest of the file at ``path``."""
        hasher = hashlib.new(algorithm)
        with open(path, "rb") as stream:
            for chunk in iter(lambda: stream.read(1 << 20), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    @staticmethod
    def sha256_file(path: PathLike) -> str:
        return FileUtils.file_digest(path, "sha256")

    @staticmethod
    def files_identical(first: PathLike, second: PathLike) -> bool:
        """
        Returns True if both files exist with the same size and content.
        Only reads, never writes.
        """
        first_path = pathlib.Path(first)
        second_path = pathlib.Path(second)
        if not first_path.is_file() or not second_path.is_file():
            return False
        if first_path.stat().st_size != second_path.stat().st_size:
            return False
        return FileUtils.sha256_file(first_path) == FileUtils.sha256_file(second_path)

    @staticmethod
    def atomic_write_text(path: PathLike, text: str) -> None:
        """
        Writes ``text`` to ``path`` so that readers see either the old file or
        the complete new one, and the new content is flushed to disk.
        """
        target = pathlib.Path(path)
        temp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, target)
        finally:
            if temp_path.exists():
                temp_path.unlink()

    @staticmethod
    def remove_path(path: PathLike) -> None:
        """Removes a file or a directory tree. A missing path is not an error."""
        target = pathlib.Path(path)
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()
