"""
Archive extraction.

Each ArchiveFormat maps to one handler; supporting a new format means adding
an enum member and a handler to the table, nothing else.
"""

import gzip
import logging
import os
import pathlib
import shutil
import stat
import tarfile
import zipfile
import zlib
from pathlib import PurePosixPath
from typing import Callable, Dict, List

from librarian.librarian_exceptions import CacheError, ExtractionError
from librarian.librarian_logger import LibrarianLogger
from librarian.library_models import ArchiveFormat

_ARCHIVE_ERRORS = (
    zipfile.BadZipFile,
    tarfile.TarError,
    zlib.error,
    gzip.BadGzipFile,
    EOFError,
    NotImplementedError,
)


def _safe_member_path(member_name: str, archive: pathlib.Path) -> PurePosixPath:
    """Rejects absolute paths and parent references in archive member names."""
    normalized = member_name.replace("\\", "/")
    relative = PurePosixPath(normalized)
    if relative.is_absolute() or (relative.parts and relative.parts[0].endswith(":")):
        raise ExtractionError(
            f"Unsafe absolute path in archive: {member_name}",
            resource=str(archive),
        )
    if any(part == ".." for part in relative.parts):
        raise ExtractionError(
            f"Unsafe path in archive: {member_name}",
            resource=str(archive),
        )
    return relative


class ArchiveExtractor:
    """
    Extracts zip, tar and tar.gz archives into a directory.
    """

    def __init__(self, logger: LibrarianLogger):
        self.logger = logger
        self._handlers: Dict[ArchiveFormat, Callable[[pathlib.Path, pathlib.Path], None]] = {
            ArchiveFormat.ZIP: self._extract_zip,
            ArchiveFormat.TGZ: self._extract_tgz,
            ArchiveFormat.TAR: self._extract_tar,
        }

    def supported_formats(self) -> List[ArchiveFormat]:
        return list(self._handlers)

    def extract(
        self,
        archive_path: pathlib.Path,
        archive_format: ArchiveFormat,
        target_dir: pathlib.Path,
    ) -> pathlib.Path:
        """
        Extracts ``archive_path`` into ``target_dir``.

        Returns:
            The target directory

        Raises:
            ExtractionError: for malformed, unsupported or unsafe archives
            CacheError: if the target directory cannot be written
        """
        handler = self._handlers.get(archive_format)
        if handler is None:
            raise ExtractionError(
                f"Archive format '{archive_format}' not supported",
                resource=str(archive_path),
            )
        self.logger.log(
            f"Extracting {archive_path.name} ({archive_format.value}) into {target_dir}",
            logging.INFO,
        )
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            handler(archive_path, target_dir)
        except ExtractionError:
            raise
        except _ARCHIVE_ERRORS as e:
            raise ExtractionError(
                f"Malformed {archive_format.value} archive: {e}",
                resource=str(archive_path),
            ) from e
        except OSError as e:
            raise CacheError(
                f"Cannot write extracted files: {e}",
                resource=str(target_dir),
                context={"archive": str(archive_path)},
            ) from e
        return target_dir

    def _extract_zip(self, archive_path: pathlib.Path, target_dir: pathlib.Path) -> None:
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                relative = _safe_member_path(info.filename, archive_path)
                if not relative.parts:
                    continue
                path = target_dir.joinpath(*relative.parts)
                if info.is_dir():
                    path.mkdir(parents=True, exist_ok=True)
                    continue
                if stat.S_ISLNK(info.external_attr >> 16):
                    self.logger.log(f"Skipping symlink {info.filename}, zip symlinks are not supported", logging.WARNING)
                    continue
                path.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as src, open(path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    os.chmod(path, mode | 0o600)

    def _extract_tgz(self, archive_path: pathlib.Path, target_dir: pathlib.Path) -> None:
        with tarfile.open(archive_path, "r:gz") as archive:
            self._extract_tar_members(archive, archive_path, target_dir)

    def _extract_tar(self, archive_path: pathlib.Path, target_dir: pathlib.Path) -> None:
        with tarfile.open(archive_path, "r:") as archive:
            self._extract_tar_members(archive, archive_path, target_dir)

    def _extract_tar_members(
        self,
        archive: tarfile.TarFile,
        archive_path: pathlib.Path,
        target_dir: pathlib.Path,
    ) -> None:
        members = []
        for member in archive.getmembers():
            _safe_member_path(member.name, archive_path)
            if member.issym() or member.islnk():
                link_target = PurePosixPath(member.name).parent / member.linkname
                if member.islnk():
                    link_target = PurePosixPath(member.linkname)
                _safe_member_path(str(link_target), archive_path)
            elif not (member.isfile() or member.isdir()):
                # Devices and fifos have no place in a library archive.
                self.logger.log(f"Skipping special file {member.name}", logging.WARNING)
                continue
            members.append(member)
        if hasattr(tarfile, "data_filter"):
            archive.extractall(target_dir, members=members, filter="data")
        else:
            archive.extractall(target_dir, members=members)
