"""
Acquisition engine implementation.

Turns a LibraryRequest into a verified, extracted, cached directory tree and
describes its linker-relevant layout.
"""

import logging
import os
import pathlib
import time
from typing import Callable, List, Optional, Tuple

from librarian.librarian_config import RetryPolicy
from librarian.librarian_exceptions import ExtractionError, NetworkError
from librarian.librarian_logger import LibrarianLogger
from librarian.librarian_utils import PlatformFamily, PlatformUtils
from librarian.library_cache import CacheManager, ExclusiveSlotHandle, ReadyEntry, cache_key
from librarian.library_downloader.extractor import ArchiveExtractor
from librarian.library_downloader.fetcher import ArchiveFetcher
from librarian.library_downloader.verifier import IntegrityVerifier
from librarian.library_models import LibraryRequest, ResolvedLibrary

CONVENTIONAL_DIRS = ("lib", "bin")


class AcquisitionEngine:
    """
    Orchestrates fetch, verification, extraction and caching of prebuilt libraries.

    The engine never retries on its own; see ``acquire_with_retry``.
    """

    def __init__(
        self,
        cache_manager: CacheManager,
        logger: LibrarianLogger,
        fetcher: Optional[ArchiveFetcher] = None,
        verifier: Optional[IntegrityVerifier] = None,
        extractor: Optional[ArchiveExtractor] = None,
    ):
        """
        Initialize the acquisition engine.

        Args:
            cache_manager: Owner of the on-disk cache
            logger: Logger for progress and error messages
            fetcher: Archive fetcher, a default one is created if omitted
            verifier: Integrity verifier, a default one is created if omitted
            extractor: Archive extractor, a default one is created if omitted
        """
        self.cache_manager = cache_manager
        self.logger = logger
        self.fetcher = fetcher or ArchiveFetcher(logger)
        self.verifier = verifier or IntegrityVerifier(logger)
        self.extractor = extractor or ArchiveExtractor(logger)

    def acquire(self, request: LibraryRequest) -> ResolvedLibrary:
        """
        Materializes the library described by ``request``.

        Returns:
            The resolved library, from the cache or freshly populated

        Raises:
            NetworkError, DigestMismatch, ExtractionError, CacheError
        """
        key = cache_key(request)
        slot = self.cache_manager.acquire_slot(key)

        if isinstance(slot, ReadyEntry):
            self.logger.log(f"Using cached {request.describe()} from {slot.root_dir}", logging.INFO)
            root_dir = slot.root_dir
            from_cache = True
        else:
            with slot:
                root_dir = self._populate(request, slot)
            from_cache = False

        link_dirs, dynamic_libs = self.scan(root_dir, request.target_triple)
        return ResolvedLibrary(
            root_dir=root_dir,
            discovered_link_dirs=tuple(link_dirs),
            discovered_dynamic_libs=tuple(dynamic_libs),
            key=key.dirname,
            from_cache=from_cache,
        )

    def _populate(self, request: LibraryRequest, slot: ExclusiveSlotHandle) -> pathlib.Path:
        self.logger.log(f"Populating {request.describe()} from {request.source_url}", logging.INFO)
        self.fetcher.fetch(request.source_url, slot.download_path)

        # Nothing is extracted before the bytes are verified.
        if request.expected_digest:
            archive_digest = self.verifier.verify(
                slot.download_path, request.expected_digest, request.source_url
            )
        else:
            archive_digest = self.verifier.digest(slot.download_path)

        self.extractor.extract(slot.download_path, request.archive_format, slot.staging_dir)
        return slot.commit(archive_digest)

    def scan(self, root_dir: pathlib.Path, target_triple: str) -> Tuple[List[pathlib.Path], List[pathlib.Path]]:
        """
        Finds link directories and dynamic libraries under ``root_dir``.

        Top-level lib/ and bin/ directories are scanned first, without
        recursion. If neither exists, or they hold nothing relevant, the
        whole tree is searched.

        Returns:
            (link directories, dynamic libraries), both sorted
        """
        family = PlatformUtils.family_for_triple(target_triple)
        conventional = [root_dir / name for name in CONVENTIONAL_DIRS if (root_dir / name).is_dir()]

        link_dirs: List[pathlib.Path] = []
        dynamic_libs: List[pathlib.Path] = []
        for directory in conventional:
            files = sorted(p for p in directory.iterdir() if p.is_file())
            self._classify(directory, [p.name for p in files], family, link_dirs, dynamic_libs)

        if not link_dirs and not dynamic_libs:
            for dirpath, dirnames, filenames in os.walk(root_dir):
                dirnames.sort()
                self._classify(pathlib.Path(dirpath), sorted(filenames), family, link_dirs, dynamic_libs)

        return sorted(set(link_dirs)), sorted(dynamic_libs)

    @staticmethod
    def _classify(
        directory: pathlib.Path,
        file_names: List[str],
        family: PlatformFamily,
        link_dirs: List[pathlib.Path],
        dynamic_libs: List[pathlib.Path],
    ) -> None:
        for file_name in file_names:
            if PlatformUtils.is_link_library(file_name, family) and directory not in link_dirs:
                link_dirs.append(directory)
            if PlatformUtils.is_dynamic_library(file_name, family):
                dynamic_libs.append(directory / file_name)


def acquire_with_retry(
    engine: AcquisitionEngine,
    request: LibraryRequest,
    retry_policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> ResolvedLibrary:
    """
    Calls ``engine.acquire`` and retries network and extraction failures
    according to ``retry_policy``. Digest mismatches and cache errors are
    raised immediately.
    """
    attempt = 1
    while True:
        try:
            return engine.acquire(request)
        except (NetworkError, ExtractionError) as e:
            if attempt >= retry_policy.max_attempts:
                raise
            delay = retry_policy.delay_for(attempt)
            engine.logger.log(
                f"Attempt {attempt}/{retry_policy.max_attempts} for {request.describe()} failed "
                f"in phase {e.phase}; retrying in {delay:.1f}s",
                logging.WARNING,
            )
            sleep(delay)
            attempt += 1
