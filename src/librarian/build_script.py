"""
Entry points for build scripts.

A typical build script does:

    config = LibrarianConfig.from_env()
    runner = BuildScriptRunner(config, LibrarianLogger())
    request = LibraryRequest.from_template(
        "SDL2", "2.0.12", config.target_triple,
        "https://example.com/SDL2-devel-{version}-VC.zip",
    )
    run_build_step(lambda: runner.link_library(request, link_libs=["SDL2"]))

On failure the step prints a diagnostic naming the failing phase and
resource to stderr and exits with status 1.
"""

import logging
import os
import pathlib
import sys
import uuid
from typing import Callable, Dict, List, Optional, Sequence, TextIO, TypeVar, Union

from librarian.build_directives import BuildDirectiveEmitter
from librarian.librarian_config import LibrarianConfig
from librarian.librarian_exceptions import CacheError, LibrarianException, NetworkError
from librarian.librarian_logger import LibrarianLogger
from librarian.librarian_settings import LibrarianSettings
from librarian.librarian_utils import PlatformUtils
from librarian.library_cache import CacheManager
from librarian.library_downloader import (
    AcquisitionEngine,
    ArchiveExtractor,
    ArchiveFetcher,
    acquire_with_retry,
    url_file_name,
)
from librarian.library_models import (
    ArchiveFormat,
    BuildDirective,
    DylibFilter,
    LibraryManifest,
    LibraryRequest,
    ResolvedLibrary,
)

T = TypeVar("T")


class BuildScriptRunner:
    """
    Wires the cache manager, acquisition engine and directive emitter from one config.
    """

    def __init__(
        self,
        config: LibrarianConfig,
        logger: LibrarianLogger,
        stream: Optional[TextIO] = None,
    ):
        """
        Initialize the runner.

        Args:
            config: Librarian configuration, usually LibrarianConfig.from_env()
            logger: Logger shared by all components
            stream: Where build directives are printed, stdout by default
        """
        self.config = config
        self.logger = logger
        self.cache_manager = CacheManager(
            LibrarianSettings.get_cache_directory(config),
            logger,
            lock_timeout=config.lock_timeout,
            poll_interval=config.poll_interval,
            stale_claim_after=config.stale_claim_after,
        )
        self.engine = AcquisitionEngine(
            self.cache_manager,
            logger,
            fetcher=ArchiveFetcher(
                logger,
                timeout=config.fetch_timeout,
                max_duration=config.fetch_max_duration,
            ),
        )
        self.emitter = BuildDirectiveEmitter(logger, stream=stream, prefix=config.directive_prefix)

    def acquire(self, request: LibraryRequest) -> ResolvedLibrary:
        return acquire_with_retry(self.engine, request, self.config.retry)

    def link_library(
        self,
        request: LibraryRequest,
        link_libs: Sequence[str] = (),
        dylib_filter: Optional[DylibFilter] = None,
    ) -> List[BuildDirective]:
        """
        Acquires ``request`` and emits its build directives.

        Returns:
            The applied directives
        """
        resolved = self.acquire(request)
        output_dir = LibrarianSettings.get_runtime_directory(self.config)
        return self.emitter.emit(
            resolved,
            link_libs,
            output_dir,
            dylib_filter=dylib_filter,
            family=PlatformUtils.family_for_triple(request.target_triple),
        )

    def link_manifest(self, manifest: LibraryManifest) -> Dict[str, List[BuildDirective]]:
        """
        Links every library the manifest declares for the configured target.
        Stops at the first failure.

        Returns:
            Dictionary mapping library names to their applied directives
        """
        target_triple = LibrarianSettings.get_target_triple(self.config)
        requests = manifest.requests_for_target(target_triple)
        self.logger.log(
            f"Linking {len(requests)} libraries for {target_triple}",
            logging.INFO,
        )
        results = {}
        for request in requests:
            results[request.name] = self.link_library(request, manifest.links_for(request.name))
        return results


def run_build_step(
    step: Callable[[], T],
    logger: Optional[LibrarianLogger] = None,
    stderr: Optional[TextIO] = None,
) -> T:
    """
    Runs ``step``; a librarian failure terminates the process with status 1
    after printing a diagnostic that names the failing phase and resource.
    """
    try:
        return step()
    except LibrarianException as e:
        (logger or LibrarianLogger()).log(
            f"Build step failed in phase {e.phase}: {e.message} ({e.resource})",
            logging.ERROR,
        )
        (stderr or sys.stderr).write(f"librarian: {e}\n")
        raise SystemExit(1) from e


def download_or_find_file(
    url: str,
    out_dir: Optional[Union[str, pathlib.Path]] = None,
    logger: Optional[LibrarianLogger] = None,
    config: Optional[LibrarianConfig] = None,
) -> pathlib.Path:
    """
    Downloads ``url`` into ``out_dir`` unless a file with the URL's file name
    is already there, and returns the file's location. Without ``out_dir`` the
    build script output directory (OUT_DIR) is used.

    Raises:
        NetworkError: if the URL has no file name or cannot be fetched
    """
    logger = logger or LibrarianLogger()
    file_name = url_file_name(url)
    if file_name is None:
        raise NetworkError("Couldn't infer file name from the URL", resource=url)
    if out_dir is None:
        out_dir = LibrarianSettings.get_out_directory(config or LibrarianConfig.from_env())
    path = pathlib.Path(out_dir) / file_name
    if path.exists():
        return path

    temp_path = path.with_name(f".{file_name}.{uuid.uuid4().hex}.part")
    try:
        ArchiveFetcher(logger).fetch(url, temp_path)
        os.replace(temp_path, path)
    except OSError as e:
        raise CacheError(f"Cannot store downloaded file: {e}", resource=str(path)) from e
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return path


def extract_archive(
    archive: Union[str, pathlib.Path],
    target: Optional[Union[str, pathlib.Path]] = None,
    logger: Optional[LibrarianLogger] = None,
    config: Optional[LibrarianConfig] = None,
) -> pathlib.Path:
    """
    Extracts a local zip, tar or tar.gz archive, choosing the format from its
    file name, and returns the path to the extracted files. Without
    ``target`` the build script output directory (OUT_DIR) is used.
    """
    archive_path = pathlib.Path(archive)
    archive_format = ArchiveFormat.from_filename(archive_path.name)
    if target is None:
        target = LibrarianSettings.get_out_directory(config or LibrarianConfig.from_env())
    return ArchiveExtractor(logger or LibrarianLogger()).extract(
        archive_path, archive_format, pathlib.Path(target)
    )


def install_dylibs(
    from_dir: Union[str, pathlib.Path],
    target_dir: Union[str, pathlib.Path],
    target_triple: str,
    dylib_filter: Optional[DylibFilter] = None,
    logger: Optional[LibrarianLogger] = None,
) -> List[pathlib.Path]:
    """
    Copies the dynamic libraries found directly in ``from_dir`` into
    ``target_dir``. By default every file with the target platform's dynamic
    library extension is copied; ``dylib_filter`` narrows the selection.

    Returns:
        The staged destination paths
    """
    logger = logger or LibrarianLogger()
    family = PlatformUtils.family_for_triple(target_triple)
    source = pathlib.Path(from_dir)
    if dylib_filter is None:
        dylibs = [p for p in sorted(source.iterdir()) if p.is_file() and PlatformUtils.is_dynamic_library(p.name, family)]
    else:
        dylibs = [p for p in sorted(source.iterdir()) if p.is_file() and dylib_filter.matches(p.name, family)]

    resolved = ResolvedLibrary(root_dir=source, discovered_dynamic_libs=tuple(dylibs))
    emitter = BuildDirectiveEmitter(logger)
    directives = emitter.emit(resolved, (), pathlib.Path(target_dir), family=family)
    return [d.dest_path for d in directives if d.kind == "copy_dynamic_library"]
