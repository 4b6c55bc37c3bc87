"""
This file exposes the public API of librarian: acquiring prebuilt binary
libraries from build scripts and emitting the directives to link against them.
"""

from .build_script import (
    BuildScriptRunner,
    download_or_find_file,
    extract_archive,
    install_dylibs,
    run_build_step,
)
from .librarian_config import LibrarianConfig, RetryPolicy
from .librarian_exceptions import (
    CacheError,
    ConfigurationError,
    CopyError,
    DigestMismatch,
    ExtractionError,
    LibrarianException,
    NetworkError,
)
from .librarian_logger import LibrarianLogger
from .library_models import (
    ArchiveFormat,
    DylibFilter,
    LibraryManifest,
    LibraryRequest,
    ResolvedLibrary,
)

__all__ = [
    "ArchiveFormat",
    "BuildScriptRunner",
    "CacheError",
    "ConfigurationError",
    "CopyError",
    "DigestMismatch",
    "DylibFilter",
    "ExtractionError",
    "LibrarianConfig",
    "LibrarianException",
    "LibrarianLogger",
    "LibraryManifest",
    "LibraryRequest",
    "NetworkError",
    "ResolvedLibrary",
    "RetryPolicy",
    "download_or_find_file",
    "extract_archive",
    "install_dylibs",
    "run_build_step",
]
