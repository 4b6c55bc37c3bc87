"""
Data models for prebuilt library acquisition.

This package provides Pydantic data models for describing library requests,
library manifests, resolved cache entries and the build directives emitted
for them.
"""

from .library_request import (
    ArchiveFormat,
    LibraryRequest,
    split_digest,
)
from .library_manifest import (
    LibraryEntry,
    LibraryManifest,
    TargetOverride,
)
from .resolved_library import (
    AddLinkLib,
    AddLinkSearchPath,
    BuildDirective,
    CopyDynamicLibrary,
    DylibFilter,
    ResolvedLibrary,
)

__all__ = [
    # Requests
    "ArchiveFormat",
    "LibraryRequest",
    "split_digest",
    # Manifests
    "LibraryEntry",
    "LibraryManifest",
    "TargetOverride",
    # Resolution and directives
    "AddLinkLib",
    "AddLinkSearchPath",
    "BuildDirective",
    "CopyDynamicLibrary",
    "DylibFilter",
    "ResolvedLibrary",
]
