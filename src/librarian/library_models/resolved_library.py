"""
Pydantic data models for resolved libraries and the build directives derived from them.
"""

import pathlib
import re
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from librarian.librarian_utils import PlatformFamily, PlatformUtils


class ResolvedLibrary(BaseModel):
    """
    Read-only view of a Ready cache entry, handed to the directive emitter.
    """

    model_config = ConfigDict(frozen=True)

    root_dir: pathlib.Path
    discovered_link_dirs: Tuple[pathlib.Path, ...] = ()
    discovered_dynamic_libs: Tuple[pathlib.Path, ...] = ()
    key: str = Field("", description="Cache entry directory name")
    from_cache: bool = Field(False, description="True when no fetch or extraction was needed")

    def same_layout(self, other: "ResolvedLibrary") -> bool:
        """True if both views point at the same root and discovered files."""
        return (
            self.root_dir == other.root_dir
            and self.discovered_link_dirs == other.discovered_link_dirs
            and self.discovered_dynamic_libs == other.discovered_dynamic_libs
        )


class AddLinkSearchPath(BaseModel):
    """Adds a directory to the linker search path."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["add_link_search_path"] = "add_link_search_path"
    path: pathlib.Path

    def protocol_line(self, prefix: str) -> Optional[str]:
        return f"{prefix}rustc-link-search=all={self.path}"


class AddLinkLib(BaseModel):
    """Links against a library by name."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["add_link_lib"] = "add_link_lib"
    name: str = Field(..., min_length=1)

    def protocol_line(self, prefix: str) -> Optional[str]:
        return f"{prefix}rustc-link-lib={self.name}"


class CopyDynamicLibrary(BaseModel):
    """Stages a runtime library next to the build's executables. No textual directive."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["copy_dynamic_library"] = "copy_dynamic_library"
    source_path: pathlib.Path
    dest_dir: pathlib.Path

    @property
    def dest_path(self) -> pathlib.Path:
        return self.dest_dir / self.source_path.name

    def protocol_line(self, prefix: str) -> Optional[str]:
        return None


BuildDirective = Annotated[
    Union[AddLinkSearchPath, AddLinkLib, CopyDynamicLibrary],
    Field(discriminator="kind"),
]


class DylibFilter(BaseModel):
    """
    Restricts which discovered dynamic libraries get staged.

    - file_name: the file name must match exactly (e.g. "SDL2.dll")
    - extension: the extension must match (e.g. "dll")
    - lib_name: the library name must match (e.g. "SDL2"); the extension is
      inferred from the target platform, and a "lib" prefix matches as well
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["file_name", "extension", "lib_name"]
    value: str = Field(..., min_length=1)

    @classmethod
    def file_name(cls, value: str) -> "DylibFilter":
        return cls(kind="file_name", value=value)

    @classmethod
    def extension(cls, value: str) -> "DylibFilter":
        return cls(kind="extension", value=value.lstrip("."))

    @classmethod
    def lib_name(cls, value: str) -> "DylibFilter":
        return cls(kind="lib_name", value=value)

    def matches(self, file_name: str, family: PlatformFamily) -> bool:
        if self.kind == "file_name":
            return file_name == self.value
        if self.kind == "extension":
            return file_name.endswith("." + self.value)

        ext = PlatformUtils.dylib_extension(family)
        candidates = (self.value, "lib" + self.value)
        if family == PlatformFamily.UNIX:
            pattern = "|".join(re.escape(c) for c in candidates)
            return re.fullmatch(rf"(?:{pattern})\.so(\.\d+)*", file_name) is not None
        return file_name in (c + ext for c in candidates)
