"""
Build directive emitter.

Translates a resolved library into linker directives printed for the build
tool and stages dynamic libraries into the runtime output directory.
"""

import logging
import os
import pathlib
import shutil
import sys
import uuid
from typing import Dict, List, Optional, Sequence, TextIO

from librarian.librarian_exceptions import CopyError
from librarian.librarian_logger import LibrarianLogger
from librarian.librarian_utils import FileUtils, PlatformFamily
from librarian.library_models import (
    AddLinkLib,
    AddLinkSearchPath,
    BuildDirective,
    CopyDynamicLibrary,
    DylibFilter,
    ResolvedLibrary,
)


class BuildDirectiveEmitter:
    """
    Applies build directives one at a time, as they are produced.

    Directives are independent and idempotent: a failure does not undo the
    ones already applied.
    """

    def __init__(
        self,
        logger: LibrarianLogger,
        stream: Optional[TextIO] = None,
        prefix: str = "cargo:",
    ):
        """
        Initialize the emitter.

        Args:
            logger: Logger for applied directives
            stream: Where protocol lines are written, stdout by default
            prefix: Prefix of every protocol line
        """
        self.logger = logger
        self.stream = stream
        self.prefix = prefix

    def emit(
        self,
        resolved: ResolvedLibrary,
        requested_libs: Sequence[str],
        output_dir: pathlib.Path,
        dylib_filter: Optional[DylibFilter] = None,
        family: Optional[PlatformFamily] = None,
    ) -> List[BuildDirective]:
        """
        Emits and applies the directives for ``resolved``.

        Args:
            resolved: The resolved library
            requested_libs: Library names to link against, as the toolchain expects them
            output_dir: Directory dynamic libraries are copied into
            dylib_filter: Optional restriction on which dynamic libraries are staged
            family: Platform family used by lib_name filters, inferred from file names if omitted

        Returns:
            The applied directives, in order

        Raises:
            CopyError: if two selected dynamic libraries share a file name, or
                staging a dynamic library fails
        """
        dylibs = [
            dylib
            for dylib in resolved.discovered_dynamic_libs
            if dylib_filter is None or dylib_filter.matches(dylib.name, family or _family_from_name(dylib.name))
        ]
        _check_dest_collisions(dylibs, output_dir)

        applied: List[BuildDirective] = []

        for link_dir in resolved.discovered_link_dirs:
            applied.append(self.apply(AddLinkSearchPath(path=link_dir)))

        for name in requested_libs:
            applied.append(self.apply(AddLinkLib(name=name)))

        for dylib in dylibs:
            applied.append(self.apply(CopyDynamicLibrary(source_path=dylib, dest_dir=output_dir)))

        return applied

    def apply(self, directive: BuildDirective) -> BuildDirective:
        """Applies a single directive and returns it."""
        if isinstance(directive, CopyDynamicLibrary):
            self._copy_dynamic_library(directive)
            return directive

        line = directive.protocol_line(self.prefix)
        stream = self.stream if self.stream is not None else sys.stdout
        stream.write(line + "\n")
        stream.flush()
        self.logger.log(f"Emitted {line}", logging.DEBUG)
        return directive

    def _copy_dynamic_library(self, directive: CopyDynamicLibrary) -> bool:
        """
        Copies the library unless an identical file is already in place.

        Returns:
            True if the destination was written
        """
        source = directive.source_path
        destination = directive.dest_path
        temp_path = directive.dest_dir / f".{source.name}.{uuid.uuid4().hex}.tmp"
        try:
            if FileUtils.files_identical(source, destination):
                self.logger.log(f"{destination} is up to date", logging.DEBUG)
                return False
            directive.dest_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, temp_path)
            os.replace(temp_path, destination)
        except OSError as e:
            raise CopyError(
                f"Failed to copy dynamic library: {e}",
                resource=str(source),
                context={"destination": str(destination)},
            ) from e
        finally:
            if temp_path.exists():
                temp_path.unlink()
        self.logger.log(f"Copied {source.name} to {directive.dest_dir}", logging.INFO)
        return True


def _family_from_name(file_name: str) -> PlatformFamily:
    lowered = file_name.lower()
    if lowered.endswith(".dll"):
        return PlatformFamily.WINDOWS
    if lowered.endswith(".dylib"):
        return PlatformFamily.APPLE
    return PlatformFamily.UNIX


def _check_dest_collisions(dylibs: List[pathlib.Path], output_dir: pathlib.Path) -> None:
    seen: Dict[str, pathlib.Path] = {}
    for dylib in dylibs:
        other = seen.setdefault(dylib.name, dylib)
        if other != dylib:
            raise CopyError(
                f"Two dynamic libraries would be staged as {dylib.name}: {other} and {dylib}",
                resource=str(output_dir / dylib.name),
                hint="Restrict the staged libraries with a DylibFilter, or stage one directory with install_dylibs.",
                context={"first": str(other), "second": str(dylib)},
            )
