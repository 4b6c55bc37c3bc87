"""
Defines settings for librarian
"""

import os
import pathlib
from pathlib import PurePath
from typing import Mapping, Optional

from librarian.librarian_config import LibrarianConfig
from librarian.librarian_exceptions import ConfigurationError


class LibrarianSettings:
    """
    Provides the various default directories and values used by librarian.
    """

    @staticmethod
    def get_global_cache_directory(environ: Optional[Mapping[str, str]] = None) -> str:
        """
        Returns the cache root shared by every build script on this host.
        """
        environ = os.environ if environ is None else environ
        override = environ.get("LIBRARIAN_CACHE_DIR")
        if override:
            return override
        return str(PurePath(os.path.expanduser("~"), ".librarian", "cache"))

    @staticmethod
    def get_cache_directory(config: LibrarianConfig) -> pathlib.Path:
        if config.cache_dir:
            return pathlib.Path(config.cache_dir)
        return pathlib.Path(LibrarianSettings.get_global_cache_directory())

    @staticmethod
    def get_out_directory(config: LibrarianConfig) -> pathlib.Path:
        """
        Returns the build script's own output directory (OUT_DIR).
        """
        if not config.out_dir:
            raise ConfigurationError(
                "No output directory configured and OUT_DIR is not set",
                resource="OUT_DIR",
                hint="Run from a build script or set out_dir explicitly.",
            )
        return pathlib.Path(config.out_dir)

    @staticmethod
    def get_runtime_directory(config: LibrarianConfig) -> pathlib.Path:
        """
        Returns the directory dynamic libraries are staged into.

        Falls back to the profile directory holding the final executables,
        which sits three levels above OUT_DIR (<profile>/build/<pkg>-<hash>/out).
        """
        if config.runtime_dir:
            return pathlib.Path(config.runtime_dir)
        out_dir = LibrarianSettings.get_out_directory(config)
        parents = out_dir.resolve().parents
        if len(parents) < 3:
            raise ConfigurationError(
                "Cannot infer the runtime directory from OUT_DIR",
                resource=str(out_dir),
                hint="Set runtime_dir (LIBRARIAN_RUNTIME_DIR) explicitly.",
            )
        return parents[2]

    @staticmethod
    def get_target_triple(config: LibrarianConfig) -> str:
        if config.target_triple:
            return config.target_triple
        raise ConfigurationError(
            "No target triple configured and TARGET is not set",
            resource="TARGET",
            hint="Run from a build script or set target_triple explicitly.",
        )
