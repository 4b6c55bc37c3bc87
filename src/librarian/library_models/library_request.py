"""
Pydantic data models describing which prebuilt library is wanted and where to get it.
"""

import hashlib
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from librarian.librarian_exceptions import ExtractionError

DEFAULT_DIGEST_ALGORITHM = "sha256"


class ArchiveFormat(str, Enum):
    """
    Archive formats the extractor understands. Values match the
    ``archiveType`` strings used in library manifests.
    """

    ZIP = "zip"
    TGZ = "tar.gz"
    TAR = "tar"

    @classmethod
    def from_filename(cls, name: str) -> "ArchiveFormat":
        """
        Infers the archive format from a file name or URL.

        Raises:
            ExtractionError: if the suffix is not a supported archive format
        """
        path = urlparse(name).path if "://" in name else name
        lowered = path.lower()
        if lowered.endswith(".zip"):
            return cls.ZIP
        if lowered.endswith(".tar.gz") or lowered.endswith(".tgz"):
            return cls.TGZ
        if lowered.endswith(".tar"):
            return cls.TAR
        raise ExtractionError(
            "Archive format not supported",
            resource=name,
            hint="Supported archives end with .zip, .tar.gz, .tgz or .tar.",
        )


def split_digest(expected_digest: str) -> Tuple[str, str]:
    """
    Splits ``algo:hex`` into its algorithm and lowercase hex value.
    A bare hex string is taken to be sha256.
    """
    if ":" in expected_digest:
        algorithm, _, value = expected_digest.partition(":")
        return algorithm.strip().lower(), value.strip().lower()
    return DEFAULT_DIGEST_ALGORITHM, expected_digest.strip().lower()


class LibraryRequest(BaseModel):
    """
    Identifies a prebuilt library for one target triple and where to fetch it.

    Immutable once constructed.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Library name")
    version: str = Field(..., min_length=1, description="Library version")
    target_triple: str = Field(..., min_length=1, alias="target", description="Target triple")
    source_url: str = Field(..., min_length=1, alias="url", description="URL to download from")
    expected_digest: Optional[str] = Field(
        None, alias="digest", description="Expected digest, 'algo:hex' or bare sha256 hex"
    )
    archive_format: ArchiveFormat = Field(
        ..., alias="archiveType", description="Archive type: zip, tar.gz or tar"
    )

    @field_validator("expected_digest")
    @classmethod
    def _check_digest(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        algorithm, hex_value = split_digest(value)
        if algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported digest algorithm '{algorithm}'")
        # shake_* and friends need an explicit output length.
        if algorithm.startswith("shake_") or hashlib.new(algorithm).digest_size == 0:
            raise ValueError(f"Digest algorithm '{algorithm}' has no fixed length")
        if not hex_value or any(c not in "0123456789abcdef" for c in hex_value):
            raise ValueError("Digest value must be a hex string")
        return f"{algorithm}:{hex_value}"

    @classmethod
    def from_template(
        cls,
        name: str,
        version: str,
        target_triple: str,
        url_template: str,
        expected_digest: Optional[str] = None,
        archive_format: Optional[ArchiveFormat] = None,
    ) -> "LibraryRequest":
        """
        Builds a request from a URL template.

        ``{name}``, ``{version}`` and ``{target}`` in the template are substituted.
        The archive format is inferred from the URL when not given.
        """
        url = url_template.format(name=name, version=version, target=target_triple)
        return cls(
            name=name,
            version=version,
            target_triple=target_triple,
            source_url=url,
            expected_digest=expected_digest,
            archive_format=archive_format or ArchiveFormat.from_filename(url),
        )

    def describe(self) -> str:
        return f"{self.name} {self.version} ({self.target_triple})"
