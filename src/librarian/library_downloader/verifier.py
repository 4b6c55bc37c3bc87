"""
Integrity verification of fetched archives.
"""

import logging
import pathlib

from librarian.librarian_exceptions import DigestMismatch
from librarian.librarian_logger import LibrarianLogger
from librarian.librarian_utils import FileUtils
from librarian.library_models import split_digest
from librarian.library_models.library_request import DEFAULT_DIGEST_ALGORITHM


class IntegrityVerifier:
    """
    Computes content digests and compares them with expected values.
    """

    def __init__(self, logger: LibrarianLogger):
        self.logger = logger

    def digest(self, path: pathlib.Path, algorithm: str = DEFAULT_DIGEST_ALGORITHM) -> str:
        """Returns the digest of ``path`` as ``algo:hex``."""
        return f"{algorithm}:{FileUtils.file_digest(path, algorithm)}"

    def verify(self, path: pathlib.Path, expected_digest: str, resource: str) -> str:
        """
        Checks the file at ``path`` against ``expected_digest``.

        Args:
            path: The fetched file
            expected_digest: 'algo:hex' or bare sha256 hex
            resource: URL the bytes came from, for diagnostics

        Returns:
            The verified digest as 'algo:hex'

        Raises:
            DigestMismatch: if the digests differ
        """
        algorithm, expected = split_digest(expected_digest)
        actual = FileUtils.file_digest(path, algorithm)
        if actual != expected:
            raise DigestMismatch(
                "Fetched content digest mismatch",
                resource=resource,
                hint="The mirror may be corrupted, or the expected digest is wrong. Do not retry blindly.",
                context={"algorithm": algorithm, "expected": expected, "actual": actual},
            )
        self.logger.log(f"Verified {algorithm} digest of {resource}", logging.INFO)
        return f"{algorithm}:{actual}"
