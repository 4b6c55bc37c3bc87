"""
Prebuilt library downloader.

This package handles:
1. Fetching archives from URLs
2. Verifying their digests
3. Extracting archives into the cache
4. Resolving extracted trees into link directories and dynamic libraries
"""

from .acquisition_engine import AcquisitionEngine, acquire_with_retry
from .extractor import ArchiveExtractor
from .fetcher import ArchiveFetcher, url_file_name
from .verifier import IntegrityVerifier

__all__ = [
    "AcquisitionEngine",
    "ArchiveExtractor",
    "ArchiveFetcher",
    "IntegrityVerifier",
    "acquire_with_retry",
    "url_file_name",
]
