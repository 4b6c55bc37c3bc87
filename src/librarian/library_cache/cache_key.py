"""Cache key derivation."""

import hashlib
import json
import re
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict

from librarian.library_models import LibraryRequest

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_PREFIX_LIMIT = 64
_DIGEST_CHARS = 32


class CacheKey(BaseModel):
    """
    Identity of a cached artifact: library name, version, target triple and
    source URL. The expected digest is a verification input and is never
    part of the key.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    target_triple: str
    source_url: str

    @property
    def digest(self) -> str:
        canonical = json.dumps(_to_payload(self), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @property
    def dirname(self) -> str:
        """
        Filesystem-safe directory name: a readable, truncated prefix followed
        by the digest, which alone keeps distinct keys apart.
        """
        prefix = _UNSAFE_CHARS.sub("_", f"{self.name}-{self.version}-{self.target_triple}")
        prefix = prefix[:_PREFIX_LIMIT].strip("._-") or "lib"
        return f"{prefix}-{self.digest[:_DIGEST_CHARS]}"

    def __str__(self) -> str:
        return self.dirname


def cache_key(request: LibraryRequest) -> CacheKey:
    return CacheKey(
        name=request.name,
        version=request.version,
        target_triple=request.target_triple,
        source_url=request.source_url,
    )


def _to_payload(key: CacheKey) -> Dict[str, Any]:
    return {
        "name": key.name,
        "version": key.version,
        "target_triple": key.target_triple,
        "source_url": key.source_url,
    }
