"""
Configuration parameters for librarian.
"""

import inspect
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional


@dataclass
class RetryPolicy:
    """
    Opt-in retry policy for transient acquisition failures.

    The acquisition engine never retries on its own. A caller that wants
    retries passes this policy to ``acquire_with_retry``; only network and
    extraction failures are retried, digest mismatches never are.
    """

    max_attempts: int = 1
    backoff_seconds: float = 1.0
    backoff_factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        return self.backoff_seconds * (self.backoff_factor ** (attempt - 1))


@dataclass
class LibrarianConfig:
    """
    Configuration parameters
    """

    cache_dir: Optional[str] = None
    out_dir: Optional[str] = None
    runtime_dir: Optional[str] = None
    target_triple: Optional[str] = None
    fetch_timeout: float = 60.0
    fetch_max_duration: float = 1800.0
    lock_timeout: float = 600.0
    poll_interval: float = 0.2
    stale_claim_after: float = 3600.0
    directive_prefix: str = "cargo:"
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_dict(cls, env: dict):
        """
        Create a LibrarianConfig instance from a dictionary. Unknown keys are ignored.
        """
        params = {k: v for k, v in env.items() if k in inspect.signature(cls).parameters}
        if isinstance(params.get("retry"), dict):
            params["retry"] = RetryPolicy(**params["retry"])
        return cls(**params)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None):
        """
        Create a LibrarianConfig from the environment a build script runs in.

        Reads LIBRARIAN_CACHE_DIR, OUT_DIR, LIBRARIAN_RUNTIME_DIR, TARGET,
        LIBRARIAN_FETCH_TIMEOUT and LIBRARIAN_LOCK_TIMEOUT.
        """
        environ = os.environ if environ is None else environ
        values: dict = {
            "cache_dir": environ.get("LIBRARIAN_CACHE_DIR"),
            "out_dir": environ.get("OUT_DIR"),
            "runtime_dir": environ.get("LIBRARIAN_RUNTIME_DIR"),
            "target_triple": environ.get("TARGET"),
        }
        if environ.get("LIBRARIAN_FETCH_TIMEOUT"):
            values["fetch_timeout"] = float(environ["LIBRARIAN_FETCH_TIMEOUT"])
        if environ.get("LIBRARIAN_LOCK_TIMEOUT"):
            values["lock_timeout"] = float(environ["LIBRARIAN_LOCK_TIMEOUT"])
        return cls.from_dict(values)
