"""
This module contains the exceptions raised by librarian.

Every exception carries the phase that failed (fetch, verify, extract, cache
or copy) and the resource involved (a URL, path or cache key), so that a
failing build step can tell the operator exactly what went wrong.
"""

from typing import Dict, Mapping, Optional


class Phase:
    """Enumeration of the acquisition phases an error can originate from."""

    FETCH = "fetch"
    VERIFY = "verify"
    EXTRACT = "extract"
    CACHE = "cache"
    COPY = "copy"
    CONFIGURE = "configure"


class LibrarianException(Exception):
    """
    Base exception for all librarian failures.
    """

    def __init__(
        self,
        message: str,
        *,
        phase: str,
        resource: str,
        hint: Optional[str] = None,
        context: Optional[Mapping[str, str]] = None,
    ):
        """
        Initializes the exception.

        Args:
            message: Human readable description of the failure
            phase: The phase that failed, one of the Phase constants
            resource: The URL, path or cache key involved
            hint: Optional suggestion for the operator
            context: Optional extra key/value details
        """
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.resource = resource
        self.hint = hint
        self.context: Dict[str, str] = dict(context or {})

    def __str__(self) -> str:
        parts = [f"[{self.phase}] {self.message} ({self.resource})"]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        for k, v in self.context.items():
            if v:
                parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "phase": self.phase,
            "resource": self.resource,
            "message": self.message,
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class NetworkError(LibrarianException):
    """Unreachable host, timeout or non-success status while fetching."""

    def __init__(self, message: str, *, resource: str, hint: Optional[str] = None,
                 context: Optional[Mapping[str, str]] = None):
        super().__init__(message, phase=Phase.FETCH, resource=resource, hint=hint, context=context)


class DigestMismatch(LibrarianException):
    """Fetched bytes do not match the expected digest. Never retried."""

    def __init__(self, message: str, *, resource: str, hint: Optional[str] = None,
                 context: Optional[Mapping[str, str]] = None):
        super().__init__(message, phase=Phase.VERIFY, resource=resource, hint=hint, context=context)


class ExtractionError(LibrarianException):
    """Malformed or unsupported archive, or an unsafe archive layout."""

    def __init__(self, message: str, *, resource: str, hint: Optional[str] = None,
                 context: Optional[Mapping[str, str]] = None):
        super().__init__(message, phase=Phase.EXTRACT, resource=resource, hint=hint, context=context)


class CacheError(LibrarianException):
    """Lock timeout, filesystem failure or failed reclamation of a cache entry."""

    def __init__(self, message: str, *, resource: str, hint: Optional[str] = None,
                 context: Optional[Mapping[str, str]] = None):
        super().__init__(message, phase=Phase.CACHE, resource=resource, hint=hint, context=context)


class CopyError(LibrarianException):
    """Staging a dynamic library into the output directory failed."""

    def __init__(self, message: str, *, resource: str, hint: Optional[str] = None,
                 context: Optional[Mapping[str, str]] = None):
        super().__init__(message, phase=Phase.COPY, resource=resource, hint=hint, context=context)


class ConfigurationError(LibrarianException):
    """A required setting (output directory, target triple, ...) is missing or invalid."""

    def __init__(self, message: str, *, resource: str, hint: Optional[str] = None,
                 context: Optional[Mapping[str, str]] = None):
        super().__init__(message, phase=Phase.CONFIGURE, resource=resource, hint=hint, context=context)
