"""
Pydantic data models for library manifests (libraries.json).

A manifest declares the prebuilt libraries a build script needs, with a URL
template per library and optional per-target-triple overrides:

{
  "_description": "...",
  "libraries": {
    "SDL2": {
      "version": "2.0.12",
      "url": "https://example.com/SDL2-{version}-{target}.zip",
      "archiveType": "zip",
      "link": ["SDL2"],
      "targets": {
        "x86_64-pc-windows-msvc": {"digest": "sha256:..."},
        "x86_64-unknown-linux-gnu": {"url": "https://example.com/SDL2-{version}.tar.gz"}
      }
    }
  }
}

A library without "targets" is available for every target triple.
"""

import json
import pathlib
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from librarian.librarian_exceptions import ConfigurationError
from librarian.library_models.library_request import ArchiveFormat, LibraryRequest


class TargetOverride(BaseModel):
    """Per-target-triple overrides of a library's download settings."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    url: Optional[str] = Field(None, description="URL template for this target")
    digest: Optional[str] = Field(None, description="Expected digest for this target")
    archive_type: Optional[ArchiveFormat] = Field(None, alias="archiveType")


class LibraryEntry(BaseModel):
    """A single library declared in the manifest."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    version: str = Field(..., min_length=1)
    url: Optional[str] = Field(None, description="Default URL template")
    digest: Optional[str] = None
    archive_type: Optional[ArchiveFormat] = Field(None, alias="archiveType")
    link: List[str] = Field(default_factory=list, description="Library names to link against")
    description: Optional[str] = Field(None, alias="_description")
    targets: Dict[str, TargetOverride] = Field(default_factory=dict)

    def supports(self, target_triple: str) -> bool:
        return not self.targets or target_triple in self.targets


class LibraryManifest(BaseModel):
    """
    Complete library manifest, the top-level model of libraries.json.
    """

    model_config = ConfigDict(populate_by_name=True)

    description: Optional[str] = Field(None, alias="_description")
    libraries: Dict[str, LibraryEntry] = Field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "LibraryManifest":
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: Union[str, pathlib.Path]) -> "LibraryManifest":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def requests_for_target(self, target_triple: str) -> List[LibraryRequest]:
        """
        Builds one LibraryRequest per library available for ``target_triple``,
        in manifest order.

        Raises:
            ConfigurationError: if a library has no URL for the target, or its
                URL template or digest is invalid
        """
        requests = []
        for name, entry in self.libraries.items():
            if not entry.supports(target_triple):
                continue
            override = entry.targets.get(target_triple) or TargetOverride()
            url_template = override.url or entry.url
            if not url_template:
                raise ConfigurationError(
                    f"Library '{name}' has no URL for target {target_triple}",
                    resource=name,
                    hint="Add a url to the library or to its entry under targets.",
                )
            try:
                request = LibraryRequest.from_template(
                    name=name,
                    version=entry.version,
                    target_triple=target_triple,
                    url_template=url_template,
                    expected_digest=override.digest or entry.digest,
                    archive_format=override.archive_type or entry.archive_type,
                )
            except (ValidationError, KeyError, IndexError) as e:
                raise ConfigurationError(
                    f"Invalid manifest entry for '{name}': {e}",
                    resource=name,
                    context={"target": target_triple, "url": url_template},
                ) from e
            requests.append(request)
        return requests

    def links_for(self, name: str) -> List[str]:
        """Returns the link-library names declared for ``name``."""
        entry = self.libraries.get(name)
        return list(entry.link) if entry is not None else []
