"""
Exceptions raised by the canonical manager.

Scan-time problems are never raised; everything here is surfaced to the
caller of a manager operation.
"""

from __future__ import annotations

from typing import Optional


class CanonicalManagerError(Exception):
    """Base class for all canonical manager errors."""


class NotInitializedError(CanonicalManagerError):
    """A query was issued before init() completed."""

    def __init__(self) -> None:
        super().__init__("CanonicalManager not initialized. Call init() first.")


class ResolutionNotFoundError(CanonicalManagerError, LookupError):
    """The canonical URL is not present in the index."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Cannot resolve canonical URL: {url}")


class ResolutionFilteredError(CanonicalManagerError, LookupError):
    """The canonical URL is indexed but the given options eliminate every candidate."""

    def __init__(self, url: str, package: Optional[str] = None, version: Optional[str] = None):
        self.url = url
        self.package = package
        self.version = version
        super().__init__(
            f"No matching resource found for {url} with given options "
            f"(package={package}, version={version})"
        )


class InvalidReferenceError(CanonicalManagerError, KeyError):
    """The reference id is unknown to the reference store."""

    def __init__(self, reference_id: str):
        self.reference_id = reference_id
        super().__init__(f"Invalid reference ID: {reference_id}")

    def __str__(self) -> str:
        # KeyError quotes its argument otherwise
        return self.args[0]


class ReadFailureError(CanonicalManagerError):
    """The resource file behind a valid reference could not be read or parsed."""

    def __init__(self, reference_id: str, file_path: str, cause: Exception):
        self.reference_id = reference_id
        self.file_path = file_path
        self.cause = cause
        super().__init__(f"Failed to read resource {reference_id} from {file_path}: {cause}")


class AcquisitionError(CanonicalManagerError):
    """The package acquisition service could not install a requested package."""

    def __init__(self, spec: str, reason: str):
        self.spec = spec
        self.reason = reason
        super().__init__(f"Failed to install package {spec}: {reason}")


class PackageNotFoundError(CanonicalManagerError, LookupError):
    """No package with the given name is indexed."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Package not found: {name}")
