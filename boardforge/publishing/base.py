"""Publish and image-hosting boundaries.

Both are Protocols so a run can be wired to GitHub and Imgur in CI, to
the local filesystem on a workstation, or to fakes in tests.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from boardforge.models.release import ReleaseRequest


class PublishError(RuntimeError):
    """Raised when the release backend refuses or fails a publish."""


class ImageHostError(RuntimeError):
    """Raised when an image cannot be uploaded; callers degrade, not abort."""


@runtime_checkable
class ReleasePublisher(Protocol):
    """Creates a release from a tag, title, body, flags and file blobs."""

    def publish(self, request: ReleaseRequest) -> str:
        """Publish and return the backend's identifier for the release."""
        ...


@runtime_checkable
class ImageHost(Protocol):
    """Turns an image blob into a publicly resolvable URL."""

    def upload(self, name: str, data: bytes) -> str:
        ...
