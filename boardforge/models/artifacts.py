"""Content-addressed artifact models (immutable once stored)."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from boardforge.models.revision import Revision


class ArtifactRef(BaseModel):
    """A reference to one stored blob.

    The content_address is the SHA-256 hex digest of the blob bytes.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    content_address: str  # "sha256:<hex>"
    size_bytes: int = 0


class CategoryManifest(BaseModel):
    """The write-once record of one (revision, run, category) key."""

    model_config = ConfigDict(frozen=True)

    revision: Revision
    run_id: str
    category: str
    artifacts: list[ArtifactRef]
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ArtifactBundle(BaseModel):
    """The sealed set of categories one run's export stage produced.

    ``bundle_digest`` is the content address of the sorted category
    manifests and is what a release record refers to. It covers content
    only, so two runs exporting identical bytes share a digest.
    """

    model_config = ConfigDict(frozen=True)

    revision: Revision
    run_id: str
    categories: dict[str, list[ArtifactRef]]
    bundle_digest: str
    sealed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def names(self, category: str) -> list[str]:
        return [ref.name for ref in self.categories.get(category, [])]
