"""Tag and release models."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from boardforge.models.revision import Revision


class Tag(BaseModel):
    """A strictly increasing sequence number and its rendered label."""

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(ge=1)
    label: str

    def __str__(self) -> str:
        return self.label


class ReleaseAsset(BaseModel):
    """One file attached to a published release."""

    model_config = ConfigDict(frozen=True)

    name: str
    data: bytes
    content_type: str = "application/octet-stream"


class ReleaseRequest(BaseModel):
    """Everything the publish boundary needs to create a release."""

    model_config = ConfigDict(frozen=True)

    tag: Tag
    title: str
    body: str
    target: str  # long revision id the tag points at
    draft: bool = False
    prerelease: bool = True
    assets: list[ReleaseAsset] = []


class ReleaseRecord(BaseModel):
    """The publish stage's immutable output."""

    model_config = ConfigDict(frozen=True)

    tag: Tag
    revision: Revision
    bundle_digest: str
    title: str
    body: str
    published_id: str
    image_urls: dict[str, str] = {}
    asset_names: list[str] = []
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
