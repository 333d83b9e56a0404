"""Stage 3 — Publish Release.

Reads the sealed export bundle, hosts the preview images, reserves the
next release tag and hands the release to the publisher. The resulting
``ReleaseRecord`` references both the tag and the bundle digest.

Image hosting degrades: an image that cannot be fetched or uploaded is
logged and its line left out of the body. Tag conflicts are retried by
the allocator with a fresh history read; anything else fails the stage.
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from boardforge.core.artifact_store import ArtifactNotFound
from boardforge.core.tag_allocator import TagAllocator
from boardforge.core.tool_runner import render
from boardforge.models.release import ReleaseRecord, ReleaseRequest
from boardforge.models.stages import PUBLISH
from boardforge.publishing.base import ImageHost, ImageHostError, ReleasePublisher
from boardforge.publishing.release_body import build_release_assets, render_release_body
from boardforge.stages.base import BaseStage, StageContext

logger = logging.getLogger(__name__)


class PublishStage(BaseStage):
    """Stage 3: Publish — tags the revision and creates the release.

    Parameters
    ----------
    allocator:
        Reserves the release tag against its history.
    publisher:
        The release backend.
    image_host:
        Hosts preview images; ``None`` publishes without previews.
    """

    is_gate: ClassVar[bool] = False

    def __init__(
        self,
        allocator: TagAllocator,
        publisher: ReleasePublisher,
        image_host: ImageHost | None = None,
    ) -> None:
        self._allocator = allocator
        self._publisher = publisher
        self._image_host = image_host

    @property
    def stage_id(self) -> str:
        return PUBLISH

    @property
    def display_name(self) -> str:
        return "Publish Release"

    def execute(self, context: StageContext) -> dict[str, Any]:
        revision = context.revision
        settings = context.config.publish
        # StageNotRun here means this run never sealed; the scheduler skips us.
        bundle = context.store.bundle(revision, run_id=context.run_id)

        images = self._host_previews(context)
        assets = build_release_assets(context.store, bundle, settings.assets)

        tag = self._allocator.allocate(target=revision.long)
        title = settings.title_template.format(
            sequence=tag.sequence, label=tag.label, short=revision.short
        )
        body = render_release_body(settings.body_header, revision, images)
        request = ReleaseRequest(
            tag=tag,
            title=title,
            body=body,
            target=revision.long,
            draft=settings.draft,
            prerelease=settings.prerelease,
            assets=assets,
        )
        published_id = self._publisher.publish(request)
        logger.info("Released %s for %s as %s", tag.label, revision.short, published_id)

        record = ReleaseRecord(
            tag=tag,
            revision=revision,
            bundle_digest=bundle.bundle_digest,
            title=title,
            body=body,
            published_id=published_id,
            image_urls=images,
            asset_names=[asset.name for asset in assets],
        )
        return {
            "release": record,
            "tag": tag.label,
            "published_id": published_id,
            "assets": record.asset_names,
        }

    def _host_previews(self, context: StageContext) -> dict[str, str]:
        """Return title -> URL for every preview that made it to the host."""
        settings = context.config.publish
        if self._image_host is None or not settings.previews:
            return {}
        try:
            blobs = context.store.get(
                context.revision, settings.preview_category, run_id=context.run_id
            )
        except ArtifactNotFound:
            logger.warning(
                "No %r artifacts for %s; publishing without previews",
                settings.preview_category,
                context.revision.short,
            )
            return {}

        subs = context.substitutions()
        images: dict[str, str] = {}
        for preview in settings.previews:
            name = render(preview.name, subs)
            data = blobs.get(name)
            if data is None:
                logger.warning("Preview %s was not exported; omitting %r", name, preview.title)
                continue
            try:
                images[preview.title] = self._image_host.upload(name, data)
            except ImageHostError as exc:
                logger.warning("Could not host %s, omitting %r: %s", name, preview.title, exc)
        return images
