"""Filesystem-backed publisher and image host.

Useful on a workstation and as the default backend: a release becomes a
directory holding ``release.json``, ``body.md`` and the asset files.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from boardforge.core.hasher import sha256_hex
from boardforge.models.release import ReleaseRequest
from boardforge.publishing.base import ImageHostError, PublishError

logger = logging.getLogger(__name__)


class LocalReleasePublisher:
    """Writes each release to ``{root}/{tag label}/``.

    A tag directory is created exclusively, so a label can be published
    only once.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def publish(self, request: ReleaseRequest) -> str:
        release_dir = self._root / request.tag.label
        try:
            release_dir.mkdir()
        except FileExistsError as exc:
            raise PublishError(f"Release {request.tag.label} already exists") from exc

        for asset in request.assets:
            (release_dir / asset.name).write_bytes(asset.data)
        (release_dir / "body.md").write_text(request.body, encoding="utf-8")
        metadata = {
            "tag": request.tag.label,
            "sequence": request.tag.sequence,
            "title": request.title,
            "target": request.target,
            "draft": request.draft,
            "prerelease": request.prerelease,
            "assets": [asset.name for asset in request.assets],
        }
        (release_dir / "release.json").write_text(
            json.dumps(metadata, indent=2), encoding="utf-8"
        )
        logger.info("Published %s to %s", request.tag.label, release_dir)
        return release_dir.as_uri()


class LocalImageHost:
    """Stores images by content hash and returns ``file://`` URLs."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def upload(self, name: str, data: bytes) -> str:
        if not data:
            raise ImageHostError(f"Refusing to host empty image {name!r}")
        suffix = Path(name).suffix or ".png"
        path = self._root / f"{sha256_hex(data)}{suffix}"
        try:
            if not path.exists():
                path.write_bytes(data)
        except OSError as exc:
            raise ImageHostError(f"Could not store {name!r}: {exc}") from exc
        return path.resolve().as_uri()
