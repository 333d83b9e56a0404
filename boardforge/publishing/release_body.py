"""Release description rendering and asset packaging."""

from __future__ import annotations

import io
import logging
import mimetypes
import zipfile
from collections.abc import Mapping, Sequence
from pathlib import PurePosixPath

from boardforge.core.artifact_store import ArtifactStore
from boardforge.models.artifacts import ArtifactBundle
from boardforge.models.config import AssetRule
from boardforge.models.release import ReleaseAsset
from boardforge.models.revision import Revision

logger = logging.getLogger(__name__)

# Fixed timestamp so identical inputs give byte-identical archives.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def render_release_body(
    header: str, revision: Revision, images: Mapping[str, str]
) -> str:
    """Header, the commit it was built from, then one line per hosted image.

    ``images`` maps title to URL. Images that failed to upload are simply
    absent from it, so no empty link is ever written.
    """
    body = f"{header}\n\nOn commit: {revision.long}\n"
    if images:
        body += "\n### Previews\n"
        body += "".join(f"![{title}]({url})\n" for title, url in images.items())
    return body


def zip_blobs(blobs: Mapping[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name in sorted(blobs):
            info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, blobs[name])
    return buffer.getvalue()


def build_release_assets(
    store: ArtifactStore,
    bundle: ArtifactBundle,
    rules: Sequence[AssetRule],
) -> list[ReleaseAsset]:
    """Turn bundle categories into release files named after the revision.

    A category missing from the bundle is left out with a warning. A
    single-file rule whose category holds several blobs falls back to a
    zip.
    """
    revision = bundle.revision
    assets: list[ReleaseAsset] = []
    for rule in rules:
        if rule.category not in bundle.categories:
            logger.warning(
                "No %r artifacts for %s; %s asset omitted",
                rule.category,
                revision.short,
                rule.label,
            )
            continue
        blobs = store.get(revision, rule.category, run_id=bundle.run_id)
        stem = f"{rule.label}-{revision.short}"
        if not rule.archive and len(blobs) == 1:
            (name, data), = blobs.items()
            suffix = PurePosixPath(name).suffix
            content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"
            assets.append(ReleaseAsset(name=f"{stem}{suffix}", data=data, content_type=content_type))
            continue
        assets.append(
            ReleaseAsset(name=f"{stem}.zip", data=zip_blobs(blobs), content_type="application/zip")
        )
    return assets
