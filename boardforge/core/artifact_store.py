"""Revision-keyed, write-once artifact store over content-addressed blobs.

Storage layout::

    {base}/blobs/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat
    {base}/revisions/{long_sha}/runs/{run_id}/categories/{category}.json
    {base}/revisions/{long_sha}/runs/{run_id}/bundle.json
    {base}/revisions/{long_sha}/current.json

Every pipeline run writes its own generation of a revision, so a re-run
of the same commit never collides with what an earlier run exported
(EDA exporters stamp creation dates into Gerber and STEP files). Within
one generation a category manifest is created exactly once (hard-link of
a finished temp file, so readers never see a partial manifest and two
writers cannot both win). ``bundle.json`` is the seal written when the
export stage completes; ``current.json`` names the most recently sealed
generation and is what reads resolve to when no run is given. Blobs are
shared between generations. There is no delete.

Stages on different hosts exchange a generation through
``export_archive`` and ``import_archive`` (or ``push``/``pull`` between
two stores, e.g. a local one and one on a shared mount).
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import zipfile
from collections.abc import Iterable, Mapping
from pathlib import Path

from pydantic import ValidationError

from boardforge.core.hasher import content_address, sha256_hex
from boardforge.models.artifacts import ArtifactBundle, ArtifactRef, CategoryManifest
from boardforge.models.revision import Revision

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_ARCHIVE_HEADER = "generation.json"


class ArtifactNotFound(LookupError):
    """Raised when a key is missing although its producer completed."""


class StageNotRun(LookupError):
    """Raised when a key is missing because its producing stage never completed."""


class ArtifactConflict(RuntimeError):
    """Raised when a write-once key is written again with different content."""


class ArtifactIntegrityError(RuntimeError):
    """Raised when a stored blob's hash does not match its address."""


def _check_key(kind: str, value: str) -> str:
    if not _SAFE_KEY.match(value):
        raise ValueError(f"Invalid {kind} {value!r}")
    return value


class ArtifactStore:
    """Write-once-per-(revision, run, category) store.

    Writes always name the run that produced them. Reads take an optional
    ``run_id``; without one they resolve to the revision's current sealed
    generation.

    Parameters
    ----------
    base_path:
        Root directory for artifact storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _blob_path(self, digest: str) -> Path:
        return self._base / "blobs" / digest[:2] / digest[2:4] / f"{digest}.dat"

    def _revision_dir(self, revision: Revision) -> Path:
        return self._base / "revisions" / _check_key("revision", revision.long)

    def _run_dir(self, revision: Revision, run_id: str) -> Path:
        return self._revision_dir(revision) / "runs" / _check_key("run", run_id)

    def _manifest_path(self, revision: Revision, run_id: str, category: str) -> Path:
        return (
            self._run_dir(revision, run_id)
            / "categories"
            / f"{_check_key('category', category)}.json"
        )

    def _bundle_path(self, revision: Revision, run_id: str) -> Path:
        return self._run_dir(revision, run_id) / "bundle.json"

    def _current_path(self, revision: Revision) -> Path:
        return self._revision_dir(revision) / "current.json"

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    @staticmethod
    def _replace(path: Path, data: bytes) -> None:
        """Write ``path`` atomically, replacing any previous content."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    @staticmethod
    def _write_once(path: Path, data: bytes) -> bool:
        """Create ``path`` atomically; return False if it already exists."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            try:
                os.link(tmp, path)
            except FileExistsError:
                return False
            return True
        finally:
            Path(tmp).unlink(missing_ok=True)

    def _store_blob(self, data: bytes) -> str:
        digest = sha256_hex(data)
        path = self._blob_path(digest)
        if path.exists():
            if sha256_hex(path.read_bytes()) != digest:
                raise ArtifactIntegrityError(
                    f"Existing blob {digest} failed integrity check"
                )
            return digest
        self._replace(path, data)
        return digest

    def _read_blob(self, ref: ArtifactRef) -> bytes:
        digest = ref.content_address.removeprefix("sha256:")
        path = self._blob_path(digest)
        if not path.exists():
            raise ArtifactNotFound(f"Blob missing for {ref.name}: {ref.content_address}")
        data = path.read_bytes()
        if sha256_hex(data) != digest:
            raise ArtifactIntegrityError(
                f"Blob for {ref.name} does not match {ref.content_address}"
            )
        return data

    # ------------------------------------------------------------------
    # Generations
    # ------------------------------------------------------------------

    def current_run(self, revision: Revision) -> str | None:
        """The run id of the most recently sealed generation, if any."""
        path = self._current_path(revision)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))["run_id"]

    def runs(self, revision: Revision) -> list[str]:
        """Every run that wrote a generation of ``revision``, sealed or not."""
        runs_dir = self._revision_dir(revision) / "runs"
        if not runs_dir.is_dir():
            return []
        return sorted(p.name for p in runs_dir.iterdir() if p.is_dir())

    def _resolve(self, revision: Revision, run_id: str | None) -> str | None:
        if run_id is not None:
            return _check_key("run", run_id)
        return self.current_run(revision)

    def _mark_current(self, revision: Revision, run_id: str) -> None:
        self._replace(
            self._current_path(revision), json.dumps({"run_id": run_id}).encode("utf-8")
        )

    # ------------------------------------------------------------------
    # Put / get / list
    # ------------------------------------------------------------------

    def put(
        self,
        revision: Revision,
        category: str,
        blobs: Mapping[str, bytes],
        *,
        run_id: str,
    ) -> CategoryManifest:
        """Write the blob set for a (revision, run, category) key exactly once.

        Re-putting identical content is a no-op that returns the existing
        manifest; different content raises ``ArtifactConflict``.
        """
        if not blobs:
            raise ValueError(f"No blobs given for category {category!r}")
        path = self._manifest_path(revision, run_id, category)

        refs = [
            ArtifactRef(
                name=name,
                content_address=f"sha256:{self._store_blob(data)}",
                size_bytes=len(data),
            )
            for name, data in sorted(blobs.items())
        ]
        manifest = CategoryManifest(
            revision=revision, run_id=run_id, category=category, artifacts=refs
        )

        if self._write_once(path, manifest.model_dump_json(indent=2).encode("utf-8")):
            logger.info(
                "Stored %d artifact(s) for %s/%s in %s",
                len(refs),
                revision.short,
                category,
                run_id,
            )
            return manifest

        existing = self._load_manifest(path)
        if existing.artifacts != refs:
            raise ArtifactConflict(
                f"{revision.short}/{category} was already written with different "
                f"content in {run_id}"
            )
        return existing

    def _locate(self, revision: Revision, category: str, run_id: str | None) -> Path:
        """Path of an existing manifest, or the lookup error that explains its absence."""
        run = self._resolve(revision, run_id)
        if run is None:
            raise StageNotRun(
                f"No bundle sealed for {revision.short}; {category!r} was never produced"
            )
        path = self._manifest_path(revision, run, category)
        if path.exists():
            return path
        if not self._bundle_path(revision, run).exists():
            raise StageNotRun(
                f"{run} never sealed {revision.short}; {category!r} was never produced"
            )
        raise ArtifactNotFound(f"{revision.short}/{category} not found in {run}")

    def get(
        self, revision: Revision, category: str, *, run_id: str | None = None
    ) -> dict[str, bytes]:
        """Return the blob set of a key, byte-for-byte as written."""
        manifest = self._load_manifest(self._locate(revision, category, run_id))
        return {ref.name: self._read_blob(ref) for ref in manifest.artifacts}

    def list(self, revision: Revision, *, run_id: str | None = None) -> set[str]:
        """Return the categories stored for one generation of a revision."""
        run = self._resolve(revision, run_id)
        if run is None:
            return set()
        categories_dir = self._run_dir(revision, run) / "categories"
        if not categories_dir.is_dir():
            return set()
        return {p.stem for p in categories_dir.glob("*.json")}

    def manifest(
        self, revision: Revision, category: str, *, run_id: str | None = None
    ) -> CategoryManifest:
        return self._load_manifest(self._locate(revision, category, run_id))

    @staticmethod
    def _load_manifest(path: Path) -> CategoryManifest:
        return CategoryManifest.model_validate_json(path.read_bytes())

    # ------------------------------------------------------------------
    # Bundle seal
    # ------------------------------------------------------------------

    @staticmethod
    def _bundle_digest(categories: Mapping[str, list[ArtifactRef]]) -> str:
        return content_address(
            {
                category: [ref.model_dump(mode="json") for ref in refs]
                for category, refs in categories.items()
            }
        )

    def _check_bundle(self, sealed: ArtifactBundle, revision: Revision, run_id: str) -> None:
        """Reject an imported seal that does not describe the imported manifests."""
        if sealed.revision != revision or sealed.run_id != run_id:
            raise ArtifactIntegrityError(
                f"Sealed bundle is for {sealed.revision.short}/{sealed.run_id}, "
                f"archive is {revision.short}/{run_id}"
            )
        for category, refs in sealed.categories.items():
            path = self._manifest_path(revision, run_id, category)
            if not path.exists() or self._load_manifest(path).artifacts != refs:
                raise ArtifactIntegrityError(
                    f"Sealed bundle disagrees with manifest {category!r}"
                )
        if self._bundle_digest(sealed.categories) != sealed.bundle_digest:
            raise ArtifactIntegrityError(
                f"Sealed bundle digest {sealed.bundle_digest} does not match its contents"
            )

    def seal(
        self,
        revision: Revision,
        categories: Iterable[str] | None = None,
        *,
        run_id: str,
    ) -> ArtifactBundle:
        """Freeze ``categories`` (default: all stored so far) as the run's bundle.

        Sealing the same generation again with the same content returns the
        existing bundle, so a retried export that names its own categories
        stays idempotent even after post-seal categories were added. A
        newly written seal becomes the revision's current generation.
        """
        names = sorted(
            self.list(revision, run_id=run_id) if categories is None else set(categories)
        )
        frozen: dict[str, list[ArtifactRef]] = {}
        for category in names:
            path = self._manifest_path(revision, run_id, category)
            if not path.exists():
                raise ArtifactNotFound(
                    f"Cannot seal {revision.short}: {category!r} was not stored in {run_id}"
                )
            frozen[category] = self._load_manifest(path).artifacts
        digest = self._bundle_digest(frozen)
        bundle = ArtifactBundle(
            revision=revision, run_id=run_id, categories=frozen, bundle_digest=digest
        )
        path = self._bundle_path(revision, run_id)
        if self._write_once(path, bundle.model_dump_json(indent=2).encode("utf-8")):
            self._mark_current(revision, run_id)
            logger.info("Sealed bundle %s for %s in %s", digest[:19], revision.short, run_id)
            return bundle

        existing = self.bundle(revision, run_id=run_id)
        if existing.bundle_digest != digest:
            raise ArtifactConflict(f"Bundle for {revision.short} is already sealed in {run_id}")
        return existing

    def is_sealed(self, revision: Revision, *, run_id: str | None = None) -> bool:
        run = self._resolve(revision, run_id)
        return run is not None and self._bundle_path(revision, run).exists()

    def bundle(self, revision: Revision, *, run_id: str | None = None) -> ArtifactBundle:
        run = self._resolve(revision, run_id)
        if run is None or not self._bundle_path(revision, run).exists():
            raise StageNotRun(f"No bundle sealed for {revision.short}")
        return ArtifactBundle.model_validate_json(self._bundle_path(revision, run).read_bytes())

    # ------------------------------------------------------------------
    # Push / pull
    # ------------------------------------------------------------------

    def export_archive(
        self, revision: Revision, archive_path: Path, *, run_id: str | None = None
    ) -> Path:
        """Write one generation's manifests, its seal and all referenced blobs to a zip."""
        run = self._resolve(revision, run_id)
        if run is None:
            raise StageNotRun(f"No bundle sealed for {revision.short}")
        archive_path = Path(archive_path)
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        run_dir = self._run_dir(revision, run)
        header = {"revision": revision.model_dump(mode="json"), "run_id": run}
        written: set[str] = set()
        with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(_ARCHIVE_HEADER, json.dumps(header))
            for category in sorted(self.list(revision, run_id=run)):
                manifest_path = self._manifest_path(revision, run, category)
                zf.write(manifest_path, manifest_path.relative_to(run_dir).as_posix())
                for ref in self._load_manifest(manifest_path).artifacts:
                    digest = ref.content_address.removeprefix("sha256:")
                    if digest in written:
                        continue
                    written.add(digest)
                    zf.writestr(f"blobs/{digest}.dat", self._read_blob(ref))
            bundle_path = self._bundle_path(revision, run)
            if bundle_path.exists():
                zf.write(bundle_path, "bundle.json")
        return archive_path

    @staticmethod
    def _read_header(zf: zipfile.ZipFile, archive_path: Path) -> tuple[Revision, str]:
        try:
            header = json.loads(zf.read(_ARCHIVE_HEADER))
            revision = Revision.model_validate(header["revision"])
            run_id = _check_key("run", header["run_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ArtifactIntegrityError(
                f"{archive_path} has no valid {_ARCHIVE_HEADER}"
            ) from exc
        return revision, run_id

    def import_archive(self, archive_path: Path) -> tuple[Revision, str]:
        """Load an archive produced by ``export_archive`` into this store.

        Blobs are re-hashed; write-once rules apply to every manifest.
        Returns the revision and run id of the imported generation.
        """
        try:
            zf = zipfile.ZipFile(archive_path)
        except zipfile.BadZipFile as exc:
            raise ArtifactIntegrityError(f"{archive_path} is not an artifact archive") from exc
        with zf:
            names = zf.namelist()
            revision, run_id = self._read_header(zf, archive_path)
            for name in names:
                if not name.startswith("categories/"):
                    continue
                try:
                    manifest = CategoryManifest.model_validate_json(zf.read(name))
                except ValidationError as exc:
                    raise ArtifactIntegrityError(f"Archived manifest {name} is malformed") from exc
                blobs: dict[str, bytes] = {}
                for ref in manifest.artifacts:
                    digest = ref.content_address.removeprefix("sha256:")
                    try:
                        data = zf.read(f"blobs/{digest}.dat")
                    except KeyError as exc:
                        raise ArtifactIntegrityError(
                            f"Archive has no blob for {ref.name} ({ref.content_address})"
                        ) from exc
                    if sha256_hex(data) != digest:
                        raise ArtifactIntegrityError(
                            f"Archived blob {ref.name} does not match {ref.content_address}"
                        )
                    blobs[ref.name] = data
                self.put(revision, manifest.category, blobs, run_id=run_id)
            if "bundle.json" in names:
                sealed = ArtifactBundle.model_validate_json(zf.read("bundle.json"))
                self._check_bundle(sealed, revision, run_id)
                path = self._bundle_path(revision, run_id)
                if self._write_once(path, zf.read("bundle.json")):
                    self._mark_current(revision, run_id)
                elif self.bundle(revision, run_id=run_id).bundle_digest != sealed.bundle_digest:
                    raise ArtifactConflict(
                        f"Bundle for {revision.short} is already sealed in {run_id}"
                    )
        logger.info("Imported %s/%s from %s", revision.short, run_id, archive_path)
        return revision, run_id

    def push(
        self, revision: Revision, destination: ArtifactStore, *, run_id: str | None = None
    ) -> str:
        """Copy one generation of a revision into another store; return its run id."""
        with tempfile.TemporaryDirectory() as tmp:
            archive = self.export_archive(revision, Path(tmp) / "bundle.zip", run_id=run_id)
            _, pushed = destination.import_archive(archive)
        return pushed

    def pull(
        self, revision: Revision, source: ArtifactStore, *, run_id: str | None = None
    ) -> str:
        """Copy one generation of a revision from another store into this one."""
        return source.push(revision, self, run_id=run_id)
