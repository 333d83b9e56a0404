"""Tests for the publishing backends — GitHub, Imgur, local, release body."""

from __future__ import annotations

import io
import json
import zipfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from boardforge.core.artifact_store import ArtifactStore
from boardforge.core.tag_allocator import TagAllocator, TagConflict, TagHistory
from boardforge.models.config import AssetRule
from boardforge.models.release import ReleaseAsset, ReleaseRequest, Tag
from boardforge.models.revision import Revision
from boardforge.publishing import (
    GitHubClient,
    GitHubReleasePublisher,
    GitHubTagHistory,
    ImageHost,
    ImageHostError,
    ImgurImageHost,
    LocalImageHost,
    LocalReleasePublisher,
    PublishError,
    ReleasePublisher,
    build_release_assets,
    render_release_body,
)
from boardforge.publishing.release_body import zip_blobs


def _response(status: int = 200, body=None, *, links=None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 400
    resp.json.return_value = body if body is not None else {}
    resp.text = json.dumps(body) if body is not None else ""
    resp.links = links or {}
    if not resp.ok:
        resp.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status}")
    return resp


def _request(tag: str = "ci-build-0001", **fields) -> ReleaseRequest:
    return ReleaseRequest(
        tag=Tag(sequence=int(tag.rsplit("-", 1)[1]), label=tag),
        title="CI Build #1",
        body="body",
        target="abc1234" + "0" * 33,
        **fields,
    )


@pytest.fixture
def session() -> MagicMock:
    s = MagicMock(spec=requests.Session)
    s.headers = {}
    return s


class TestGitHubClient:
    def test_sets_auth_headers(self, session):
        GitHubClient("acme/board", "t0ken", session=session)
        assert session.headers["Authorization"] == "Bearer t0ken"
        assert session.headers["Accept"] == "application/vnd.github+json"

    def test_repository_must_be_owner_name(self, session):
        with pytest.raises(ValueError):
            GitHubClient("board", "t", session=session)

    def test_repo_url(self, session):
        client = GitHubClient("acme/board", "t", session=session, api_url="https://gh.local/api/")
        assert client.repo_url("/releases") == "https://gh.local/api/repos/acme/board/releases"

    def test_tag_refs_follows_pagination(self, session):
        session.request.side_effect = [
            _response(
                body=[{"ref": "refs/tags/ci-build-0001"}, {"ref": "refs/tags/v1.0"}],
                links={"next": {"url": "https://api.github.com/page2"}},
            ),
            _response(body=[{"ref": "refs/tags/ci-build-0002"}]),
        ]
        labels = GitHubClient("acme/board", "t", session=session).tag_refs()
        assert labels == ["ci-build-0001", "v1.0", "ci-build-0002"]
        assert session.request.call_args_list[1].args[1] == "https://api.github.com/page2"

    def test_create_tag_ref(self, session):
        session.request.return_value = _response(201, {"ref": "refs/tags/ci-build-0001"})
        GitHubClient("acme/board", "t", session=session).create_tag_ref("ci-build-0001", "abc")
        method, url = session.request.call_args.args
        assert method == "POST"
        assert url.endswith("/repos/acme/board/git/refs")
        assert session.request.call_args.kwargs["json"] == {
            "ref": "refs/tags/ci-build-0001",
            "sha": "abc",
        }

    def test_existing_ref_is_tag_conflict(self, session):
        session.request.return_value = _response(422, {"message": "Reference already exists"})
        with pytest.raises(TagConflict):
            GitHubClient("acme/board", "t", session=session).create_tag_ref("ci-build-0001", "abc")

    @pytest.mark.parametrize(
        "body", [{"message": "Object does not exist"}, {"message": "Reference update failed"}]
    )
    def test_other_422_is_publish_error(self, session, body):
        session.request.return_value = _response(422, body)
        with pytest.raises(PublishError, match="422"):
            GitHubClient("acme/board", "t", session=session).create_tag_ref("ci-build-0001", "bad")

    def test_422_without_json_is_publish_error(self, session):
        resp = _response(422)
        resp.json.side_effect = ValueError("no json")
        resp.text = "<html>Unprocessable</html>"
        session.request.return_value = resp
        with pytest.raises(PublishError):
            GitHubClient("acme/board", "t", session=session).create_tag_ref("ci-build-0001", "abc")

    def test_other_errors_propagate(self, session):
        session.request.return_value = _response(500, {"message": "oops"})
        with pytest.raises(requests.HTTPError):
            GitHubClient("acme/board", "t", session=session).create_tag_ref("ci-build-0001", "abc")


class TestGitHubTagHistory:
    def test_allocator_retries_on_422(self, session):
        session.request.side_effect = [
            _response(body=[{"ref": "refs/tags/ci-build-0007"}]),
            _response(422, {"message": "Reference already exists"}),
            _response(body=[{"ref": "refs/tags/ci-build-0007"}, {"ref": "refs/tags/ci-build-0008"}]),
            _response(201, {}),
        ]
        history = GitHubTagHistory(GitHubClient("acme/board", "t", session=session))
        assert isinstance(history, TagHistory)
        tag = TagAllocator(history=history).allocate(target="abc")
        assert tag.label == "ci-build-0009"

    def test_bad_target_is_not_retried(self, session):
        session.request.side_effect = [
            _response(body=[{"ref": "refs/tags/ci-build-0007"}]),
            _response(422, {"message": "Object does not exist"}),
        ]
        history = GitHubTagHistory(GitHubClient("acme/board", "t", session=session))
        with pytest.raises(PublishError):
            TagAllocator(history=history).allocate(target="not-a-commit")
        assert session.request.call_count == 2


class TestGitHubReleasePublisher:
    def test_creates_release_and_uploads_assets(self, session):
        session.request.side_effect = [
            _response(
                201,
                {
                    "id": 7,
                    "html_url": "https://github.com/acme/board/releases/tag/ci-build-0001",
                    "upload_url": "https://uploads.github.com/repos/acme/board/releases/7/assets{?name,label}",
                },
            ),
            _response(201, {}),
        ]
        publisher = GitHubReleasePublisher(GitHubClient("acme/board", "t", session=session))
        assert isinstance(publisher, ReleasePublisher)
        url = publisher.publish(
            _request(assets=[ReleaseAsset(name="BOM-abc1234.csv", data=b"x", content_type="text/csv")])
        )
        assert url.endswith("/releases/tag/ci-build-0001")

        create, upload = session.request.call_args_list
        payload = create.kwargs["json"]
        assert payload["tag_name"] == "ci-build-0001"
        assert payload["prerelease"] is True
        assert payload["target_commitish"].startswith("abc1234")
        assert upload.args[1] == "https://uploads.github.com/repos/acme/board/releases/7/assets"
        assert upload.kwargs["params"] == {"name": "BOM-abc1234.csv"}
        assert upload.kwargs["headers"] == {"Content-Type": "text/csv"}

    def test_http_error_is_publish_error(self, session):
        session.request.return_value = _response(422, {"message": "already_exists"})
        publisher = GitHubReleasePublisher(GitHubClient("acme/board", "t", session=session))
        with pytest.raises(PublishError):
            publisher.publish(_request())

    def test_network_error_is_publish_error(self, session):
        session.request.side_effect = requests.ConnectionError("down")
        publisher = GitHubReleasePublisher(GitHubClient("acme/board", "t", session=session))
        with pytest.raises(PublishError, match="down"):
            publisher.publish(_request())

    def test_failed_upload_is_publish_error(self, session):
        session.request.side_effect = [
            _response(201, {"id": 7, "upload_url": "https://uploads/assets{?name}"}),
            _response(500, {"message": "nope"}),
        ]
        publisher = GitHubReleasePublisher(GitHubClient("acme/board", "t", session=session))
        with pytest.raises(PublishError, match="BOM"):
            publisher.publish(_request(assets=[ReleaseAsset(name="BOM.csv", data=b"x")]))


class TestImgurImageHost:
    def test_returns_link(self, session):
        session.post.return_value = _response(200, {"data": {"link": "https://i.imgur.com/a.png"}})
        host = ImgurImageHost("client", session=session)
        assert isinstance(host, ImageHost)
        assert host.upload("top.png", b"PNG") == "https://i.imgur.com/a.png"
        kwargs = session.post.call_args.kwargs
        assert kwargs["headers"] == {"Authorization": "Client-ID client"}
        assert kwargs["data"]["type"] == "base64"

    @pytest.mark.parametrize(
        "resp",
        [
            _response(503, {"data": {"error": "over capacity"}}),
            _response(200, {"data": {"link": None}}),
            _response(200, {"data": {}}),
            _response(200, ["not", "an", "object"]),
        ],
    )
    def test_bad_responses_are_image_host_errors(self, session, resp):
        session.post.return_value = resp
        with pytest.raises(ImageHostError):
            ImgurImageHost("client", session=session).upload("top.png", b"PNG")

    def test_invalid_json(self, session):
        resp = _response(200)
        resp.json.side_effect = ValueError("no json")
        session.post.return_value = resp
        with pytest.raises(ImageHostError, match="invalid JSON"):
            ImgurImageHost("client", session=session).upload("top.png", b"PNG")

    def test_network_error(self, session):
        session.post.side_effect = requests.Timeout("slow")
        with pytest.raises(ImageHostError):
            ImgurImageHost("client", session=session).upload("top.png", b"PNG")

    def test_client_id_required(self):
        with pytest.raises(ValueError):
            ImgurImageHost("")


class TestLocalBackends:
    def test_release_directory(self, tmp_dir: Path):
        publisher = LocalReleasePublisher(tmp_dir / "releases")
        uri = publisher.publish(_request(assets=[ReleaseAsset(name="Gerber.zip", data=b"zip")]))
        release_dir = tmp_dir / "releases" / "ci-build-0001"
        assert uri == release_dir.as_uri()
        assert (release_dir / "Gerber.zip").read_bytes() == b"zip"
        assert (release_dir / "body.md").read_text() == "body"
        meta = json.loads((release_dir / "release.json").read_text())
        assert meta["tag"] == "ci-build-0001"
        assert meta["assets"] == ["Gerber.zip"]

    def test_label_published_once(self, tmp_dir: Path):
        publisher = LocalReleasePublisher(tmp_dir / "releases")
        publisher.publish(_request())
        with pytest.raises(PublishError):
            publisher.publish(_request())

    def test_image_host(self, tmp_dir: Path):
        host = LocalImageHost(tmp_dir / "images")
        url = host.upload("png/top.png", b"PNG")
        assert url.startswith("file://") and url.endswith(".png")
        assert host.upload("png/copy.png", b"PNG") == url

    def test_empty_image_rejected(self, tmp_dir: Path):
        with pytest.raises(ImageHostError):
            LocalImageHost(tmp_dir / "images").upload("top.png", b"")


class TestReleaseBody:
    def test_with_images(self, revision: Revision):
        body = render_release_body(
            "Automated build.",
            revision,
            {"Top Layer": "https://i/top.png", "Bottom Layer": "https://i/bottom.png"},
        )
        assert body == (
            "Automated build.\n\n"
            f"On commit: {revision.long}\n"
            "\n### Previews\n"
            "![Top Layer](https://i/top.png)\n"
            "![Bottom Layer](https://i/bottom.png)\n"
        )

    def test_without_images(self, revision: Revision):
        body = render_release_body("Automated build.", revision, {})
        assert body == f"Automated build.\n\nOn commit: {revision.long}\n"

    def test_zip_is_deterministic(self):
        blobs = {"b.gbr": b"b", "a.gbr": b"a"}
        first = zip_blobs(blobs)
        assert first == zip_blobs(dict(reversed(list(blobs.items()))))
        with zipfile.ZipFile(io.BytesIO(first)) as zf:
            assert zf.namelist() == ["a.gbr", "b.gbr"]


class TestReleaseAssets:
    def test_archive_and_single_file(
        self, artifact_store: ArtifactStore, revision: Revision, run_id: str
    ):
        artifact_store.put(
            revision, "fabrication", {"gerber/F.gbr": b"f", "gerber/B.gbr": b"b"}, run_id=run_id
        )
        artifact_store.put(revision, "schematic", {"schematic/board.pdf": b"%PDF"}, run_id=run_id)
        bundle = artifact_store.seal(revision, run_id=run_id)
        assets = build_release_assets(
            artifact_store,
            bundle,
            [
                AssetRule(category="fabrication", label="Gerber"),
                AssetRule(category="schematic", label="Schematic", archive=False),
                AssetRule(category="3d-model-step", label="STEP"),
            ],
        )
        assert [a.name for a in assets] == ["Gerber-abc1234.zip", "Schematic-abc1234.pdf"]
        assert assets[0].content_type == "application/zip"
        assert assets[1].content_type == "application/pdf"
        assert assets[1].data == b"%PDF"

    def test_single_file_rule_with_many_blobs_zips(
        self, artifact_store: ArtifactStore, revision: Revision, run_id: str
    ):
        artifact_store.put(revision, "bom", {"a.csv": b"a", "b.csv": b"b"}, run_id=run_id)
        bundle = artifact_store.seal(revision, run_id=run_id)
        (asset,) = build_release_assets(
            artifact_store, bundle, [AssetRule(category="bom", label="BOM", archive=False)]
        )
        assert asset.name == "BOM-abc1234.zip"

    def test_assets_come_from_the_bundle_run(
        self, artifact_store: ArtifactStore, revision: Revision
    ):
        artifact_store.put(revision, "bom", {"bom.csv": b"first"}, run_id="bf-run-a")
        first = artifact_store.seal(revision, run_id="bf-run-a")
        artifact_store.put(revision, "bom", {"bom.csv": b"second"}, run_id="bf-run-b")
        artifact_store.seal(revision, run_id="bf-run-b")
        (asset,) = build_release_assets(
            artifact_store, first, [AssetRule(category="bom", label="BOM", archive=False)]
        )
        assert asset.data == b"first"
