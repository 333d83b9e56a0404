"""GitHub REST backends: tag history over ``git/refs`` and releases.

Creating ``refs/tags/{label}`` is atomic on GitHub's side; a second
create of the same ref answers HTTP 422 "Reference already exists",
which is exactly the reservation semantics ``TagAllocator`` needs.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import requests

from boardforge.core.tag_allocator import TagConflict
from boardforge.models.release import ReleaseRequest
from boardforge.publishing.base import PublishError

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
_URI_TEMPLATE = re.compile(r"\{[^}]*\}$")
_REF_EXISTS = "reference already exists"


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    return str(body.get("message", "")) if isinstance(body, dict) else ""


class GitHubClient:
    """Thin authenticated wrapper over a ``requests.Session``.

    Parameters
    ----------
    repository:
        ``owner/name``.
    token:
        A token allowed to create refs and releases.
    session:
        Injected for tests; a fresh ``requests.Session`` otherwise.
    """

    def __init__(
        self,
        repository: str,
        token: str,
        *,
        session: requests.Session | None = None,
        api_url: str = GITHUB_API_URL,
        timeout: float = 30.0,
    ) -> None:
        if repository.count("/") != 1:
            raise ValueError(f"Repository must be 'owner/name', got {repository!r}")
        self.repository = repository
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout

    def repo_url(self, path: str) -> str:
        return f"{self._api_url}/repos/{self.repository}/{path.lstrip('/')}"

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self._timeout)
        return self._session.request(method, url, **kwargs)

    def tag_refs(self) -> list[str]:
        """Return every tag name, following pagination."""
        labels: list[str] = []
        url: str | None = self.repo_url("git/matching-refs/tags/")
        while url:
            resp = self.request("GET", url, params={"per_page": 100})
            resp.raise_for_status()
            for ref in resp.json():
                name = ref.get("ref", "")
                if name.startswith("refs/tags/"):
                    labels.append(name.removeprefix("refs/tags/"))
            url = (resp.links or {}).get("next", {}).get("url")
        return labels

    def create_tag_ref(self, label: str, sha: str) -> None:
        """Create ``refs/tags/{label}``; a ref that already exists is a ``TagConflict``.

        GitHub answers 422 for other rejections too (unknown sha, malformed
        ref), and those are publish errors, not lost races.
        """
        resp = self.request(
            "POST",
            self.repo_url("git/refs"),
            json={"ref": f"refs/tags/{label}", "sha": sha},
        )
        if resp.status_code == 422:
            if _REF_EXISTS in _error_message(resp).lower():
                raise TagConflict(label, f"Tag {label!r} already exists on {self.repository}")
            raise PublishError(
                f"Creating tag {label} on {self.repository} failed: "
                f"HTTP 422 {resp.text[:200]}"
            )
        resp.raise_for_status()


class GitHubTagHistory:
    """``TagHistory`` over the repository's tag refs."""

    def __init__(self, client: GitHubClient) -> None:
        self._client = client

    def labels(self) -> list[str]:
        return self._client.tag_refs()

    def reserve(self, label: str, target: str) -> None:
        self._client.create_tag_ref(label, target)


class GitHubReleasePublisher:
    """Creates a GitHub release for an already reserved tag and uploads assets."""

    def __init__(self, client: GitHubClient) -> None:
        self._client = client

    def publish(self, request: ReleaseRequest) -> str:
        try:
            resp = self._client.request(
                "POST",
                self._client.repo_url("releases"),
                json={
                    "tag_name": request.tag.label,
                    "target_commitish": request.target,
                    "name": request.title,
                    "body": request.body,
                    "draft": request.draft,
                    "prerelease": request.prerelease,
                },
            )
        except requests.RequestException as exc:
            raise PublishError(f"Creating release {request.tag.label} failed: {exc}") from exc
        if not resp.ok:
            raise PublishError(
                f"Creating release {request.tag.label} failed: "
                f"HTTP {resp.status_code} {resp.text[:200]}"
            )
        release = resp.json()
        upload_url = _URI_TEMPLATE.sub("", release.get("upload_url", ""))

        for asset in request.assets:
            try:
                up = self._client.request(
                    "POST",
                    upload_url,
                    params={"name": asset.name},
                    data=asset.data,
                    headers={"Content-Type": asset.content_type},
                )
            except requests.RequestException as exc:
                raise PublishError(f"Uploading {asset.name} failed: {exc}") from exc
            if not up.ok:
                raise PublishError(
                    f"Uploading {asset.name} failed: HTTP {up.status_code} {up.text[:200]}"
                )
            logger.info("Uploaded %s to %s", asset.name, request.tag.label)

        return str(release.get("html_url") or release.get("id", ""))
