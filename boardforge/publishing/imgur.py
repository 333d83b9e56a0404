"""Imgur anonymous upload (``POST /3/image`` with a Client-ID)."""

from __future__ import annotations

import base64
import logging

import requests

from boardforge.publishing.base import ImageHostError

logger = logging.getLogger(__name__)

IMGUR_UPLOAD_URL = "https://api.imgur.com/3/image"


class ImgurImageHost:
    """Uploads previews to Imgur and returns the hosted link.

    Every failure mode (network error, HTTP error, an unexpected body)
    is reported as ``ImageHostError``; a null link never escapes.
    """

    def __init__(
        self,
        client_id: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        url: str = IMGUR_UPLOAD_URL,
    ) -> None:
        if not client_id:
            raise ValueError("An Imgur client id is required")
        self._client_id = client_id
        self._session = session or requests.Session()
        self._timeout = timeout
        self._url = url

    def upload(self, name: str, data: bytes) -> str:
        try:
            resp = self._session.post(
                self._url,
                headers={"Authorization": f"Client-ID {self._client_id}"},
                data={
                    "image": base64.b64encode(data).decode("ascii"),
                    "type": "base64",
                    "name": name,
                },
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ImageHostError(f"Upload of {name!r} failed: {exc}") from exc

        if not resp.ok:
            raise ImageHostError(
                f"Upload of {name!r} failed: HTTP {resp.status_code} {resp.text[:120]}"
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise ImageHostError(f"Upload of {name!r} returned invalid JSON") from exc
        data_field = body.get("data") if isinstance(body, dict) else None
        link = data_field.get("link") if isinstance(data_field, dict) else None
        if not link:
            raise ImageHostError(f"Upload of {name!r} returned no link")
        logger.debug("Hosted %s at %s", name, link)
        return link
