"""boardforge publishing — release publishers, image hosts, release bodies."""

from boardforge.publishing.base import (
    ImageHost,
    ImageHostError,
    PublishError,
    ReleasePublisher,
)
from boardforge.publishing.github import (
    GitHubClient,
    GitHubReleasePublisher,
    GitHubTagHistory,
)
from boardforge.publishing.imgur import ImgurImageHost
from boardforge.publishing.local import LocalImageHost, LocalReleasePublisher
from boardforge.publishing.release_body import build_release_assets, render_release_body

__all__ = [
    "ImageHost",
    "ImageHostError",
    "PublishError",
    "ReleasePublisher",
    "GitHubClient",
    "GitHubReleasePublisher",
    "GitHubTagHistory",
    "ImgurImageHost",
    "LocalImageHost",
    "LocalReleasePublisher",
    "build_release_assets",
    "render_release_body",
]
