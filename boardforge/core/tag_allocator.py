"""Release tag allocation: ``max + 1`` over history, reserved or retried.

Computing the next label is plain arithmetic and is not what makes it
safe. The reservation (creating a uniquely named reference in the backing
history) is the collision-detection point: a history refuses a label that
already exists with ``TagConflict``, and the allocator then re-reads the
history and tries again, a bounded number of times.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol, runtime_checkable

from boardforge.core.tool_runner import ToolFailure, ToolRunner
from boardforge.models.release import Tag
from boardforge.models.tools import ToolInvocation

logger = logging.getLogger(__name__)

_SAFE_LABEL = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class TagConflict(RuntimeError):
    """Raised when a tag label is already taken at reservation time."""

    def __init__(self, label: str, message: str | None = None) -> None:
        self.label = label
        super().__init__(message or f"Tag {label!r} already exists")


# ---------------------------------------------------------------------------
# Backing histories
# ---------------------------------------------------------------------------


@runtime_checkable
class TagHistory(Protocol):
    """Protocol for the store of previously allocated tags."""

    def labels(self) -> list[str]:
        """Return every existing tag label."""
        ...

    def reserve(self, label: str, target: str) -> None:
        """Create ``label`` pointing at ``target``; ``TagConflict`` if taken."""
        ...


class FileTagHistory:
    """One file per tag in a directory; exclusive create is the reservation.

    Works on any filesystem that honours ``O_EXCL``, including a shared
    mount used by several CI workers.
    """

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    def labels(self) -> list[str]:
        return sorted(p.name for p in self._dir.iterdir() if p.is_file())

    def reserve(self, label: str, target: str) -> None:
        if not _SAFE_LABEL.match(label):
            raise ValueError(f"Invalid tag label {label!r}")
        try:
            with (self._dir / label).open("x", encoding="utf-8") as fh:
                fh.write(f"{target}\n")
        except FileExistsError as exc:
            raise TagConflict(label) from exc

    def target_of(self, label: str) -> str:
        return (self._dir / label).read_text(encoding="utf-8").strip()


_GIT_LIST_LOCAL = ToolInvocation(name="git-tag-list", command=["git", "tag", "--list"])
_GIT_LIST_REMOTE = ToolInvocation(
    name="git-ls-remote-tags",
    command=["git", "ls-remote", "--tags", "--refs", "{REMOTE}"],
)
_GIT_TAG = ToolInvocation(name="git-tag", command=["git", "tag", "{LABEL}", "{TARGET}"])
_GIT_TAG_DELETE = ToolInvocation(name="git-tag-delete", command=["git", "tag", "-d", "{LABEL}"])
_GIT_PUSH_TAG = ToolInvocation(
    name="git-push-tag",
    command=["git", "push", "{REMOTE}", "refs/tags/{LABEL}"],
)

_CONFLICT_MARKERS = ("already exists", "rejected")


class GitTagHistory:
    """Tags in a git repository, optionally reserved on a remote.

    Without a remote the local ``git tag`` refusal is the reservation.
    With one, the history is read from the remote and the push of the new
    tag is the reservation; a rejected push removes the local tag again.
    """

    def __init__(
        self,
        repo_path: Path,
        *,
        remote: str | None = None,
        runner: ToolRunner | None = None,
    ) -> None:
        self._repo = Path(repo_path)
        self._remote = remote
        self._runner = runner or ToolRunner()

    def _git(self, invocation: ToolInvocation, **subs: str) -> str:
        return self._runner.run(invocation, subs, cwd=self._repo).stdout

    def labels(self) -> list[str]:
        if self._remote is None:
            return [line.strip() for line in self._git(_GIT_LIST_LOCAL).splitlines() if line.strip()]
        labels = []
        for line in self._git(_GIT_LIST_REMOTE, REMOTE=self._remote).splitlines():
            _, _, ref = line.partition("\t")
            if ref.startswith("refs/tags/"):
                labels.append(ref.removeprefix("refs/tags/"))
        return labels

    def reserve(self, label: str, target: str) -> None:
        try:
            self._git(_GIT_TAG, LABEL=label, TARGET=target)
        except ToolFailure as exc:
            if "already exists" in exc.captured_output:
                raise TagConflict(label) from exc
            raise
        if self._remote is None:
            return
        try:
            self._git(_GIT_PUSH_TAG, REMOTE=self._remote, LABEL=label)
        except ToolFailure as exc:
            self._git(_GIT_TAG_DELETE, LABEL=label)
            if any(marker in exc.captured_output for marker in _CONFLICT_MARKERS):
                raise TagConflict(label) from exc
            raise


# ---------------------------------------------------------------------------
# Allocator
# ---------------------------------------------------------------------------


class TagAllocator:
    """Computes and reserves ``{prefix}{zero-padded sequence}`` tags.

    Parameters
    ----------
    prefix, width:
        The label scheme, e.g. ``ci-build-`` and 4 for ``ci-build-0007``.
    history:
        Default backing history for ``allocate``.
    max_attempts:
        Reservation attempts before a ``TagConflict`` is surfaced.
    """

    def __init__(
        self,
        prefix: str = "ci-build-",
        width: int = 4,
        *,
        history: TagHistory | None = None,
        max_attempts: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.prefix = prefix
        self.width = width
        self._history = history
        self._max_attempts = max_attempts
        self._pattern = re.compile(rf"{re.escape(prefix)}([0-9]+)")

    def parse(self, label: str) -> int | None:
        """Return the numeric suffix of a matching label, else ``None``."""
        match = self._pattern.fullmatch(label)
        return int(match.group(1)) if match else None

    def render(self, sequence: int) -> Tag:
        return Tag(sequence=sequence, label=f"{self.prefix}{sequence:0{self.width}d}")

    def next_tag(self, history: Iterable[str]) -> Tag:
        """Pure computation: one past the highest matching label."""
        numbers = [n for n in (self.parse(label) for label in history) if n is not None]
        return self.render(max(numbers, default=0) + 1)

    def allocate(self, target: str, history: TagHistory | None = None) -> Tag:
        """Compute and reserve the next tag, re-reading history on conflict."""
        history = history or self._history
        if history is None:
            raise ValueError("No tag history configured")

        attempt = 1
        while True:
            tag = self.next_tag(history.labels())
            try:
                history.reserve(tag.label, target)
            except TagConflict as exc:
                if attempt >= self._max_attempts:
                    raise TagConflict(
                        exc.label,
                        f"Could not reserve a tag after {self._max_attempts} attempts; "
                        f"last conflict on {exc.label!r}",
                    ) from exc
                logger.warning(
                    "Tag %s taken (attempt %d/%d), re-reading history",
                    tag.label,
                    attempt,
                    self._max_attempts,
                )
                attempt += 1
                continue
            logger.info("Reserved tag %s -> %s", tag.label, target)
            return tag
