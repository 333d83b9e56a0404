"""Revision and trigger models — the primary key of every pipeline run."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, model_validator

SHORT_SHA_LENGTH = 7


class Revision(BaseModel):
    """Identifies one pipeline run by the triggering change.

    ``short`` is always a prefix of ``long``.
    """

    model_config = ConfigDict(frozen=True)

    short: str
    long: str

    @model_validator(mode="after")
    def _check_prefix(self) -> Revision:
        if not self.long:
            raise ValueError("revision id must not be empty")
        if not self.short or not self.long.startswith(self.short):
            raise ValueError(
                f"short revision {self.short!r} is not a prefix of {self.long!r}"
            )
        return self

    @classmethod
    def from_sha(cls, sha: str, short_length: int = SHORT_SHA_LENGTH) -> Revision:
        """Derive a Revision from a full commit id."""
        sha = sha.strip()
        return cls(short=sha[:short_length], long=sha)

    def __str__(self) -> str:
        return self.short


class TriggerEvent(BaseModel):
    """The external event a run is bound to: a revision on a branch."""

    model_config = ConfigDict(frozen=True)

    revision: Revision
    branch: str
    is_ci: bool = True

    @model_validator(mode="before")
    @classmethod
    def _strip_ref(cls, data: object) -> object:
        if isinstance(data, dict) and isinstance(data.get("branch"), str):
            data = dict(data)
            data["branch"] = data["branch"].removeprefix("refs/heads/")
        return data

    @classmethod
    def from_sha(cls, sha: str, branch: str, *, is_ci: bool = True) -> TriggerEvent:
        return cls(revision=Revision.from_sha(sha), branch=branch, is_ci=is_ci)

    def substitutions(self) -> dict[str, str]:
        """The named substitution slots every tool invocation may use."""
        return {
            "BRANCH": self.branch,
            "SHORT_SHA": self.revision.short,
            "LONG_SHA": self.revision.long,
            "IS_CI": "1" if self.is_ci else "0",
        }
