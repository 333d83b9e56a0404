"""Uniform "run external tool, capture output" interface.

The runner renders an invocation's argv template, executes it, and hands
back stdout/stderr/exit status. It never interprets the files a tool
writes and never retries; both are the calling stage's business.
"""

from __future__ import annotations

import logging
import re
import string
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from boardforge.models.tools import ToolInvocation, ToolResult

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Shell convention for "command not found".
EXIT_NOT_FOUND = 127
EXIT_TIMED_OUT = -1


class ConfigurationError(ValueError):
    """Raised for a malformed template or an uncovered placeholder."""


class ToolFailure(RuntimeError):
    """Raised when an external command exits non-zero or times out."""

    def __init__(self, result: ToolResult) -> None:
        self.result = result
        self.exit_status = result.exit_status
        self.captured_output = result.captured_output
        if result.timed_out:
            reason = f"timed out after {result.duration_seconds:.1f}s"
        else:
            reason = f"exited with status {result.exit_status}"
        super().__init__(f"Tool {result.name!r} {reason}")


def placeholders(template: str) -> set[str]:
    """Return the ``{NAME}`` placeholders used in a template string."""
    try:
        fields = [f for _, f, _, _ in string.Formatter().parse(template) if f is not None]
    except ValueError as exc:
        raise ConfigurationError(f"Malformed template {template!r}: {exc}") from exc
    for name in fields:
        if not _PLACEHOLDER.match(name):
            raise ConfigurationError(
                f"Template {template!r} uses unsupported placeholder {{{name}}}"
            )
    return set(fields)


def render(template: str, substitutions: Mapping[str, str]) -> str:
    """Fill one template; every placeholder must be covered."""
    missing = placeholders(template) - set(substitutions)
    if missing:
        raise ConfigurationError(
            f"Template {template!r} has no substitution for: "
            + ", ".join(sorted(missing))
        )
    return template.format_map(substitutions)


def render_command(
    command: Sequence[str], substitutions: Mapping[str, str]
) -> list[str]:
    """Render every argument of an argv template."""
    if not command:
        raise ConfigurationError("Command template is empty")
    return [render(arg, substitutions) for arg in command]


def _decode(stream: str | bytes | None) -> str:
    if stream is None:
        return ""
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return stream


class ToolRunner:
    """Runs ``ToolInvocation`` templates as subprocesses.

    Parameters
    ----------
    timeout_seconds:
        Default bound for a single invocation; an invocation's own
        ``timeout_seconds`` wins. ``None`` means unbounded.
    cwd:
        Working directory for commands (the checked-out project).
    env:
        Environment for commands; inherits the current one when ``None``.
    recorder:
        Called with every ``ToolResult``, including failed ones, before
        a ``ToolFailure`` propagates.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        recorder: Callable[[ToolResult], None] | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._recorder = recorder

    def with_recorder(self, recorder: Callable[[ToolResult], None]) -> ToolRunner:
        """Return a runner with the same settings and a different recorder."""
        return ToolRunner(
            timeout_seconds=self._timeout,
            cwd=self._cwd,
            env=self._env,
            recorder=recorder,
        )

    def run(
        self,
        invocation: ToolInvocation,
        substitutions: Mapping[str, str],
        *,
        cwd: Path | None = None,
    ) -> ToolResult:
        """Execute one invocation and return its captured result.

        Raises ``ConfigurationError`` before anything runs if a
        placeholder (in the command or the declared outputs) is not
        covered, and ``ToolFailure`` for a non-zero exit or a timeout.
        """
        argv = render_command(invocation.command, substitutions)
        for output in invocation.outputs:
            render(output, substitutions)

        timeout = invocation.timeout_seconds or self._timeout
        workdir = cwd or self._cwd
        logger.info("Running %s: %s", invocation.name, " ".join(argv))

        start = time.monotonic()
        try:
            proc = subprocess.run(
                argv,
                cwd=str(workdir) if workdir else None,
                env=self._env,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            result = ToolResult(
                name=invocation.name,
                argv=argv,
                stdout=_decode(exc.stdout),
                stderr=_decode(exc.stderr),
                exit_status=EXIT_TIMED_OUT,
                duration_seconds=time.monotonic() - start,
                timed_out=True,
            )
        except OSError as exc:
            result = ToolResult(
                name=invocation.name,
                argv=argv,
                stderr=f"{exc}\n",
                exit_status=EXIT_NOT_FOUND,
                duration_seconds=time.monotonic() - start,
            )
        else:
            result = ToolResult(
                name=invocation.name,
                argv=argv,
                stdout=proc.stdout,
                stderr=proc.stderr,
                exit_status=proc.returncode,
                duration_seconds=time.monotonic() - start,
            )

        if self._recorder is not None:
            self._recorder(result)

        if not result.ok:
            logger.error(
                "%s failed (exit %s)%s",
                invocation.name,
                result.exit_status,
                " [timeout]" if result.timed_out else "",
            )
            raise ToolFailure(result)

        logger.debug(
            "%s finished in %.2fs", invocation.name, result.duration_seconds
        )
        return result
