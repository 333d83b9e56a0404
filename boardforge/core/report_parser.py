"""Extract structured counters from a checker's text or JSON output.

Text patterns (one capture group, the count):

    violations         Found N violations
    unconnected_items  Found N unconnected items
    schematic_parity   Found N schematic parity issues

JSON documents are the checker's own report: each counter is the length
of the list stored under the counter's name, and every list entry becomes
a ``Finding``.

A counter that does not appear is zero. Whether the tool crashed is the
ToolRunner's concern (exit status), never inferred from missing text.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from boardforge.models.reports import Finding, Report
from boardforge.models.revision import Revision
from boardforge.models.tools import ReportFormat

DEFAULT_PATTERNS: dict[str, str] = {
    "violations": r"Found (\d+) violations",
    "unconnected_items": r"Found (\d+) unconnected items",
    "schematic_parity": r"Found (\d+) schematic parity issues",
}


class ParseError(ValueError):
    """Raised when structured output does not have the expected shape."""


class ReportParser:
    """Pure, deterministic report parser.

    Parameters
    ----------
    patterns:
        Counter name -> regex with one integer capture group. The JSON
        path uses the same counter names as list keys.
    """

    def __init__(self, patterns: Mapping[str, str] | None = None) -> None:
        self._patterns = {
            name: re.compile(pattern)
            for name, pattern in (patterns or DEFAULT_PATTERNS).items()
        }

    @property
    def counter_names(self) -> list[str]:
        return list(self._patterns)

    def parse(
        self,
        raw_output: str,
        kind: ReportFormat | str = ReportFormat.TEXT,
        *,
        revision: Revision | None = None,
        source: str = "",
    ) -> Report:
        kind = ReportFormat(kind)
        if kind is ReportFormat.JSON:
            counters, findings = self._parse_json(raw_output)
        else:
            counters, findings = self._parse_text(raw_output), []
        return Report(
            counters=counters,
            findings=findings,
            revision=revision,
            source=source,
        )

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    def _parse_text(self, raw_output: str) -> dict[str, int]:
        counters: dict[str, int] = {}
        for name, pattern in self._patterns.items():
            match = pattern.search(raw_output)
            counters[name] = int(match.group(1)) if match else 0
        return counters

    # ------------------------------------------------------------------
    # JSON
    # ------------------------------------------------------------------

    def _parse_json(self, raw_output: str) -> tuple[dict[str, int], list[Finding]]:
        try:
            document = json.loads(raw_output)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Report is not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise ParseError(
                f"Report must be a JSON object, got {type(document).__name__}"
            )

        counters: dict[str, int] = {}
        findings: list[Finding] = []
        for name in self._patterns:
            entries = document.get(name, [])
            if not isinstance(entries, list):
                raise ParseError(
                    f"Report field {name!r} must be a list, got {type(entries).__name__}"
                )
            counters[name] = len(entries)
            findings.extend(_finding(name, entry) for entry in entries)
        return counters, findings


def _finding(counter: str, entry: Any) -> Finding:
    if not isinstance(entry, dict):
        raise ParseError(f"Entry under {counter!r} must be an object: {entry!r}")
    items = entry.get("items", [])
    if not isinstance(items, list):
        raise ParseError(f"'items' under {counter!r} must be a list")
    return Finding(
        counter=counter,
        severity=str(entry.get("severity", "")),
        description=str(entry.get("description", "")),
        items=[
            str(item.get("description", "")) if isinstance(item, dict) else str(item)
            for item in items
        ],
    )
