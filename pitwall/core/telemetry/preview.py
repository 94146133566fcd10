# pitwall/core/telemetry/preview.py
"""
Bounded structural preview of a telemetry export.

The parser is a heuristic, not a CSV sniffer: the delimiter is whichever of
comma, tab or space first appears in the header line, in that order. Quoted
fields containing the delimiter are not handled.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

MAX_CHARACTERS = 32_000
MAX_PREVIEW_ROWS = 20

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


@dataclass
class TelemetryPreview:
    delimiter: str = ","
    headers: List[str] = field(default_factory=list)
    rows: List[List[str]] = field(default_factory=list)
    raw_sample: str = ""
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape stored in the report and returned by the API."""
        return {
            "delimiter": self.delimiter,
            "headers": list(self.headers),
            "rows": [list(row) for row in self.rows],
            "rawSample": self.raw_sample,
            "truncated": self.truncated,
        }


def _split_lines(text: str) -> List[str]:
    return [line.strip() for line in _LINE_BREAK.split(text) if line.strip()]


def detect_delimiter(line: str) -> str:
    if "," in line:
        return ","
    if "\t" in line:
        return "\t"
    return " "


def parse_preview(text: str) -> TelemetryPreview:
    """
    Parse the head of a telemetry file into headers and sample rows.

    Input is cut to MAX_CHARACTERS before splitting, so hostile input is
    bounded. Never raises.

    Args:
        text: Raw file contents

    Returns:
        TelemetryPreview with at most MAX_PREVIEW_ROWS body rows
    """
    text = text or ""
    over_limit = len(text) > MAX_CHARACTERS
    lines = _split_lines(text[:MAX_CHARACTERS])

    if not lines:
        return TelemetryPreview(truncated=over_limit)

    delimiter = detect_delimiter(lines[0])

    def split(line: str) -> List[str]:
        return [value.strip() for value in line.split(delimiter)]

    kept = lines[: MAX_PREVIEW_ROWS + 1]
    return TelemetryPreview(
        delimiter=delimiter,
        headers=split(kept[0]),
        rows=[split(line) for line in kept[1:]],
        raw_sample="\n".join(kept),
        truncated=over_limit or len(lines) > MAX_PREVIEW_ROWS + 1,
    )
