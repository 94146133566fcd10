# pitwall/core/analysis/report_normalizer.py
"""
Report normalization for raw inference output.

The inference collaborator is untrusted: fields may be missing, blank or of
the wrong type. normalize() turns whatever came back into a report body that
always has the full shape the UI renders, and classifies how much of it is
real content:

    ok       every section and at least one segment came from the model
    partial  the call completed but some sections or all segments were synthesized
    failed   the call did not complete, or returned nothing usable

Malformed input degrades the classification; it never raises.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

SECTION_KEYS = ("pace", "braking", "throttle", "corners", "sessionPlan")

SUMMARY_FALLBACK = "Summary unavailable."


class NormalizerMode(str, Enum):
    COMPLETE = "complete"   # upstream call returned a response
    DEGRADED = "degraded"   # upstream call failed outright


class Degradation(str, Enum):
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


_SECTION_PLACEHOLDER = {
    NormalizerMode.DEGRADED: "Analysis failed for this section.",
    NormalizerMode.COMPLETE: "Analysis unavailable for this section.",
}

_SEGMENT_PLACEHOLDER = {
    NormalizerMode.DEGRADED: {
        "name": "Analysis Failed",
        "issue": "We could not generate corner insights due to an error.",
        "improvement": "Try uploading a clearer telemetry file.",
    },
    NormalizerMode.COMPLETE: {
        "name": "No Insights",
        "issue": "No specific corner insights were generated for this session.",
        "improvement": "Try uploading a clearer telemetry file.",
    },
}


@dataclass
class NormalizedReport:
    body: Dict[str, Any]
    degradation: Degradation


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def normalize_sections(sections: Any, mode: NormalizerMode) -> Tuple[Dict[str, str], List[str]]:
    placeholder = _SECTION_PLACEHOLDER[mode]
    sections = sections if isinstance(sections, dict) else {}
    values: Dict[str, str] = {}
    missing: List[str] = []
    for key in SECTION_KEYS:
        value = _text(sections.get(key))
        if value:
            values[key] = value
        else:
            values[key] = placeholder
            missing.append(key)
    return values, missing


def normalize_segments(segments: Any, mode: NormalizerMode) -> Tuple[List[Dict[str, str]], bool]:
    """Return (segments, synthesized). Entries missing name/issue/improvement are dropped."""
    cleaned: List[Dict[str, str]] = []
    for entry in _as_list(segments):
        if not isinstance(entry, dict):
            continue
        name = _text(entry.get("name"))
        issue = _text(entry.get("issue"))
        improvement = _text(entry.get("improvement"))
        if not (name and issue and improvement):
            continue
        segment = {"name": name, "issue": issue, "improvement": improvement}
        metric = _text(entry.get("metric"))
        if metric:
            segment["metric"] = metric
        cleaned.append(segment)

    if cleaned:
        return cleaned, False
    return [dict(_SEGMENT_PLACEHOLDER[mode])], True


def normalize_recommendations(recommendations: Any) -> List[Dict[str, str]]:
    cleaned = []
    for entry in _as_list(recommendations):
        if not isinstance(entry, dict):
            continue
        title = _text(entry.get("title"))
        detail = _text(entry.get("detail"))
        if title and detail:
            cleaned.append({"title": title, "detail": detail})
    return cleaned


def has_usable_content(raw: Any) -> bool:
    """True when a raw result carries at least one field worth rendering."""
    if not isinstance(raw, dict):
        return False
    return bool(
        _text(raw.get("summary"))
        or normalize_recommendations(raw.get("recommendations"))
        or isinstance(raw.get("sections"), dict)
        or isinstance(raw.get("segments"), list)
    )


def normalize(
    raw: Optional[Dict[str, Any]],
    mode: NormalizerMode,
    preview: Optional[Dict[str, Any]] = None,
) -> NormalizedReport:
    """
    Validate and repair a raw inference result into a complete report body.

    Args:
        raw: Parsed model output (dict) or None when the call failed
        mode: Whether the upstream call completed
        preview: Structural preview of the source file, embedded as-is

    Returns:
        NormalizedReport with the body and its degradation classification
    """
    if mode is NormalizerMode.COMPLETE and not has_usable_content(raw):
        mode = NormalizerMode.DEGRADED
    raw = raw if isinstance(raw, dict) else {}

    sections, missing_sections = normalize_sections(raw.get("sections"), mode)
    segments, segments_missing = normalize_segments(raw.get("segments"), mode)

    if mode is NormalizerMode.DEGRADED:
        degradation = Degradation.FAILED
    elif missing_sections or segments_missing:
        degradation = Degradation.PARTIAL
    else:
        degradation = Degradation.OK

    body = {
        "summary": _text(raw.get("summary")) or SUMMARY_FALLBACK,
        "recommendations": normalize_recommendations(raw.get("recommendations")),
        "preview": preview or {},
        "sections": sections,
        "segments": segments,
        "status": degradation.value,
        "missingSections": missing_sections,
        "segmentsMissing": segments_missing,
    }
    return NormalizedReport(body=body, degradation=degradation)
