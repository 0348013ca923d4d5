"""Parsing of model output into one of the known response shapes.

Two shapes are understood:

``{"observations": [{"start_index", "end_index", "text"}]}``
    chronological observations with 0-based screenshot indices.
``{"items": [{"context_type", "title", "summary", "entities", ...}]}``
    structured context items covering the whole chunk.

Anything else raises :class:`ResponseParseError`.
"""

import re
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .errors import ResponseParseError

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class ObservationEntry:
    start_index: int
    end_index: int
    text: str


@dataclass(frozen=True)
class ContextItem:
    context_type: Optional[str]
    title: str
    summary: str
    entities: List[Any] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    importance: Optional[float] = None
    confidence: Optional[float] = None


@dataclass(frozen=True)
class ObservationsResponse:
    observations: List[ObservationEntry]


@dataclass(frozen=True)
class ItemsResponse:
    items: List[ContextItem]


AnalysisResponse = Union[ObservationsResponse, ItemsResponse]


@dataclass
class Observation:
    start: float
    end: float
    text: str
    context_type: Optional[str] = None
    entities_json: Optional[str] = None


def strip_fences(txt: str) -> str:
    m = _FENCE_RE.match(txt or "")
    return m.group(1) if m else (txt or "").strip()


def extract_json(txt: str) -> Any:
    """Decode the JSON document in model output.

    Markdown fences are removed first; if the remainder is not valid JSON the
    outermost ``{...}`` span is tried.
    """
    body = strip_fences(txt)
    try:
        return json.loads(body)
    except ValueError:
        pass
    m = re.search(r"\{.*\}", body, flags=re.DOTALL)
    if not m:
        raise ResponseParseError("No JSON object found in LLM output")
    try:
        return json.loads(m.group(0))
    except ValueError as e:
        raise ResponseParseError(f"Malformed JSON in LLM output: {e}") from e


def _index(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ResponseParseError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ResponseParseError(f"{name} must be an integer, got {value!r}") from e


def _observations(raw: Any) -> ObservationsResponse:
    if not isinstance(raw, list):
        raise ResponseParseError("'observations' must be a list")
    out = []
    for i, o in enumerate(raw):
        if not isinstance(o, dict) or not isinstance(o.get("text"), str):
            raise ResponseParseError(f"observation {i} has no text")
        out.append(
            ObservationEntry(
                start_index=_index(o.get("start_index", 0), "start_index"),
                end_index=_index(o.get("end_index", o.get("start_index", 0)), "end_index"),
                text=o["text"],
            )
        )
    return ObservationsResponse(out)


def _items(raw: Any) -> ItemsResponse:
    if not isinstance(raw, list):
        raise ResponseParseError("'items' must be a list")
    out = []
    for i, it in enumerate(raw):
        if not isinstance(it, dict):
            raise ResponseParseError(f"item {i} is not an object")
        title = str(it.get("title") or "").strip()
        summary = str(it.get("summary") or "").strip()
        if not title and not summary:
            raise ResponseParseError(f"item {i} has neither title nor summary")
        entities = it.get("entities") or []
        keywords = it.get("keywords") or []
        out.append(
            ContextItem(
                context_type=it.get("context_type"),
                title=title,
                summary=summary,
                entities=entities if isinstance(entities, list) else [entities],
                keywords=[str(k) for k in keywords] if isinstance(keywords, list) else [],
                importance=it.get("importance"),
                confidence=it.get("confidence"),
            )
        )
    return ItemsResponse(out)


def parse_analysis_response(txt: str) -> AnalysisResponse:
    data = extract_json(txt)
    if not isinstance(data, dict):
        raise ResponseParseError("LLM output is not a JSON object")
    if "observations" in data:
        return _observations(data["observations"])
    if "items" in data:
        return _items(data["items"])
    raise ResponseParseError(
        f"Unrecognised response shape (keys: {sorted(data)[:5]})"
    )


def to_observations(response: AnalysisResponse, screenshots: Sequence) -> List[Observation]:
    """Map a parsed response onto the capture times of ``screenshots``.

    Out-of-range indices fall back to the first (start) or last (end)
    screenshot of the chunk.
    """
    if not screenshots:
        return []
    first, last = screenshots[0], screenshots[-1]

    if isinstance(response, ObservationsResponse):
        out = []
        for o in response.observations:
            start = screenshots[o.start_index] if 0 <= o.start_index < len(screenshots) else first
            end = screenshots[o.end_index] if 0 <= o.end_index < len(screenshots) else last
            out.append(Observation(start.captured_at, end.captured_at, o.text))
        return out

    out = []
    for it in response.items:
        text = f"{it.title}: {it.summary}" if it.title and it.summary else it.title or it.summary
        out.append(
            Observation(
                start=first.captured_at,
                end=last.captured_at,
                text=text,
                context_type=it.context_type,
                entities_json=json.dumps(it.entities, ensure_ascii=False) if it.entities else None,
            )
        )
    return out
