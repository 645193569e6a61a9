"""
Tolerant decoding of generation output.

Providers return loosely-typed JSON (sometimes fenced, sometimes wrapped in
prose, sometimes with wrong types). Everything here turns that into the
pydantic result models, filling every missing or malformed field from the
heuristic result so callers never see a partial structure.
"""

import json
import re
from typing import Any, Dict, List, Optional

from contextlens.llm.heuristics import (
    TOPIC_MAX_WORDS,
    clip_words,
    heuristic_debrief,
    heuristic_rolling,
    unknown_snapshot,
)
from contextlens.schemas.session import (
    INTENT_TAGS,
    DebriefSummary,
    LabelConfidence,
    PeopleEstimate,
    Reliability,
    RollingSummary,
    SocialCues,
    VisionSnapshot,
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_CUE_KEYS = ("facial_expression", "posture", "gaze", "interaction_context")


def _as_text(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return ""
    return str(value or "").strip()


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def clamp_unit(value: Any, default: float = 0.0) -> float:
    number = _as_float(value, default)
    if number != number:  # NaN
        number = default
    return max(0.0, min(1.0, number))


def _text_list(raw: Any) -> List[str]:
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    return [_as_text(item) for item in raw if _as_text(item)]


def extract_json_object(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of a model response, or None."""
    text_value = _FENCE_RE.sub("", (raw or "").strip())
    if not text_value:
        return None
    try:
        parsed = json.loads(text_value)
        return parsed if isinstance(parsed, dict) else None
    except ValueError:
        pass
    start = text_value.find("{")
    end = text_value.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(text_value[start : end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def coerce_intent_tags(raw: Any) -> List[str]:
    tags: List[str] = []
    for item in _text_list(raw):
        tag = item.lower()
        if tag in INTENT_TAGS and tag not in tags:
            tags.append(tag)
    return tags[:3]


def coerce_rolling(parsed: Optional[Dict[str, Any]], window_text: str) -> RollingSummary:
    fallback = heuristic_rolling(window_text)
    if not parsed:
        return fallback

    topic_line = clip_words(_as_text(parsed.get("topic_line") or parsed.get("topic")), TOPIC_MAX_WORDS)
    tags = coerce_intent_tags(parsed.get("intent_tags") or parsed.get("intents"))
    confidence = parsed.get("confidence")
    notes = _text_list(parsed.get("uncertainty_notes"))[:2]

    return RollingSummary(
        topic_line=topic_line or fallback.topic_line,
        intent_tags=tags or fallback.intent_tags,
        confidence=clamp_unit(confidence) if confidence is not None else fallback.confidence,
        uncertainty_notes=notes,
    )


def _fit(items: List[str], filler: List[str], low: int, high: int) -> List[str]:
    out = list(items[:high])
    for extra in filler:
        if len(out) >= low:
            break
        if extra not in out:
            out.append(extra)
    return out


def coerce_debrief(parsed: Optional[Dict[str, Any]], window_text: str) -> DebriefSummary:
    fallback = heuristic_debrief(window_text)
    if not parsed:
        return fallback
    return DebriefSummary(
        bullets=_fit(_text_list(parsed.get("bullets")), fallback.bullets, 3, 5),
        suggestions=_fit(_text_list(parsed.get("suggestions")), fallback.suggestions, 1, 2),
        uncertainty_notes=_fit(_text_list(parsed.get("uncertainty_notes")), fallback.uncertainty_notes, 1, 2),
    )


def _coerce_label(raw: Any) -> LabelConfidence:
    if isinstance(raw, str):
        return LabelConfidence(label=_as_text(raw) or "unknown", confidence=0.0)
    if not isinstance(raw, dict):
        return LabelConfidence()
    return LabelConfidence(
        label=_as_text(raw.get("label")) or "unknown",
        confidence=clamp_unit(raw.get("confidence")),
    )


def coerce_vision(parsed: Optional[Dict[str, Any]]) -> VisionSnapshot:
    if not parsed:
        return unknown_snapshot()

    people_raw = parsed.get("people") if isinstance(parsed.get("people"), dict) else {}
    count = int(max(0.0, _as_float(people_raw.get("count_estimate"), 0)))
    proximity = _as_text(people_raw.get("proximity")).lower() or "unknown"

    cues_raw = parsed.get("social_cues") if isinstance(parsed.get("social_cues"), dict) else {}
    cues = SocialCues(**{key: _coerce_label(cues_raw.get(key)) for key in _CUE_KEYS})

    rel_raw = parsed.get("reliability") if isinstance(parsed.get("reliability"), dict) else {}
    reliability = Reliability(
        score=clamp_unit(rel_raw.get("score")),
        limitations=_text_list(rel_raw.get("limitations")),
    )

    return VisionSnapshot(
        environment=_coerce_label(parsed.get("environment")),
        people=PeopleEstimate(count_estimate=count, proximity=proximity),
        social_cues=cues,
        reliability=reliability,
        notes=_text_list(parsed.get("notes")),
    )
