"""Local fallbacks used whenever no generation backend answers."""

import re
from typing import List

from contextlens.schemas.session import (
    DebriefSummary,
    LabelConfidence,
    PeopleEstimate,
    Reliability,
    RollingSummary,
    SocialCues,
    VisionSnapshot,
)

TOPIC_MAX_WORDS = 12
PRACTICE_PROMPT = "Try asking the learner to restate the concept in their own words."

# Order matters: the first matching rule wins when several fire.
_INTENT_RULES = [
    ("planning", re.compile(r"\b(plan|schedule|next step)", re.IGNORECASE)),
    ("feedback", re.compile(r"\b(feedback|review|opinion)", re.IGNORECASE)),
    ("debate", re.compile(r"\b(debate|disagree|argue)", re.IGNORECASE)),
    ("joking", re.compile(r"\b(joke|lol|haha)", re.IGNORECASE)),
    ("venting", re.compile(r"\b(vent|frustrated|upset)", re.IGNORECASE)),
    ("support", re.compile(r"\b(support|help|assist)", re.IGNORECASE)),
    ("negotiation", re.compile(r"\b(negotiat|deal|trade)", re.IGNORECASE)),
    ("instruction", re.compile(r"\b(how to|instruction|teach)", re.IGNORECASE)),
]

_SPEAKER_TAG_RE = re.compile(r"^\[[^\]]*\]\s*")


def heuristic_intent_tags(text: str, limit: int = 3) -> List[str]:
    tags = [tag for tag, pattern in _INTENT_RULES if pattern.search(text or "")]
    if not tags:
        return ["smalltalk"]
    return tags[:limit]


def heuristic_topic_line(text: str) -> str:
    for line in (text or "").splitlines():
        body = _SPEAKER_TAG_RE.sub("", line).strip()
        if not body:
            continue
        sentence = re.split(r"(?<=[.!?])\s+", body, maxsplit=1)[0].strip()
        if sentence:
            return clip_words(sentence, TOPIC_MAX_WORDS)
    return "Listening..."


def clip_words(text: str, max_words: int) -> str:
    words = (text or "").split()
    return " ".join(words[:max_words])


def heuristic_confidence(text: str) -> float:
    return round(min(1.0, 0.3 + len(text or "") / 1200), 2)


def heuristic_rolling(window_text: str) -> RollingSummary:
    notes = ["Limited context."] if len(window_text or "") < 200 else []
    return RollingSummary(
        topic_line=heuristic_topic_line(window_text),
        intent_tags=heuristic_intent_tags(window_text),
        confidence=heuristic_confidence(window_text),
        uncertainty_notes=notes,
    )


def heuristic_debrief(window_text: str) -> DebriefSummary:
    topic = heuristic_topic_line(window_text)
    return DebriefSummary(
        bullets=[
            f"Main topic: {topic}",
            "Several points were shared across the conversation.",
            "Intent signals appeared throughout the exchange.",
        ],
        suggestions=["Consider confirming next steps and clarifying open questions."],
        uncertainty_notes=["Summary may be incomplete due to limited context."],
    )


def unknown_snapshot(note: str | None = None) -> VisionSnapshot:
    return VisionSnapshot(
        environment=LabelConfidence(label="unknown", confidence=0.0),
        people=PeopleEstimate(count_estimate=0, proximity="unknown"),
        social_cues=SocialCues(),
        reliability=Reliability(score=0.0, limitations=["No reliable visual signal."]),
        notes=[note] if note else [],
    )
