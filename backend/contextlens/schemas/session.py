from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

IntentTag = Literal[
    "planning",
    "feedback",
    "debate",
    "smalltalk",
    "joking",
    "venting",
    "support",
    "negotiation",
    "instruction",
]

INTENT_TAGS: tuple[str, ...] = (
    "planning",
    "feedback",
    "debate",
    "smalltalk",
    "joking",
    "venting",
    "support",
    "negotiation",
    "instruction",
)

SaveMode = Literal["none", "persist"]
SttMode = Literal["mock", "external-stream"]


def normalize_b64_payload(payload: str) -> str:
    value = (payload or "").strip()
    if "," in value and value.lower().startswith("data:"):
        return value.split(",", 1)[1].strip()
    return value


def decode_b64_bytes(payload: str) -> bytes:
    try:
        return base64.b64decode(normalize_b64_payload(payload), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc


# ---------------------------------------------------------------------------
# Inbound client messages
# ---------------------------------------------------------------------------


class _ClientMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StartSessionPayload(_ClientMessage):
    type: Literal["start_session"] = "start_session"
    session_id: Optional[str] = Field(default=None, alias="sessionId", min_length=1)
    user_id: Optional[str] = Field(default=None, alias="userId", min_length=1)
    language: Optional[str] = Field(default=None, min_length=1)
    save_mode: Optional[SaveMode] = Field(default=None, alias="saveMode")
    stt_mode: Optional[SttMode] = Field(default=None, alias="sttMode")


class TranscriptChunkPayload(_ClientMessage):
    type: Literal["transcript_chunk"] = "transcript_chunk"
    session_id: str = Field(alias="sessionId", min_length=1)
    text: str = Field(min_length=1)
    t0_ms: Optional[float] = Field(default=None, ge=0)
    t1_ms: Optional[float] = Field(default=None, ge=0)
    speaker: Optional[str] = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _check_span(self) -> "TranscriptChunkPayload":
        if self.t0_ms is not None and self.t1_ms is not None and self.t1_ms < self.t0_ms:
            raise ValueError("t1_ms must be >= t0_ms")
        return self


class VisionFramePayload(_ClientMessage):
    type: Literal["vision_frame"] = "vision_frame"
    session_id: str = Field(alias="sessionId", min_length=1)
    image_base64: str = Field(min_length=1)
    mime: Literal["image/jpeg", "image/png"] = "image/jpeg"

    @field_validator("image_base64")
    @classmethod
    def _check_b64(cls, value: str) -> str:
        if not decode_b64_bytes(value):
            raise ValueError("image_base64 decodes to empty bytes")
        return value

    @property
    def image_bytes(self) -> bytes:
        return decode_b64_bytes(self.image_base64)


class AudioChunkPayload(_ClientMessage):
    type: Literal["audio_chunk"] = "audio_chunk"
    session_id: str = Field(alias="sessionId", min_length=1)
    pcm16_base64: str = Field(min_length=1, description="Base64 PCM_S16LE mono audio bytes")
    sample_rate: int = Field(default=16000, alias="sampleRate", ge=8000)
    t_ms: Optional[float] = Field(default=None, ge=0)

    @property
    def pcm_bytes(self) -> bytes:
        return decode_b64_bytes(self.pcm16_base64)


class EndSessionPayload(_ClientMessage):
    type: Literal["end_session"] = "end_session"
    session_id: str = Field(alias="sessionId", min_length=1)


class PauseOverlayPayload(_ClientMessage):
    type: Literal["pause_overlay"] = "pause_overlay"
    session_id: str = Field(alias="sessionId", min_length=1)
    paused: bool


CLIENT_MESSAGE_MODELS: Dict[str, type[_ClientMessage]] = {
    "start_session": StartSessionPayload,
    "transcript_chunk": TranscriptChunkPayload,
    "vision_frame": VisionFramePayload,
    "audio_chunk": AudioChunkPayload,
    "end_session": EndSessionPayload,
    "pause_overlay": PauseOverlayPayload,
}


# ---------------------------------------------------------------------------
# Core fragment/frame records
# ---------------------------------------------------------------------------


class TranscriptFragment(BaseModel):
    text: str
    t0_ms: Optional[float] = None
    t1_ms: Optional[float] = None
    speaker: Optional[str] = None
    received_at_ms: Optional[int] = None


class VisionFrame(BaseModel):
    image_bytes: bytes
    mime_type: str = "image/jpeg"


# ---------------------------------------------------------------------------
# Gateway results
# ---------------------------------------------------------------------------


class RollingSummary(BaseModel):
    topic_line: str
    intent_tags: List[IntentTag] = Field(min_length=1, max_length=3)
    confidence: float = Field(ge=0.0, le=1.0)
    uncertainty_notes: List[str] = Field(default_factory=list, max_length=2)


class DebriefSummary(BaseModel):
    bullets: List[str] = Field(min_length=3, max_length=5)
    suggestions: List[str] = Field(min_length=1, max_length=2)
    uncertainty_notes: List[str] = Field(min_length=1, max_length=2)


class LabelConfidence(BaseModel):
    label: str = "unknown"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class PeopleEstimate(BaseModel):
    count_estimate: int = Field(default=0, ge=0)
    proximity: str = "unknown"


class SocialCues(BaseModel):
    facial_expression: LabelConfidence = Field(default_factory=LabelConfidence)
    posture: LabelConfidence = Field(default_factory=LabelConfidence)
    gaze: LabelConfidence = Field(default_factory=LabelConfidence)
    interaction_context: LabelConfidence = Field(default_factory=LabelConfidence)


class Reliability(BaseModel):
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    limitations: List[str] = Field(default_factory=list)


class VisionSnapshot(BaseModel):
    environment: LabelConfidence = Field(default_factory=LabelConfidence)
    people: PeopleEstimate = Field(default_factory=PeopleEstimate)
    social_cues: SocialCues = Field(default_factory=SocialCues)
    reliability: Reliability = Field(default_factory=Reliability)
    notes: List[str] = Field(default_factory=list)
    degraded: bool = False


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------


class _ServerEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"type"})


class OverlayUpdate(_ServerEvent):
    type: Literal["overlay_update"] = "overlay_update"
    session_id: str = Field(alias="sessionId")
    topic_line: str
    intent_tags: List[IntentTag]
    confidence: float = Field(ge=0.0, le=1.0)
    uncertainty_notes: List[str] = Field(default_factory=list)
    timestamp: int


class Debrief(_ServerEvent):
    type: Literal["debrief"] = "debrief"
    session_id: str = Field(alias="sessionId")
    bullets: List[str]
    suggestions: List[str]
    uncertainty_notes: List[str]


class ToolEvent(_ServerEvent):
    type: Literal["tool_event"] = "tool_event"
    session_id: str = Field(alias="sessionId")
    tool: Literal["practice_prompt"] = "practice_prompt"
    suggestion: str
    timestamp: int


class VisionUpdate(_ServerEvent):
    type: Literal["vision_update"] = "vision_update"
    session_id: str = Field(alias="sessionId")
    environment: LabelConfidence
    people: PeopleEstimate
    social_cues: SocialCues
    reliability: Reliability
    notes: List[str] = Field(default_factory=list)
    degraded: bool = False
    timestamp: int


class SessionStarted(_ServerEvent):
    type: Literal["session_started"] = "session_started"
    session_id: str = Field(alias="sessionId")
    language: Optional[str] = None
    save_mode: SaveMode = Field(alias="saveMode")
    stt_mode: SttMode = Field(alias="sttMode")
    created: bool


class ErrorEvent(_ServerEvent):
    type: Literal["error"] = "error"
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    code: str = Field(min_length=1)
    message: str = Field(min_length=1)
