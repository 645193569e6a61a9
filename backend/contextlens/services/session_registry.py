from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from contextlens.schemas.session import TranscriptFragment

logger = logging.getLogger(__name__)

RECENT_LINES_MAX = 4


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class SessionStatus(str, Enum):
    ACTIVE = "active"
    FINALIZING = "finalizing"


class SttStreamHandle(Protocol):
    async def send_audio(self, pcm_bytes: bytes) -> None:
        ...

    async def stop(self) -> None:
        ...


@dataclass
class DisplayState:
    topic_line: str = ""
    intent_tags: List[str] = field(default_factory=list)
    confidence: float = 0.0
    uncertainty_notes: List[str] = field(default_factory=list)
    env_label: Optional[str] = None
    env_confidence: float = 0.0
    updated_at_ms: int = 0


@dataclass
class SessionState:
    session_id: str
    created_at_ms: int
    user_id: Optional[str] = None
    language: Optional[str] = None
    save_mode: str = "none"
    stt_mode: str = "mock"
    status: SessionStatus = SessionStatus.ACTIVE
    paused: bool = False
    buffer: str = ""
    recent_lines: List[str] = field(default_factory=list)
    chunks: List[TranscriptFragment] = field(default_factory=list)
    overlays: List[Dict[str, Any]] = field(default_factory=list)
    vision_updates: List[Dict[str, Any]] = field(default_factory=list)
    debrief: Optional[Dict[str, Any]] = None
    last_summary_at_ms: int = 0
    last_summary_chars: int = 0
    last_vision_at_ms: int = 0
    vision_backoff_until_ms: int = 0
    overlay_latencies_ms: List[int] = field(default_factory=list)
    stream: Optional[SttStreamHandle] = None
    display: DisplayState = field(default_factory=DisplayState)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE


START_FIELDS = ("user_id", "language", "save_mode", "stt_mode")


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def _present_or(value: Any, default: Any) -> Any:
    return value if _is_present(value) else default


def reconcile_start_fields(session: SessionState, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge the optional fields of a repeated start into an existing session.

    A field is overwritten only when the incoming value is present (not None,
    not blank). Buffers, history and counters are never touched.
    Returns the subset of fields that actually changed.
    """
    changed: Dict[str, Any] = {}
    for name in START_FIELDS:
        if name not in fields:
            continue
        value = fields[name]
        if not _is_present(value):
            continue
        if getattr(session, name) != value:
            setattr(session, name, value)
            changed[name] = value
    return changed


class SessionRegistry:
    def __init__(self, default_save_mode: str = "none", default_stt_mode: str = "mock") -> None:
        self._sessions: Dict[str, SessionState] = {}
        self._lock = threading.Lock()
        self._default_save_mode = default_save_mode
        self._default_stt_mode = default_stt_mode

    def start(self, session_id: Optional[str] = None, **fields: Any) -> tuple[SessionState, bool]:
        """Create or resume a session. Returns (session, created)."""
        unknown = set(fields) - set(START_FIELDS)
        if unknown:
            raise TypeError(f"unexpected start fields: {sorted(unknown)}")

        sid = session_id if _is_present(session_id) else str(uuid.uuid4())
        with self._lock:
            existing = self._sessions.get(sid)
            if existing is not None and existing.is_active:
                changed = reconcile_start_fields(existing, fields)
                if changed:
                    logger.info("session_resumed session_id=%s changed=%s", sid, sorted(changed))
                return existing, False

            if existing is not None:
                # A finalizing record is on its way out; the new start gets a fresh session.
                logger.info("session_replaced_while_finalizing session_id=%s", sid)
            session = SessionState(
                session_id=sid,
                created_at_ms=now_ms(),
                user_id=_present_or(fields.get("user_id"), None),
                language=_present_or(fields.get("language"), None),
                save_mode=_present_or(fields.get("save_mode"), self._default_save_mode),
                stt_mode=_present_or(fields.get("stt_mode"), self._default_stt_mode),
            )
            self._sessions[sid] = session

        logger.info(
            "session_created session_id=%s language=%s save_mode=%s stt_mode=%s",
            sid,
            session.language,
            session.save_mode,
            session.stt_mode,
        )
        return session, True

    def get(self, session_id: str) -> Optional[SessionState]:
        with self._lock:
            return self._sessions.get(session_id)

    def require(self, session_id: str) -> SessionState:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def remove(self, session_id: str, expected: Optional[SessionState] = None) -> None:
        """Drop a session and stop its stream.

        With `expected`, only that exact record is unmapped; a newer session
        registered under the same id is left alone. The expected record's
        stream is stopped either way.
        """
        with self._lock:
            current = self._sessions.get(session_id)
            if expected is None or current is expected:
                session = self._sessions.pop(session_id, None)
            else:
                session = expected
        if session is None:
            return
        stream = session.stream
        session.stream = None
        if stream is not None:
            try:
                await stream.stop()
            except Exception:
                logger.warning("stt_stream_stop_failed session_id=%s", session_id, exc_info=True)
        logger.info("session_removed session_id=%s", session_id)

    def list(self) -> List[SessionState]:
        with self._lock:
            return list(self._sessions.values())

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)
