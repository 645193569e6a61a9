"""
Session Processor

Owns the per-session state machine (ACTIVE -> FINALIZING -> removed) and the
event flow: registry lookup, accumulation, throttle, gateway call, state
update, emit. Every mutating handler runs under the session's asyncio.Lock so
events for one session never interleave while a gateway or store call is
suspended.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from contextlens.core.config import Settings, get_settings
from contextlens.llm.chains.session_chain import SummaryGateway
from contextlens.llm.gemini_client import VisionRateLimitError, VisionUnavailableError
from contextlens.llm.heuristics import PRACTICE_PROMPT, unknown_snapshot
from contextlens.schemas.session import (
    Debrief,
    ErrorEvent,
    OverlayUpdate,
    SessionStarted,
    ToolEvent,
    TranscriptFragment,
    VisionFrame,
    VisionSnapshot,
    VisionUpdate,
)
from contextlens.services.analytics import MetricsSink, build_metrics_event
from contextlens.services.session_bus import SessionBus
from contextlens.services.session_persistence import SqlSessionStore, build_session_record
from contextlens.services.session_registry import (
    SessionNotFoundError,
    SessionRegistry,
    SessionState,
    SessionStatus,
    now_ms,
)
from contextlens.services.stt_stream import DeepgramStreamAdapter, SttUnavailableError
from contextlens.services.transcript_accumulator import append_fragment, trailing_window
from contextlens.services.update_throttle import ThrottlePolicy, summary_due, vision_due

logger = logging.getLogger(__name__)

VISION_DEGRADED_NOTE = "Vision degraded."


def _dedupe(items):
    out = []
    for item in items:
        if item and item not in out:
            out.append(item)
    return out


class SessionProcessor:
    def __init__(
        self,
        registry: SessionRegistry,
        bus: SessionBus,
        gateway: SummaryGateway,
        *,
        settings: Optional[Settings] = None,
        store: Optional[SqlSessionStore] = None,
        metrics_sink: Optional[MetricsSink] = None,
        stt_adapter: Optional[DeepgramStreamAdapter] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        settings = settings or get_settings()
        self.registry = registry
        self.bus = bus
        self.gateway = gateway
        self.store = store
        self.metrics_sink = metrics_sink
        self.stt_adapter = stt_adapter
        self.clock = clock
        self.summary_policy = ThrottlePolicy(
            min_interval_ms=settings.summary_interval_ms,
            min_chars_delta=settings.summary_chars,
        )
        self.max_rolling_chars = settings.max_rolling_chars
        self.max_debrief_chars = settings.max_debrief_chars
        self.vision_interval_ms = settings.vision_interval_ms
        self.vision_backoff_ms = settings.vision_backoff_ms

    # ------------------------------------------------------------------
    # Emit helpers
    # ------------------------------------------------------------------

    async def _emit(self, session_id: Optional[str], event: str, payload: Dict[str, Any]) -> None:
        await self.bus.publish(session_id, {"event": event, "payload": payload})

    async def _emit_error(self, session_id: Optional[str], code: str, message: str) -> None:
        err = ErrorEvent(session_id=session_id, code=code, message=message)
        await self._emit(session_id, "error", err.to_payload())

    async def _emit_not_found(self, session_id: str) -> None:
        logger.info("session_not_found session_id=%s", session_id)
        await self._emit_error(session_id, "session_not_found", "Session not found. Send start_session first.")

    async def _reject_missing(self, session_id: str, notify: bool) -> None:
        if notify:
            await self._emit_not_found(session_id)
        else:
            logger.debug("stream_fragment_dropped session_id=%s", session_id)

    async def _lookup(self, session_id: str, notify: bool = True) -> Optional[SessionState]:
        try:
            session = self.registry.require(session_id)
        except SessionNotFoundError:
            await self._reject_missing(session_id, notify)
            return None
        if not session.is_active:
            await self._reject_missing(session_id, notify)
            return None
        return session

    def _still_active(self, session: SessionState) -> bool:
        # Re-checked after acquiring the lock: an end_session may have run while we waited.
        return session.is_active and self.registry.get(session.session_id) is session

    # ------------------------------------------------------------------
    # Start / pause
    # ------------------------------------------------------------------

    async def start_session(
        self,
        session_id: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        language: Optional[str] = None,
        save_mode: Optional[str] = None,
        stt_mode: Optional[str] = None,
    ) -> SessionState:
        while True:
            session, created = self.registry.start(
                session_id,
                user_id=user_id,
                language=language,
                save_mode=save_mode,
                stt_mode=stt_mode,
            )
            async with session.lock:
                if not self._still_active(session):
                    # Finalized while we waited on the lock; start again on a fresh record.
                    session_id = session.session_id
                    continue
                if session.stt_mode == "external-stream" and session.stream is None:
                    await self._open_stream(session)
            break

        if session.save_mode == "persist" and session.user_id and self.store is not None:
            try:
                await self.store.upsert_user_prefs_async(session.user_id, session.language, session.save_mode)
            except Exception:
                logger.warning("user_prefs_upsert_failed session_id=%s", session.session_id, exc_info=True)

        started = SessionStarted(
            session_id=session.session_id,
            language=session.language,
            save_mode=session.save_mode,
            stt_mode=session.stt_mode,
            created=created,
        )
        await self._emit(session.session_id, "session_started", started.to_payload())
        return session

    async def _open_stream(self, session: SessionState) -> None:
        sid = session.session_id
        if self.stt_adapter is None or not self.stt_adapter.is_ready():
            session.stt_mode = "mock"
            await self._emit_error(sid, "stt_unavailable", "Streaming STT is not configured; using mock mode.")
            return

        async def _on_stream_fragment(fragment: TranscriptFragment) -> None:
            await self.on_transcript(sid, fragment, from_stream=True)

        try:
            session.stream = await self.stt_adapter.start_stream(session.language, _on_stream_fragment, label=sid)
        except SttUnavailableError:
            logger.warning("stt_stream_start_failed session_id=%s", sid, exc_info=True)
            session.stt_mode = "mock"
            await self._emit_error(sid, "stt_unavailable", "Streaming STT failed to start; using mock mode.")

    async def set_paused(self, session_id: str, paused: bool) -> bool:
        session = await self._lookup(session_id)
        if session is None:
            return False
        async with session.lock:
            if not self._still_active(session):
                await self._emit_not_found(session_id)
                return False
            session.paused = bool(paused)
        logger.info("session_paused session_id=%s paused=%s", session_id, session.paused)
        return True

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def on_transcript(
        self,
        session_id: str,
        fragment: TranscriptFragment,
        *,
        from_stream: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Accumulate one fragment; emit an overlay (and maybe a tool event) when the throttle allows.

        Fragments pushed by the STT stream for a session that is gone or
        finalizing are dropped without a client-facing error.
        """
        session = await self._lookup(session_id, notify=not from_stream)
        if session is None:
            return None
        async with session.lock:
            if not self._still_active(session):
                await self._reject_missing(session_id, notify=not from_stream)
                return None

            received_at = self.clock()
            append_fragment(session, fragment, received_at)
            if session.paused:
                return None

            buffer_len = len(session.buffer)
            if not summary_due(
                received_at,
                session.last_summary_at_ms,
                session.last_summary_chars,
                buffer_len,
                self.summary_policy,
            ):
                return None

            window = trailing_window(session.buffer, self.max_rolling_chars)
            summary = await self.gateway.rolling_summary(window, session.language)
            emitted_at = max(self.clock(), received_at)

            overlay = OverlayUpdate(
                session_id=session_id,
                topic_line=summary.topic_line,
                intent_tags=summary.intent_tags,
                confidence=min(1.0, max(0.0, summary.confidence)),
                uncertainty_notes=summary.uncertainty_notes[:2],
                timestamp=emitted_at,
            )
            payload = overlay.to_payload()
            session.overlays.append(payload)
            session.last_summary_at_ms = max(session.last_summary_at_ms, emitted_at)
            session.last_summary_chars = max(session.last_summary_chars, buffer_len)

            display = session.display
            display.topic_line = overlay.topic_line
            display.intent_tags = list(overlay.intent_tags)
            display.confidence = overlay.confidence
            display.uncertainty_notes = list(overlay.uncertainty_notes)
            display.updated_at_ms = emitted_at
            session.overlay_latencies_ms.append(emitted_at - (fragment.received_at_ms or received_at))

            await self._emit(session_id, "overlay_update", payload)

            if "instruction" in overlay.intent_tags:
                tool = ToolEvent(session_id=session_id, suggestion=PRACTICE_PROMPT, timestamp=emitted_at)
                await self._emit(session_id, "tool_event", tool.to_payload())
            return payload

    def _degraded_snapshot(self, session: SessionState) -> VisionSnapshot:
        if session.vision_updates:
            last = VisionSnapshot.model_validate(session.vision_updates[-1])
            notes = _dedupe([*last.notes, VISION_DEGRADED_NOTE])
            return last.model_copy(update={"notes": notes, "degraded": True})
        snapshot = unknown_snapshot(VISION_DEGRADED_NOTE)
        return snapshot.model_copy(update={"degraded": True})

    async def on_vision_frame(self, session_id: str, frame: VisionFrame) -> Optional[Dict[str, Any]]:
        session = await self._lookup(session_id)
        if session is None:
            return None
        async with session.lock:
            if not self._still_active(session):
                await self._emit_not_found(session_id)
                return None

            now = self.clock()
            if not vision_due(now, session.last_vision_at_ms, self.vision_interval_ms, session.vision_backoff_until_ms):
                return None
            session.last_vision_at_ms = now

            try:
                snapshot = await self.gateway.vision_summary(frame.image_bytes, frame.mime_type, session.language)
            except VisionRateLimitError:
                session.vision_backoff_until_ms = now + self.vision_backoff_ms
                logger.warning(
                    "vision_rate_limited session_id=%s backoff_until_ms=%s",
                    session_id,
                    session.vision_backoff_until_ms,
                )
                snapshot = self._degraded_snapshot(session)
            except VisionUnavailableError:
                logger.debug("vision_unavailable session_id=%s", session_id)
                snapshot = self._degraded_snapshot(session)
            except Exception:
                logger.warning("vision_summary_failed session_id=%s", session_id, exc_info=True)
                snapshot = self._degraded_snapshot(session)

            update = VisionUpdate(session_id=session_id, timestamp=now, **snapshot.model_dump())
            payload = update.to_payload()
            session.vision_updates.append(payload)
            session.display.env_label = snapshot.environment.label
            session.display.env_confidence = snapshot.environment.confidence
            session.display.updated_at_ms = now
            await self._emit(session_id, "vision_update", payload)
            return payload

    async def on_audio(self, session_id: str, pcm_bytes: bytes) -> bool:
        session = await self._lookup(session_id)
        if session is None:
            return False
        stream = session.stream
        if stream is None:
            logger.debug("audio_chunk_ignored session_id=%s stt_mode=%s", session_id, session.stt_mode)
            return False
        try:
            await stream.send_audio(pcm_bytes)
        except Exception:
            logger.warning("stt_stream_send_failed session_id=%s", session_id, exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # End of session
    # ------------------------------------------------------------------

    async def on_end_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = await self._lookup(session_id)
        if session is None:
            return None
        async with session.lock:
            if not self._still_active(session):
                await self._emit_not_found(session_id)
                return None
            session.status = SessionStatus.FINALIZING
            try:
                return await self._finalize(session)
            finally:
                await self.registry.remove(session_id, expected=session)

    async def _finalize(self, session: SessionState) -> Dict[str, Any]:
        sid = session.session_id
        window = trailing_window(session.buffer, self.max_debrief_chars)
        summary = await self.gateway.debrief(window, session.language)
        debrief = Debrief(
            session_id=sid,
            bullets=summary.bullets,
            suggestions=summary.suggestions,
            uncertainty_notes=summary.uncertainty_notes,
        )
        payload = debrief.to_payload()
        session.debrief = payload
        await self._emit(sid, "debrief", payload)
        logger.info("session_debrief_emitted session_id=%s chunks=%s", sid, len(session.chunks))

        await self._persist(session)
        await self._send_metrics(session)
        return payload

    async def _persist(self, session: SessionState) -> None:
        if session.save_mode != "persist":
            return
        sid = session.session_id
        if self.store is None:
            await self._emit_error(sid, "persist_unavailable", "Session store not configured.")
            return
        try:
            await self.store.save_session_async(build_session_record(session))
        except Exception:
            logger.warning("session_persist_failed session_id=%s", sid, exc_info=True)
            await self._emit_error(sid, "persist_failed", "Failed to persist session.")

    async def _send_metrics(self, session: SessionState) -> None:
        if self.metrics_sink is None:
            return
        sid = session.session_id
        try:
            event = build_metrics_event(session, self.clock())
            await self.metrics_sink.send(event)
        except Exception:
            logger.warning("session_metrics_failed session_id=%s", sid, exc_info=True)
            await self._emit_error(sid, "metrics_failed", "Failed to send analytics.")
