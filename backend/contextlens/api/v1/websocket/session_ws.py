import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from contextlens.schemas.session import (
    CLIENT_MESSAGE_MODELS,
    AudioChunkPayload,
    EndSessionPayload,
    ErrorEvent,
    PauseOverlayPayload,
    StartSessionPayload,
    TranscriptChunkPayload,
    TranscriptFragment,
    VisionFrame,
    VisionFramePayload,
)
from contextlens.services.session_bus import SessionBus
from contextlens.services.session_processor import SessionProcessor

logger = logging.getLogger(__name__)


async def _safe_send_json(websocket: WebSocket, lock: asyncio.Lock, payload: Dict[str, Any]) -> None:
    async with lock:
        await websocket.send_json(payload)


async def _send_error(
    websocket: WebSocket,
    lock: asyncio.Lock,
    code: str,
    message: str,
    session_id: Optional[str] = None,
) -> None:
    err = ErrorEvent(session_id=session_id, code=code, message=message)
    await _safe_send_json(websocket, lock, {"event": "error", "payload": err.to_payload()})


async def _forward_events(websocket: WebSocket, lock: asyncio.Lock, queue: asyncio.Queue) -> None:
    try:
        while True:
            event = await queue.get()
            await _safe_send_json(websocket, lock, event)
    except asyncio.CancelledError:
        raise
    except (WebSocketDisconnect, RuntimeError):
        logger.debug("session_ws_forward_stopped", exc_info=True)


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Message failed validation."
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc") or ())
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


async def _dispatch(processor: SessionProcessor, message: Any) -> None:
    if isinstance(message, StartSessionPayload):
        await processor.start_session(
            message.session_id,
            user_id=message.user_id,
            language=message.language,
            save_mode=message.save_mode,
            stt_mode=message.stt_mode,
        )
    elif isinstance(message, TranscriptChunkPayload):
        fragment = TranscriptFragment(
            text=message.text,
            t0_ms=message.t0_ms,
            t1_ms=message.t1_ms,
            speaker=message.speaker,
        )
        await processor.on_transcript(message.session_id, fragment)
    elif isinstance(message, VisionFramePayload):
        frame = VisionFrame(image_bytes=message.image_bytes, mime_type=message.mime)
        await processor.on_vision_frame(message.session_id, frame)
    elif isinstance(message, AudioChunkPayload):
        await processor.on_audio(message.session_id, message.pcm_bytes)
    elif isinstance(message, PauseOverlayPayload):
        await processor.set_paused(message.session_id, message.paused)
    elif isinstance(message, EndSessionPayload):
        await processor.on_end_session(message.session_id)


async def _session_lane(
    processor: SessionProcessor,
    websocket: WebSocket,
    lock: asyncio.Lock,
    session_id: str,
    inbox: asyncio.Queue,
) -> None:
    """Handle one session's messages in arrival order; other sessions run in their own lanes."""
    while True:
        message = await inbox.get()
        if message is None:
            return
        try:
            await _dispatch(processor, message)
        except Exception:
            logger.exception("session_ws_dispatch_failed session_id=%s type=%s", session_id, message.type)
            try:
                await _send_error(websocket, lock, "server_error", "Internal error while handling message.", session_id)
            except (WebSocketDisconnect, RuntimeError):
                logger.debug("session_ws_error_not_delivered session_id=%s", session_id, exc_info=True)


async def session_ws(websocket: WebSocket):
    """Single multiplexed socket: inbound client messages, outbound session events."""
    processor: SessionProcessor = websocket.app.state.processor
    bus: SessionBus = websocket.app.state.bus

    await websocket.accept()
    send_lock = asyncio.Lock()
    subscriptions: Dict[str, Tuple[asyncio.Queue, asyncio.Task]] = {}
    lanes: Dict[str, Tuple[asyncio.Queue, asyncio.Task]] = {}

    def attach(session_id: str) -> None:
        if session_id in subscriptions:
            return
        queue = bus.subscribe(session_id)
        task = asyncio.create_task(_forward_events(websocket, send_lock, queue))
        subscriptions[session_id] = (queue, task)

    def enqueue(session_id: str, message: Any) -> None:
        lane = lanes.get(session_id)
        if lane is None:
            inbox: asyncio.Queue = asyncio.Queue()
            task = asyncio.create_task(_session_lane(processor, websocket, send_lock, session_id, inbox))
            lane = (inbox, task)
            lanes[session_id] = lane
        lane[0].put_nowait(message)

    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break

            try:
                data = json.loads(raw)
            except ValueError:
                await _send_error(websocket, send_lock, "invalid_json", "Message is not valid JSON.")
                continue
            if not isinstance(data, dict):
                await _send_error(websocket, send_lock, "invalid_message", "Message must be a JSON object.")
                continue

            msg_type = data.get("type")
            model = CLIENT_MESSAGE_MODELS.get(msg_type) if isinstance(msg_type, str) else None
            if model is None:
                await _send_error(websocket, send_lock, "unsupported_event", f"Unsupported message type: {msg_type}")
                continue

            try:
                message = model.model_validate(data)
            except ValidationError as exc:
                await _send_error(
                    websocket,
                    send_lock,
                    "invalid_message",
                    _validation_message(exc),
                    session_id=data.get("sessionId") if isinstance(data.get("sessionId"), str) else None,
                )
                continue

            if isinstance(message, StartSessionPayload) and not message.session_id:
                message.session_id = str(uuid.uuid4())
            attach(message.session_id)
            enqueue(message.session_id, message)
    finally:
        for session_id, (queue, task) in subscriptions.items():
            bus.unsubscribe(session_id, queue)
            task.cancel()
        # Queued work still runs to completion so an end_session sent just before
        # disconnect finalizes the session.
        for inbox, _ in lanes.values():
            inbox.put_nowait(None)
        pending = [task for _, task in subscriptions.values()] + [task for _, task in lanes.values()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        try:
            await websocket.close()
        except Exception:
            pass
