"""
Deepgram live transcription over a websocket (aiohttp client)
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from contextlens.schemas.session import TranscriptFragment

logger = logging.getLogger(__name__)

TranscriptCallback = Callable[[TranscriptFragment], Awaitable[None]]


class SttUnavailableError(RuntimeError):
    pass


def parse_results_message(data: Dict[str, Any]) -> Optional[TranscriptFragment]:
    """Turn one Deepgram `Results` message into a fragment; None for empty/other messages."""
    if data.get("type") not in (None, "Results"):
        return None
    alternatives = (data.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    text_value = str(alternatives[0].get("transcript") or "").strip()
    if not text_value:
        return None
    try:
        start = float(data.get("start") or 0)
        duration = float(data.get("duration") or 0)
    except (TypeError, ValueError):
        start, duration = 0.0, 0.0
    return TranscriptFragment(
        text=text_value,
        t0_ms=max(0, round(start * 1000)),
        t1_ms=max(0, round((start + duration) * 1000)),
    )


class DeepgramStream:
    def __init__(
        self,
        http: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        on_transcript: TranscriptCallback,
        label: str = "",
    ) -> None:
        self._http = http
        self._ws = ws
        self._on_transcript = on_transcript
        self._label = label
        self._stopped = False
        self._reader = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    logger.debug("deepgram_message_not_json label=%s", self._label)
                    continue
                fragment = parse_results_message(data) if isinstance(data, dict) else None
                if fragment is None:
                    continue
                try:
                    await self._on_transcript(fragment)
                except Exception:
                    logger.warning("deepgram_transcript_handler_failed label=%s", self._label, exc_info=True)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("deepgram_ws_error label=%s error=%s", self._label, self._ws.exception())
                break

    async def send_audio(self, pcm_bytes: bytes) -> None:
        if self._stopped or self._ws.closed or not pcm_bytes:
            return
        await self._ws.send_bytes(pcm_bytes)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        try:
            if not self._ws.closed:
                await self._ws.send_str(json.dumps({"type": "CloseStream"}))
                await self._ws.close()
        finally:
            if not self._reader.done():
                self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            await self._http.close()
        logger.info("deepgram_stream_stopped label=%s", self._label)


class DeepgramStreamAdapter:
    def __init__(
        self,
        api_key: str,
        *,
        model: str = "nova-2",
        listen_url: str = "wss://api.deepgram.com/v1/listen",
        sample_rate: int = 16000,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.listen_url = listen_url
        self.sample_rate = sample_rate

    def is_ready(self) -> bool:
        return bool(self.api_key)

    def build_url(self, language: Optional[str]) -> str:
        params = {
            "model": self.model,
            "language": language or "en-US",
            "encoding": "linear16",
            "sample_rate": self.sample_rate,
            "smart_format": "true",
            "interim_results": "false",
            "endpointing": 400,
        }
        return f"{self.listen_url}?{urlencode(params)}"

    async def start_stream(
        self,
        language: Optional[str],
        on_transcript: TranscriptCallback,
        label: str = "",
    ) -> DeepgramStream:
        if not self.is_ready():
            raise SttUnavailableError("DEEPGRAM_API_KEY not configured")
        http = aiohttp.ClientSession(headers={"Authorization": f"Token {self.api_key}"})
        try:
            ws = await http.ws_connect(self.build_url(language), heartbeat=20)
        except aiohttp.ClientError as exc:
            await http.close()
            raise SttUnavailableError(f"Deepgram connect failed: {exc}") from exc
        logger.info("deepgram_stream_started label=%s model=%s", label, self.model)
        return DeepgramStream(http, ws, on_transcript, label=label)

    async def test_connection(self) -> Dict[str, Any]:
        if not self.is_ready():
            return {"ok": False, "error": "missing_api_key"}
        try:
            stream = await self.start_stream(None, _discard_transcript, label="integration_test")
        except SttUnavailableError as exc:
            return {"ok": False, "error": str(exc)}
        await stream.stop()
        return {"ok": True}


async def _discard_transcript(fragment: TranscriptFragment) -> None:
    return None
