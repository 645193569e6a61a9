import asyncio

import pytest

from contextlens.core.config import Settings
from contextlens.llm.chains.session_chain import SummaryGateway
from contextlens.llm.gemini_client import VisionRateLimitError
from contextlens.schemas.session import (
    DebriefSummary,
    LabelConfidence,
    RollingSummary,
    TranscriptFragment,
    VisionFrame,
    VisionSnapshot,
)
from contextlens.services.session_bus import SessionBus
from contextlens.services.session_processor import SessionProcessor
from contextlens.services.session_registry import SessionRegistry, SessionStatus


class FakeClock:
    def __init__(self, start: int = 100_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeGateway:
    def __init__(self, tags=("planning",), confidence=0.8) -> None:
        self.tags = list(tags)
        self.confidence = confidence
        self.rolling_calls = 0
        self.debrief_calls = 0
        self.vision_calls = 0
        self.vision_error = None
        self.windows = []

    async def rolling_summary(self, window_text, language=None):
        self.rolling_calls += 1
        self.windows.append(window_text)
        return RollingSummary(
            topic_line="Weekly planning",
            intent_tags=self.tags,
            confidence=self.confidence,
            uncertainty_notes=[],
        )

    async def debrief(self, window_text, language=None):
        self.debrief_calls += 1
        return DebriefSummary(
            bullets=["one", "two", "three"],
            suggestions=["follow up"],
            uncertainty_notes=["partial transcript"],
        )

    async def vision_summary(self, image_bytes, mime_type, language=None):
        self.vision_calls += 1
        if self.vision_error is not None:
            raise self.vision_error
        return VisionSnapshot(environment=LabelConfidence(label="office", confidence=0.8), notes=["desk visible"])


class GatedGateway(FakeGateway):
    """Holds debrief open until the test releases it."""

    def __init__(self) -> None:
        super().__init__()
        self.debrief_entered = asyncio.Event()
        self.release = asyncio.Event()

    async def debrief(self, window_text, language=None):
        self.debrief_entered.set()
        await self.release.wait()
        return await super().debrief(window_text, language)


class FakeStore:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.saved = []
        self.prefs = []

    async def save_session_async(self, record):
        if self.fail:
            raise RuntimeError("db down")
        self.saved.append(record)

    async def upsert_user_prefs_async(self, user_id, language, save_mode):
        self.prefs.append((user_id, language, save_mode))


class FakeMetricsSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.events = []

    async def send(self, event):
        if self.fail:
            raise RuntimeError("warehouse down")
        self.events.append(event)

    async def test_connection(self):
        return {"ok": True}


class FakeStream:
    def __init__(self) -> None:
        self.audio = []
        self.stopped = 0

    async def send_audio(self, pcm_bytes):
        self.audio.append(pcm_bytes)

    async def stop(self):
        self.stopped += 1


class FakeSttAdapter:
    def __init__(self, ready: bool = True) -> None:
        self.ready = ready
        self.streams = []
        self.callbacks = []

    def is_ready(self):
        return self.ready

    async def start_stream(self, language, on_transcript, label=""):
        stream = FakeStream()
        self.streams.append(stream)
        self.callbacks.append(on_transcript)
        return stream


def _settings(**overrides) -> Settings:
    values = dict(
        summary_interval_ms=1500,
        summary_chars=500,
        max_rolling_chars=2000,
        max_debrief_chars=6000,
        vision_interval_ms=3000,
        vision_backoff_ms=30000,
    )
    values.update(overrides)
    return Settings(**values)


def _build(gateway=None, store=None, metrics_sink=None, stt_adapter=None, **settings_overrides):
    registry = SessionRegistry()
    bus = SessionBus()
    clock = FakeClock()
    processor = SessionProcessor(
        registry,
        bus,
        gateway or FakeGateway(),
        settings=_settings(**settings_overrides),
        store=store,
        metrics_sink=metrics_sink,
        stt_adapter=stt_adapter,
        clock=clock,
    )
    return processor, registry, bus, clock


def _drain(queue: asyncio.Queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def _named(events, name):
    return [e for e in events if e["event"] == name]


@pytest.mark.asyncio
async def test_start_emits_session_started_and_resumes() -> None:
    processor, registry, bus, _ = _build()
    queue = bus.subscribe("s1")

    await processor.start_session("s1", language="en")
    session = registry.get("s1")
    session.buffer = "kept\n"
    session.overlays.append({"topic_line": "kept"})
    await processor.start_session("s1", language="fr")

    events = _named(_drain(queue), "session_started")
    assert [e["payload"]["created"] for e in events] == [True, False]
    assert events[1]["payload"]["language"] == "fr"
    assert registry.get("s1").language == "fr"
    assert registry.get("s1").buffer == "kept\n"
    assert registry.get("s1").overlays == [{"topic_line": "kept"}]


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["transcript", "vision", "end", "pause", "audio"])
async def test_unknown_session_yields_exactly_one_error(action) -> None:
    gateway = FakeGateway()
    processor, registry, bus, _ = _build(gateway=gateway)
    queue = bus.subscribe("ghost")

    if action == "transcript":
        await processor.on_transcript("ghost", TranscriptFragment(text="hello"))
    elif action == "vision":
        await processor.on_vision_frame("ghost", VisionFrame(image_bytes=b"\xff\xd8"))
    elif action == "end":
        await processor.on_end_session("ghost")
    elif action == "pause":
        await processor.set_paused("ghost", True)
    else:
        await processor.on_audio("ghost", b"\x00\x00")

    events = _drain(queue)
    assert len(events) == 1
    assert events[0]["event"] == "error"
    assert events[0]["payload"]["code"] == "session_not_found"
    assert events[0]["payload"]["sessionId"] == "ghost"
    assert registry.count() == 0
    assert gateway.rolling_calls == gateway.debrief_calls == gateway.vision_calls == 0


@pytest.mark.asyncio
async def test_transcript_emits_overlay_and_respects_throttle() -> None:
    gateway = FakeGateway()
    processor, registry, bus, clock = _build(gateway=gateway)
    await processor.start_session("s1")
    queue = bus.subscribe("s1")

    first = await processor.on_transcript("s1", TranscriptFragment(text="let's plan the sprint", speaker="A"))
    clock.advance(200)
    second = await processor.on_transcript("s1", TranscriptFragment(text="short"))
    clock.advance(2000)
    third = await processor.on_transcript("s1", TranscriptFragment(text="ok"))

    assert first is not None
    assert second is None
    assert third is not None
    overlays = _named(_drain(queue), "overlay_update")
    assert len(overlays) == 2
    assert overlays[0]["payload"]["sessionId"] == "s1"
    assert overlays[0]["payload"]["topic_line"] == "Weekly planning"
    assert overlays[1]["seq"] > overlays[0]["seq"]

    session = registry.get("s1")
    assert len(session.chunks) == 3
    assert len(session.overlays) == 2
    assert session.last_summary_at_ms == clock.now
    assert session.last_summary_chars == len(session.buffer)
    assert session.display.topic_line == "Weekly planning"
    assert session.overlay_latencies_ms == [0, 0]


@pytest.mark.asyncio
async def test_rolling_window_is_trailing_suffix() -> None:
    gateway = FakeGateway()
    processor, _, _, _ = _build(gateway=gateway, max_rolling_chars=10)
    await processor.start_session("s1")

    await processor.on_transcript("s1", TranscriptFragment(text="0123456789abcdef"))

    assert gateway.windows == ["789abcdef\n"]


@pytest.mark.asyncio
async def test_paused_session_buffers_without_summarizing() -> None:
    gateway = FakeGateway()
    processor, registry, bus, _ = _build(gateway=gateway)
    await processor.start_session("s1")
    queue = bus.subscribe("s1")

    assert await processor.set_paused("s1", True) is True
    await processor.on_transcript("s1", TranscriptFragment(text="still listening"))

    assert gateway.rolling_calls == 0
    assert registry.get("s1").buffer == "still listening\n"
    assert _named(_drain(queue), "overlay_update") == []

    await processor.set_paused("s1", False)
    await processor.on_transcript("s1", TranscriptFragment(text="resumed"))
    assert gateway.rolling_calls == 1


@pytest.mark.asyncio
async def test_instruction_tag_emits_one_tool_event() -> None:
    processor, _, bus, _ = _build(gateway=FakeGateway(tags=["instruction", "support"]))
    await processor.start_session("s1")
    queue = bus.subscribe("s1")

    await processor.on_transcript("s1", TranscriptFragment(text="teach me how to deploy"))

    events = _drain(queue)
    assert [e["event"] for e in events] == ["overlay_update", "tool_event"]
    overlay, tool = events[0]["payload"], events[1]["payload"]
    assert tool["tool"] == "practice_prompt"
    assert tool["sessionId"] == "s1"
    assert tool["suggestion"]
    assert tool["timestamp"] >= overlay["timestamp"]


@pytest.mark.asyncio
async def test_no_tool_event_without_instruction_tag() -> None:
    processor, _, bus, _ = _build(gateway=FakeGateway(tags=["smalltalk"]))
    await processor.start_session("s1")
    queue = bus.subscribe("s1")

    await processor.on_transcript("s1", TranscriptFragment(text="nice weather"))

    assert [e["event"] for e in _drain(queue)] == ["overlay_update"]


@pytest.mark.asyncio
async def test_end_without_persistence_never_touches_store() -> None:
    gateway = FakeGateway()
    store = FakeStore()
    sink = FakeMetricsSink()
    processor, registry, bus, _ = _build(gateway=gateway, store=store, metrics_sink=sink)
    await processor.start_session("s1", save_mode="none")
    queue = bus.subscribe("s1")

    await processor.on_transcript("s1", TranscriptFragment(text="hello", t0_ms=0, t1_ms=4000))
    payload = await processor.on_end_session("s1")

    events = _drain(queue)
    debriefs = _named(events, "debrief")
    assert len(debriefs) == 1
    assert debriefs[0]["payload"] == payload
    assert payload["bullets"] == ["one", "two", "three"]
    assert gateway.debrief_calls == 1
    assert store.saved == []
    assert _named(events, "error") == []
    assert len(sink.events) == 1
    assert sink.events[0]["duration_s"] == 4
    assert registry.get("s1") is None


@pytest.mark.asyncio
async def test_end_with_persistence_saves_record() -> None:
    store = FakeStore()
    processor, _, _, _ = _build(store=store)
    await processor.start_session("s1", user_id="u1", language="en", save_mode="persist")
    await processor.on_transcript("s1", TranscriptFragment(text="hello"))

    await processor.on_end_session("s1")

    assert store.prefs == [("u1", "en", "persist")]
    assert len(store.saved) == 1
    record = store.saved[0]
    assert record["session_id"] == "s1"
    assert record["debrief"]["bullets"] == ["one", "two", "three"]
    assert len(record["transcript"]) == 1
    assert len(record["overlays"]) == 1


@pytest.mark.asyncio
async def test_side_effect_failures_are_reported_and_teardown_completes() -> None:
    processor, registry, bus, _ = _build(store=FakeStore(fail=True), metrics_sink=FakeMetricsSink(fail=True))
    await processor.start_session("s1", save_mode="persist")
    queue = bus.subscribe("s1")

    await processor.on_end_session("s1")

    events = _drain(queue)
    assert len(_named(events, "debrief")) == 1
    codes = [e["payload"]["code"] for e in _named(events, "error")]
    assert codes == ["persist_failed", "metrics_failed"]
    assert registry.get("s1") is None


@pytest.mark.asyncio
async def test_persist_without_store_reports_unavailable() -> None:
    processor, registry, bus, _ = _build(store=None)
    await processor.start_session("s1", save_mode="persist")
    queue = bus.subscribe("s1")

    await processor.on_end_session("s1")

    codes = [e["payload"]["code"] for e in _named(_drain(queue), "error")]
    assert codes == ["persist_unavailable"]
    assert registry.count() == 0


@pytest.mark.asyncio
async def test_events_after_end_are_not_found() -> None:
    gateway = FakeGateway()
    processor, _, bus, _ = _build(gateway=gateway)
    await processor.start_session("s1")
    await processor.on_end_session("s1")
    queue = bus.subscribe("s1")

    await processor.on_transcript("s1", TranscriptFragment(text="late"))
    await processor.on_end_session("s1")

    codes = [e["payload"]["code"] for e in _drain(queue)]
    assert codes == ["session_not_found", "session_not_found"]
    assert gateway.debrief_calls == 1


@pytest.mark.asyncio
async def test_concurrent_end_runs_finalize_once() -> None:
    gateway = FakeGateway()
    processor, registry, bus, _ = _build(gateway=gateway)
    await processor.start_session("s1")
    queue = bus.subscribe("s1")

    await asyncio.gather(processor.on_end_session("s1"), processor.on_end_session("s1"))

    events = _drain(queue)
    assert gateway.debrief_calls == 1
    assert len(_named(events, "debrief")) == 1
    assert [e["payload"]["code"] for e in _named(events, "error")] == ["session_not_found"]
    assert registry.count() == 0


@pytest.mark.asyncio
async def test_finalizing_session_rejects_new_events() -> None:
    processor, registry, bus, _ = _build()
    await processor.start_session("s1")
    registry.get("s1").status = SessionStatus.FINALIZING
    queue = bus.subscribe("s1")

    await processor.on_transcript("s1", TranscriptFragment(text="too late"))

    assert [e["payload"]["code"] for e in _drain(queue)] == ["session_not_found"]
    assert registry.get("s1").buffer == ""


@pytest.mark.asyncio
async def test_throwing_backend_still_emits_heuristic_overlay_and_debrief() -> None:
    def _boom(*args, **kwargs):
        raise RuntimeError("backend down")

    gateway = SummaryGateway(generate_text=_boom, generate_vision=_boom, max_image_side=0)
    processor, _, bus, _ = _build(gateway=gateway)
    await processor.start_session("s1")
    queue = bus.subscribe("s1")

    await processor.on_transcript("s1", TranscriptFragment(text="we need to plan the release"))
    await processor.on_end_session("s1")

    events = _drain(queue)
    overlays = _named(events, "overlay_update")
    debriefs = _named(events, "debrief")
    assert len(overlays) == 1
    assert overlays[0]["payload"]["intent_tags"] == ["planning"]
    assert len(debriefs) == 1
    assert debriefs[0]["payload"]["bullets"][0].startswith("Main topic:")


@pytest.mark.asyncio
async def test_vision_interval_and_degraded_fallback() -> None:
    gateway = FakeGateway()
    processor, registry, bus, clock = _build(gateway=gateway)
    await processor.start_session("s1")
    queue = bus.subscribe("s1")
    frame = VisionFrame(image_bytes=b"\xff\xd8", mime_type="image/jpeg")

    ok = await processor.on_vision_frame("s1", frame)
    clock.advance(1000)
    skipped = await processor.on_vision_frame("s1", frame)
    clock.advance(3000)
    gateway.vision_error = RuntimeError("provider exploded")
    degraded = await processor.on_vision_frame("s1", frame)

    assert ok["environment"]["label"] == "office"
    assert ok["degraded"] is False
    assert skipped is None
    assert degraded["degraded"] is True
    assert degraded["environment"]["label"] == "office"
    assert degraded["notes"] == ["desk visible", "Vision degraded."]
    assert len(_named(_drain(queue), "vision_update")) == 2
    assert registry.get("s1").display.env_label == "office"


@pytest.mark.asyncio
async def test_vision_failure_without_history_emits_unknown_snapshot() -> None:
    gateway = FakeGateway()
    gateway.vision_error = RuntimeError("nope")
    processor, _, _, _ = _build(gateway=gateway)
    await processor.start_session("s1")

    update = await processor.on_vision_frame("s1", VisionFrame(image_bytes=b"\x89PNG", mime_type="image/png"))

    assert update["degraded"] is True
    assert update["environment"]["label"] == "unknown"
    assert update["environment"]["confidence"] == 0.0
    assert "Vision degraded." in update["notes"]


@pytest.mark.asyncio
async def test_vision_rate_limit_sets_backoff() -> None:
    gateway = FakeGateway()
    gateway.vision_error = VisionRateLimitError("429")
    processor, registry, _, clock = _build(gateway=gateway)
    await processor.start_session("s1")
    frame = VisionFrame(image_bytes=b"\xff\xd8")

    first = await processor.on_vision_frame("s1", frame)
    assert first["degraded"] is True
    assert registry.get("s1").vision_backoff_until_ms == clock.now + 30000

    clock.advance(5000)
    assert await processor.on_vision_frame("s1", frame) is None
    assert gateway.vision_calls == 1

    clock.advance(30000)
    gateway.vision_error = None
    recovered = await processor.on_vision_frame("s1", frame)
    assert recovered["degraded"] is False
    assert gateway.vision_calls == 2


@pytest.mark.asyncio
async def test_external_stream_without_adapter_falls_back_to_mock() -> None:
    processor, registry, bus, _ = _build(stt_adapter=None)
    queue = bus.subscribe("s1")

    await processor.start_session("s1", stt_mode="external-stream")

    events = _drain(queue)
    assert [e["payload"]["code"] for e in _named(events, "error")] == ["stt_unavailable"]
    assert _named(events, "session_started")[0]["payload"]["sttMode"] == "mock"
    assert registry.get("s1").stt_mode == "mock"
    assert await processor.on_audio("s1", b"\x00\x01") is False


@pytest.mark.asyncio
async def test_external_stream_forwards_audio_and_transcripts() -> None:
    adapter = FakeSttAdapter()
    gateway = FakeGateway()
    processor, registry, _, _ = _build(gateway=gateway, stt_adapter=adapter)

    await processor.start_session("s1", stt_mode="external-stream")
    await processor.start_session("s1", stt_mode="external-stream")

    assert len(adapter.streams) == 1
    stream = adapter.streams[0]
    assert await processor.on_audio("s1", b"\x01\x02") is True
    assert stream.audio == [b"\x01\x02"]

    await adapter.callbacks[0](TranscriptFragment(text="from the stream", t0_ms=0, t1_ms=900))
    assert registry.get("s1").buffer == "from the stream\n"
    assert gateway.rolling_calls == 1

    await processor.on_end_session("s1")
    assert stream.stopped == 1


@pytest.mark.asyncio
async def test_start_during_finalize_gets_fresh_session() -> None:
    adapter = FakeSttAdapter()
    gateway = GatedGateway()
    processor, registry, bus, _ = _build(gateway=gateway, stt_adapter=adapter)
    old = await processor.start_session("s1")
    queue = bus.subscribe("s1")

    end_task = asyncio.create_task(processor.on_end_session("s1"))
    await gateway.debrief_entered.wait()
    restarted = await processor.start_session("s1", stt_mode="external-stream")
    gateway.release.set()
    await end_task

    assert restarted is not old
    assert registry.get("s1") is restarted
    assert restarted.is_active
    assert restarted.stream is adapter.streams[0]
    started = _named(_drain(queue), "session_started")
    assert [e["payload"]["created"] for e in started] == [True]

    await processor.on_end_session("s1")
    assert adapter.streams[0].stopped == 1
    assert registry.count() == 0


@pytest.mark.asyncio
async def test_start_waiting_on_lock_retries_after_end() -> None:
    adapter = FakeSttAdapter()
    gateway = GatedGateway()
    processor, registry, bus, _ = _build(gateway=gateway, stt_adapter=adapter)
    old = await processor.start_session("s1")
    queue = bus.subscribe("s1")

    async with old.lock:
        end_task = asyncio.create_task(processor.on_end_session("s1"))
        await asyncio.sleep(0)
        start_task = asyncio.create_task(processor.start_session("s1", stt_mode="external-stream"))
        await asyncio.sleep(0)
    await gateway.debrief_entered.wait()
    gateway.release.set()
    await end_task
    restarted = await start_task

    assert restarted is not old
    assert registry.get("s1") is restarted
    assert old.stream is None
    assert len(adapter.streams) == 1
    assert restarted.stream is adapter.streams[0]
    events = _drain(queue)
    assert len(_named(events, "debrief")) == 1
    assert [e["payload"]["created"] for e in _named(events, "session_started")] == [True]
    assert _named(events, "error") == []

    await processor.on_end_session("s1")
    assert adapter.streams[0].stopped == 1


@pytest.mark.asyncio
async def test_stream_fragments_for_closing_session_are_dropped_quietly() -> None:
    adapter = FakeSttAdapter()
    gateway = FakeGateway()
    processor, registry, bus, _ = _build(gateway=gateway, stt_adapter=adapter)
    await processor.start_session("s1", stt_mode="external-stream")
    on_fragment = adapter.callbacks[0]
    queue = bus.subscribe("s1")

    registry.get("s1").status = SessionStatus.FINALIZING
    await on_fragment(TranscriptFragment(text="trailing words"))
    assert _drain(queue) == []
    assert registry.get("s1").buffer == ""

    registry.get("s1").status = SessionStatus.ACTIVE
    await processor.on_end_session("s1")
    _drain(queue)
    await on_fragment(TranscriptFragment(text="after teardown"))
    assert _drain(queue) == []

    await processor.on_transcript("s1", TranscriptFragment(text="client late"))
    assert [e["payload"]["code"] for e in _drain(queue)] == ["session_not_found"]
    assert gateway.rolling_calls == 0
