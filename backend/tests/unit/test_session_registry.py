import itertools

import pytest

from contextlens.services.session_registry import (
    START_FIELDS,
    SessionNotFoundError,
    SessionRegistry,
    SessionState,
    SessionStatus,
    reconcile_start_fields,
)

_INCOMING = {
    "user_id": "user-2",
    "language": "fr",
    "save_mode": "persist",
    "stt_mode": "external-stream",
}
_EXISTING = {
    "user_id": "user-1",
    "language": "en",
    "save_mode": "none",
    "stt_mode": "mock",
}


def _session(**overrides) -> SessionState:
    fields = dict(_EXISTING)
    fields.update(overrides)
    return SessionState(session_id="sess-1", created_at_ms=1_000, **fields)


# Each field is one of: omitted, None, blank, or a real new value.
_PRESENCE = ("absent", "none", "blank", "value")


@pytest.mark.parametrize("combo", list(itertools.product(_PRESENCE, repeat=len(START_FIELDS))))
def test_reconcile_start_fields_every_presence_combination(combo) -> None:
    session = _session()
    incoming = {}
    for name, presence in zip(START_FIELDS, combo):
        if presence == "none":
            incoming[name] = None
        elif presence == "blank":
            incoming[name] = "   "
        elif presence == "value":
            incoming[name] = _INCOMING[name]

    changed = reconcile_start_fields(session, incoming)

    for name, presence in zip(START_FIELDS, combo):
        if presence == "value":
            assert getattr(session, name) == _INCOMING[name]
            assert changed[name] == _INCOMING[name]
        else:
            assert getattr(session, name) == _EXISTING[name]
            assert name not in changed


def test_reconcile_same_value_is_not_reported_as_change() -> None:
    session = _session()
    assert reconcile_start_fields(session, {"language": "en"}) == {}


def test_start_generates_id_when_missing() -> None:
    registry = SessionRegistry()
    session, created = registry.start()
    assert created is True
    assert session.session_id
    assert registry.get(session.session_id) is session
    assert session.save_mode == "none"
    assert session.stt_mode == "mock"


def test_start_uses_registry_defaults() -> None:
    registry = SessionRegistry(default_save_mode="persist", default_stt_mode="external-stream")
    session, _ = registry.start("abc")
    assert session.save_mode == "persist"
    assert session.stt_mode == "external-stream"


def test_duplicate_start_updates_language_and_keeps_history() -> None:
    registry = SessionRegistry()
    first, created = registry.start("sess-dup", language="en")
    first.buffer = "hello\n"
    first.overlays.append({"topic_line": "hello"})
    first.recent_lines = ["hello"]

    second, created_again = registry.start("sess-dup", language="de")

    assert created is True
    assert created_again is False
    assert second is first
    assert second.language == "de"
    assert second.buffer == "hello\n"
    assert second.overlays == [{"topic_line": "hello"}]
    assert second.recent_lines == ["hello"]


def test_start_rejects_unknown_fields() -> None:
    registry = SessionRegistry()
    with pytest.raises(TypeError):
        registry.start("x", colour="blue")


def test_require_raises_for_missing_session() -> None:
    registry = SessionRegistry()
    with pytest.raises(SessionNotFoundError) as exc_info:
        registry.require("missing")
    assert exc_info.value.session_id == "missing"


def test_list_and_count() -> None:
    registry = SessionRegistry()
    registry.start("a")
    registry.start("b")
    registry.start("a")
    assert registry.count() == 2
    assert sorted(s.session_id for s in registry.list()) == ["a", "b"]


class _FakeStream:
    def __init__(self, fail: bool = False) -> None:
        self.stopped = 0
        self.fail = fail

    async def send_audio(self, pcm_bytes: bytes) -> None:
        pass

    async def stop(self) -> None:
        self.stopped += 1
        if self.fail:
            raise RuntimeError("socket already gone")


@pytest.mark.asyncio
async def test_remove_stops_stream_once() -> None:
    registry = SessionRegistry()
    session, _ = registry.start("with-stream")
    stream = _FakeStream()
    session.stream = stream

    await registry.remove("with-stream")
    await registry.remove("with-stream")

    assert stream.stopped == 1
    assert registry.get("with-stream") is None


@pytest.mark.asyncio
async def test_remove_swallows_stream_stop_errors() -> None:
    registry = SessionRegistry()
    session, _ = registry.start("bad-stream")
    session.stream = _FakeStream(fail=True)

    await registry.remove("bad-stream")

    assert registry.count() == 0


@pytest.mark.asyncio
async def test_remove_missing_is_noop() -> None:
    registry = SessionRegistry()
    await registry.remove("never-existed")
    assert registry.count() == 0


@pytest.mark.asyncio
async def test_start_on_finalizing_record_replaces_it() -> None:
    registry = SessionRegistry()
    old, _ = registry.start("s1", language="en")
    old.status = SessionStatus.FINALIZING
    old_stream = _FakeStream()
    old.stream = old_stream

    fresh, created = registry.start("s1", stt_mode="external-stream")

    assert created is True
    assert fresh is not old
    assert fresh.is_active
    assert fresh.language is None
    assert registry.get("s1") is fresh

    await registry.remove("s1", expected=old)

    assert registry.get("s1") is fresh
    assert old_stream.stopped == 1
    assert old.stream is None
