"""
Per-session metrics egress (JSONL in mock mode, Snowflake SQL API otherwise)
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from contextlens.core.config import Settings
from contextlens.schemas.session import TranscriptFragment
from contextlens.services.session_registry import SessionState

logger = logging.getLogger(__name__)

SNOWFLAKE_TABLE = "CONTEXT_LENS_METRICS"


class MetricsError(RuntimeError):
    pass


class MetricsSink(Protocol):
    async def send(self, event: Dict[str, Any]) -> None:
        ...

    async def test_connection(self) -> Dict[str, Any]:
        ...


def hash_session_id(session_id: str) -> str:
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()


def estimate_duration_s(chunks: Sequence[TranscriptFragment], created_at_ms: int, now_ms: int) -> int:
    """
    Transcript span in seconds: max(t1) - min(t0) over fragments, t1 defaulting
    to t0. Falls back to wall-clock session age when the span is not positive.
    """
    starts: List[float] = []
    ends: List[float] = []
    for chunk in chunks:
        t0 = chunk.t0_ms or 0
        t1 = chunk.t1_ms if chunk.t1_ms is not None else t0
        starts.append(t0)
        ends.append(t1)
    if starts:
        start, end = min(starts), max(ends)
        if end > start:
            return max(0, round((end - start) / 1000))
    return max(0, round((now_ms - created_at_ms) / 1000))


def average(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def percentile(values: Sequence[float], p: float) -> float:
    """Floored-index percentile over the sorted sample; 0 for an empty sample."""
    if not values:
        return 0
    ordered = sorted(values)
    index = math.floor((p / 100) * (len(ordered) - 1))
    return ordered[index]


def count_intent_tags(overlays: Sequence[Dict[str, Any]]) -> Dict[str, int]:
    counts: Counter = Counter()
    for overlay in overlays:
        for tag in overlay.get("intent_tags") or []:
            counts[tag] += 1
    return dict(counts)


def build_metrics_event(session: SessionState, now_ms: int) -> Dict[str, Any]:
    return {
        "sessionId_hash": hash_session_id(session.session_id),
        "duration_s": estimate_duration_s(session.chunks, session.created_at_ms, now_ms),
        "language": session.language or "unknown",
        "avg_confidence": average([float(o.get("confidence") or 0) for o in session.overlays]),
        "intent_counts": count_intent_tags(session.overlays),
        "latency_ms_p50": percentile(session.overlay_latencies_ms, 50),
    }


class JsonlMetricsSink:
    def __init__(self, output_path: str | Path) -> None:
        self.output_path = Path(output_path)

    def _append(self, line: str) -> None:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        with self.output_path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def send(self, event: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._append, json.dumps(event, ensure_ascii=False))

    async def test_connection(self) -> Dict[str, Any]:
        return {"ok": True, "mode": "mock", "path": str(self.output_path)}


class SnowflakeMetricsSink:
    def __init__(
        self,
        *,
        account: str,
        user: str,
        password: str,
        database: str,
        schema: str,
        warehouse: str,
        timeout_seconds: int = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account = account
        self.user = user
        self.password = password
        self.database = database
        self.schema = schema
        self.warehouse = warehouse
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return all([self.account, self.user, self.password, self.database, self.schema, self.warehouse])

    @property
    def endpoint(self) -> str:
        return f"https://{self.account}.snowflakecomputing.com/api/v2/statements"

    async def _execute(self, statement: str) -> httpx.Response:
        body = {
            "statement": statement,
            "database": self.database,
            "schema": self.schema,
            "warehouse": self.warehouse,
            "timeout": self.timeout_seconds,
        }
        timeout = httpx.Timeout(connect=10.0, read=float(self.timeout_seconds), write=30.0, pool=10.0)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            return await client.post(self.endpoint, json=body, auth=(self.user, self.password))

    async def send(self, event: Dict[str, Any]) -> None:
        if not self.configured:
            raise MetricsError("Snowflake config missing")
        payload_json = json.dumps(event).replace("'", "''")
        statement = (
            f"insert into {SNOWFLAKE_TABLE} (payload, created_at) "
            f"select parse_json('{payload_json}'), current_timestamp()"
        )
        try:
            resp = await self._execute(statement)
        except httpx.HTTPError as exc:
            raise MetricsError(f"Snowflake request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise MetricsError(f"Snowflake error {resp.status_code}: {resp.text}")

    async def test_connection(self) -> Dict[str, Any]:
        if not self.configured:
            return {"ok": False, "mode": "snowflake", "error": "missing_config"}
        try:
            resp = await self._execute("select 1")
        except httpx.HTTPError as exc:
            return {"ok": False, "mode": "snowflake", "error": str(exc)}
        if resp.status_code >= 400:
            return {"ok": False, "mode": "snowflake", "error": f"status_{resp.status_code}"}
        return {"ok": True, "mode": "snowflake"}


def build_metrics_sink(settings: Settings) -> MetricsSink:
    if (settings.analytics_mode or "mock").lower() == "snowflake":
        return SnowflakeMetricsSink(
            account=settings.snowflake_account,
            user=settings.snowflake_user,
            password=settings.snowflake_password,
            database=settings.snowflake_database,
            schema=settings.snowflake_schema,
            warehouse=settings.snowflake_warehouse,
            timeout_seconds=settings.snowflake_timeout_seconds,
        )
    return JsonlMetricsSink(settings.analytics_path)
