from __future__ import annotations

import asyncio
from typing import Any, Dict, Literal

from fastapi import APIRouter, Query, Request

from contextlens.llm.gemini_client import get_llm_status, test_connection

router = APIRouter()


@router.get("/health")
def health() -> Dict[str, Any]:
    return {"ok": True}


@router.get("/status")
def status(request: Request) -> Dict[str, Any]:
    registry = request.app.state.registry
    return {
        "ok": True,
        "active_sessions": registry.count(),
        "llm": get_llm_status(),
    }


@router.get("/integrations/test")
async def integrations_test(
    request: Request,
    mode: Literal["keys", "live"] = Query(default="keys"),
) -> Dict[str, Any]:
    state = request.app.state
    stt_adapter = state.stt_adapter
    store = state.store
    metrics_sink = state.metrics_sink
    results: Dict[str, Any] = {}

    if mode == "keys":
        llm = get_llm_status()
        results["gemini"] = {"ok": llm["provider"] != "mock", "provider": llm["provider"]}
        results["deepgram"] = {"ok": bool(stt_adapter and stt_adapter.is_ready())}
        results["store"] = {"ok": store is not None}
        results["analytics"] = {"ok": metrics_sink is not None}
        return {"mode": mode, "results": results}

    results["gemini"] = await asyncio.to_thread(test_connection)
    if stt_adapter is not None:
        results["deepgram"] = await stt_adapter.test_connection()
    else:
        results["deepgram"] = {"ok": False, "error": "not_configured"}
    if store is not None:
        results["store"] = {"ok": await asyncio.to_thread(store.ping)}
    else:
        results["store"] = {"ok": False, "error": "not_configured"}
    if metrics_sink is not None:
        results["analytics"] = await metrics_sink.test_connection()
    else:
        results["analytics"] = {"ok": False, "error": "not_configured"}
    return {"mode": mode, "results": results}
