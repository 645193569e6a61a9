import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from contextlens.api.v1.endpoints import status
from contextlens.api.v1.websocket.session_ws import session_ws
from contextlens.core.config import Settings, get_settings
from contextlens.db.session import SessionLocal, build_session_factory
from contextlens.llm.chains.session_chain import SummaryGateway
from contextlens.services.analytics import build_metrics_sink
from contextlens.services.session_bus import SessionBus
from contextlens.services.session_persistence import SqlSessionStore
from contextlens.services.session_processor import SessionProcessor
from contextlens.services.session_registry import SessionRegistry
from contextlens.services.stt_stream import DeepgramStreamAdapter

logger = logging.getLogger(__name__)


def _build_store(settings: Settings) -> Optional[SqlSessionStore]:
    if not settings.persistence_enabled:
        return None
    if settings is get_settings():
        return SqlSessionStore(SessionLocal)
    return SqlSessionStore(build_session_factory(settings.database_url))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    app = FastAPI(title=settings.project_name)

    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    registry = SessionRegistry(
        default_save_mode=settings.save_default,
        default_stt_mode=settings.stt_mode,
    )
    bus = SessionBus()
    store = _build_store(settings)
    metrics_sink = build_metrics_sink(settings)
    stt_adapter = DeepgramStreamAdapter(
        settings.deepgram_api_key,
        model=settings.deepgram_model,
        listen_url=settings.deepgram_listen_url,
    )
    processor = SessionProcessor(
        registry,
        bus,
        SummaryGateway(max_image_side=settings.vision_max_side),
        settings=settings,
        store=store,
        metrics_sink=metrics_sink,
        stt_adapter=stt_adapter,
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.bus = bus
    app.state.store = store
    app.state.metrics_sink = metrics_sink
    app.state.stt_adapter = stt_adapter
    app.state.processor = processor

    app.include_router(status.router)
    app.add_api_websocket_route(settings.ws_path, session_ws)

    logger.info(
        "contextlens_app_created ws_path=%s analytics_mode=%s persistence=%s",
        settings.ws_path,
        settings.analytics_mode,
        store is not None,
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("contextlens.main:app", host="0.0.0.0", port=8000, reload=True)
