from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from contextlens.models.base import Base
from contextlens.models.session_record import SessionRecord, UserPreference
from contextlens.services.session_registry import SessionState

logger = logging.getLogger(__name__)


def build_session_record(session: SessionState) -> Dict[str, Any]:
    """Snapshot of an ending session in the shape the store writes."""
    return {
        "session_id": session.session_id,
        "user_id": session.user_id,
        "language": session.language,
        "save_mode": session.save_mode,
        "transcript": [chunk.model_dump() for chunk in session.chunks],
        "overlays": list(session.overlays),
        "vision": list(session.vision_updates),
        "debrief": session.debrief,
    }


class SqlSessionStore:
    """Opt-in durable store for ended sessions and per-user preferences."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._schema_ensured = False
        self._schema_lock = threading.Lock()

    def _ensure_schema(self) -> None:
        if self._schema_ensured:
            return
        with self._schema_lock:
            if self._schema_ensured:
                return
            db = self._session_factory()
            try:
                Base.metadata.create_all(bind=db.get_bind())
                self._schema_ensured = True
            finally:
                db.close()

    def save_session(self, record: Dict[str, Any]) -> None:
        self._ensure_schema()
        db = self._session_factory()
        try:
            db.merge(SessionRecord(**record))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info("session_record_saved session_id=%s", record.get("session_id"))

    def upsert_user_prefs(self, user_id: str, language: Optional[str], save_mode: Optional[str]) -> None:
        self._ensure_schema()
        db = self._session_factory()
        try:
            pref = db.get(UserPreference, user_id)
            if pref is None:
                pref = UserPreference(user_id=user_id)
                db.add(pref)
            if language:
                pref.language = language
            if save_mode:
                pref.save_mode = save_mode
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def load_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_schema()
        db = self._session_factory()
        try:
            row = db.get(SessionRecord, session_id)
            if row is None:
                return None
            return {
                "session_id": row.session_id,
                "user_id": row.user_id,
                "language": row.language,
                "save_mode": row.save_mode,
                "transcript": row.transcript or [],
                "overlays": row.overlays or [],
                "vision": row.vision or [],
                "debrief": row.debrief,
            }
        finally:
            db.close()

    def ping(self) -> bool:
        db = self._session_factory()
        try:
            db.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.debug("session_store_ping_failed", exc_info=True)
            return False
        finally:
            db.close()

    async def save_session_async(self, record: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.save_session, record)

    async def upsert_user_prefs_async(self, user_id: str, language: Optional[str], save_mode: Optional[str]) -> None:
        await asyncio.to_thread(self.upsert_user_prefs, user_id, language, save_mode)
