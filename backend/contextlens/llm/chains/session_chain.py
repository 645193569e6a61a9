import asyncio
import io
import logging
from typing import Callable, Optional

from PIL import Image

from contextlens.core.config import get_settings
from contextlens.llm import gemini_client
from contextlens.llm.heuristics import heuristic_debrief, heuristic_rolling
from contextlens.llm.normalize import coerce_debrief, coerce_rolling, coerce_vision, extract_json_object
from contextlens.llm.prompts.session_prompts import (
    build_debrief_prompt,
    build_rolling_prompt,
    build_vision_prompt,
)
from contextlens.schemas.session import DebriefSummary, RollingSummary, VisionSnapshot

logger = logging.getLogger(__name__)

TextGenerator = Callable[..., str]
VisionGenerator = Callable[..., str]


def downscale_image(image_bytes: bytes, mime_type: str, max_side: int) -> bytes:
    """Shrink a frame so its longest side is <= max_side. Returns input on any decode issue."""
    if max_side <= 0:
        return image_bytes
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if max(img.size) <= max_side:
                return image_bytes
            img.thumbnail((max_side, max_side))
            fmt = "PNG" if mime_type == "image/png" else "JPEG"
            if fmt == "JPEG" and img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            out = io.BytesIO()
            img.save(out, format=fmt)
            return out.getvalue()
    except Exception:
        logger.debug("vision_frame_downscale_skipped mime=%s", mime_type, exc_info=True)
        return image_bytes


class SummaryGateway:
    """
    Rolling summary, debrief and vision snapshot generation.

    Text operations never raise: any backend failure or malformed output
    degrades to the keyword heuristic. Vision raises, the processor owns its
    degraded path.
    """

    def __init__(
        self,
        generate_text: Optional[TextGenerator] = None,
        generate_vision: Optional[VisionGenerator] = None,
        max_image_side: Optional[int] = None,
    ) -> None:
        self._generate_text = generate_text or gemini_client.call_llm_sync
        self._generate_vision = generate_vision or gemini_client.call_vision_sync
        self._max_image_side = (
            get_settings().vision_max_side if max_image_side is None else max_image_side
        )

    async def _text(self, prompt: str) -> str:
        try:
            return await asyncio.to_thread(self._generate_text, prompt) or ""
        except Exception:
            logger.warning("summary_backend_failed", exc_info=True)
            return ""

    async def rolling_summary(self, window_text: str, language: Optional[str] = None) -> RollingSummary:
        raw = await self._text(build_rolling_prompt(window_text, language))
        try:
            return coerce_rolling(extract_json_object(raw), window_text)
        except Exception:
            logger.warning("rolling_summary_normalize_failed", exc_info=True)
            return heuristic_rolling(window_text)

    async def debrief(self, window_text: str, language: Optional[str] = None) -> DebriefSummary:
        raw = await self._text(build_debrief_prompt(window_text, language))
        try:
            return coerce_debrief(extract_json_object(raw), window_text)
        except Exception:
            logger.warning("debrief_normalize_failed", exc_info=True)
            return heuristic_debrief(window_text)

    async def vision_summary(
        self,
        image_bytes: bytes,
        mime_type: str,
        language: Optional[str] = None,
    ) -> VisionSnapshot:
        frame = await asyncio.to_thread(downscale_image, image_bytes, mime_type, self._max_image_side)
        raw = await asyncio.to_thread(
            self._generate_vision,
            frame,
            mime_type,
            build_vision_prompt(language),
        )
        parsed = extract_json_object(raw)
        if parsed is None:
            raise gemini_client.LLMError("vision response was not a JSON object")
        return coerce_vision(parsed)
