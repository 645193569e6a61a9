import logging
from typing import Optional, Dict, Any

from google import genai as genai_client
from google.genai import types as genai_types
from groq import Groq

from contextlens.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


class LLMError(RuntimeError):
    pass


class VisionUnavailableError(LLMError):
    pass


class VisionRateLimitError(LLMError):
    pass


def _is_rate_limited(exc: BaseException) -> bool:
    for attr in ("code", "status_code"):
        if getattr(exc, attr, None) == 429:
            return True
    return "RESOURCE_EXHAUSTED" in str(exc)


def get_gemini_client():
    """Return google-genai client (None when no key)."""
    if not settings.gemini_api_key:
        return None
    return genai_client.Client(api_key=settings.gemini_api_key)


def get_groq_client():
    """Return Groq client."""
    if not settings.groq_api_key:
        return None
    return Groq(api_key=settings.groq_api_key)


def _select_provider() -> str:
    if settings.gemini_api_key:
        return "gemini"
    if settings.groq_api_key:
        return "groq"
    return "mock"


def is_vision_available() -> bool:
    return bool(settings.gemini_api_key)


def get_llm_status() -> Dict[str, Any]:
    """Return provider + model metadata for health checks."""
    provider = _select_provider()
    if provider == "gemini":
        model = settings.gemini_model
        api_key_set = bool(settings.gemini_api_key and len(settings.gemini_api_key) > 10)
    elif provider == "groq":
        model = settings.groq_model
        api_key_set = bool(settings.groq_api_key and len(settings.groq_api_key) > 10)
    else:
        model = None
        api_key_set = False
    return {
        "provider": provider,
        "status": "ready" if provider != "mock" else "mock_mode",
        "model": model,
        "vision_model": settings.gemini_vision_model if is_vision_available() else None,
        "api_key_set": api_key_set,
    }


def _gemini_generate(
    prompt: str,
    *,
    system_prompt: Optional[str],
    model_name: str,
    temperature: float,
    max_tokens: int,
    json_mode: bool,
) -> str:
    client = get_gemini_client()
    if client is None:
        return ""
    try:
        config = genai_types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
            system_instruction=system_prompt or None,
            response_mime_type="application/json" if json_mode else None,
        )
        response = client.models.generate_content(
            model=model_name,
            contents=prompt,
            config=config,
        )
        return (getattr(response, "text", None) or "").strip()
    except Exception:
        logger.warning("gemini_generate_failed model=%s", model_name, exc_info=True)
    return ""


def _groq_generate(
    prompt: str,
    *,
    system_prompt: Optional[str],
    model_name: str,
    temperature: float,
    max_tokens: int,
    json_mode: bool,
) -> str:
    client = get_groq_client()
    if not client:
        return ""
    try:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        resp = client.chat.completions.create(
            model=model_name,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        return (resp.choices[0].message.content or "").strip()
    except Exception:
        logger.warning("groq_generate_failed model=%s", model_name, exc_info=True)
    return ""


def call_llm_sync(
    prompt: str,
    *,
    system_prompt: Optional[str] = None,
    model_name: Optional[str] = None,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    json_mode: bool = True,
) -> str:
    """Sync LLM call (Gemini-first, Groq fallback). Returns "" when no provider answers."""
    provider = _select_provider()
    temperature = settings.ai_temperature if temperature is None else temperature
    max_tokens = settings.ai_max_tokens if max_tokens is None else max_tokens
    if provider == "gemini":
        return _gemini_generate(
            prompt,
            system_prompt=system_prompt,
            model_name=model_name or settings.gemini_model,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
    if provider == "groq":
        return _groq_generate(
            prompt,
            system_prompt=system_prompt,
            model_name=model_name or settings.groq_model,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
    return ""


def call_vision_sync(
    image_bytes: bytes,
    mime_type: str,
    prompt: str,
    *,
    model_name: Optional[str] = None,
) -> str:
    """
    Single-image Gemini call. Unlike call_llm_sync this raises: the caller owns
    the degraded path for vision.
    """
    client = get_gemini_client()
    if client is None:
        raise VisionUnavailableError("GEMINI_API_KEY not configured")
    model = model_name or settings.gemini_vision_model
    try:
        response = client.models.generate_content(
            model=model,
            contents=[
                genai_types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                prompt,
            ],
            config=genai_types.GenerateContentConfig(
                temperature=0.2,
                max_output_tokens=settings.ai_max_tokens,
                response_mime_type="application/json",
            ),
        )
    except Exception as exc:
        if _is_rate_limited(exc):
            raise VisionRateLimitError(str(exc)) from exc
        raise LLMError(f"vision request failed: {exc}") from exc
    text_value = (getattr(response, "text", None) or "").strip()
    if not text_value:
        raise LLMError("vision response was empty")
    return text_value


def test_connection() -> Dict[str, Any]:
    """Live round-trip against the selected provider."""
    provider = _select_provider()
    if provider == "mock":
        return {"ok": False, "error": "missing_api_key"}
    raw = call_llm_sync('Return JSON {"ok": true}.', max_tokens=16)
    if not raw:
        return {"ok": False, "error": "empty_response", "provider": provider}
    return {"ok": '"ok"' in raw, "provider": provider}
