from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, AliasChoices
from functools import lru_cache
from pathlib import Path


def find_env_file():
    """Find .env.local file in project (for local development only)"""
    possible_paths = [
        Path(__file__).parent.parent.parent / '.env.local',  # backend/.env.local
        Path(__file__).parent.parent.parent.parent / '.env.local',
        Path.cwd() / '.env.local',
        Path.cwd() / 'backend' / '.env.local',
    ]
    for p in possible_paths:
        if p.exists():
            return str(p)
    return None  # No env file found, will use environment variables


class Settings(BaseSettings):
    env: str = 'development'
    project_name: str = 'Context Lens'
    ws_path: str = '/ws'

    # CORS - comma separated origins or "*" for all
    cors_origins: str = '*'

    # AI API Keys - Set via environment variable in production
    gemini_api_key: str = ''
    groq_api_key: str = ''

    # AI Model settings
    gemini_model: str = 'gemini-1.5-flash'
    gemini_vision_model: str = Field(
        default='gemini-1.5-flash',
        validation_alias=AliasChoices('GEMINI_VISION_MODEL'),
    )
    # Groq is only used for text when Gemini is not configured.
    # Backward-compatible aliases:
    # - LLM_GROQ_CHAT_MODEL (preferred)
    # - GROQ_MODEL (legacy)
    llm_groq_chat_model: str = Field(
        default='meta-llama/llama-4-scout-17b-16e-instruct',
        validation_alias=AliasChoices('LLM_GROQ_CHAT_MODEL', 'GROQ_MODEL'),
    )
    ai_temperature: float = 0.4
    ai_max_tokens: int = 512

    # Overlay throttle + trailing windows
    summary_interval_ms: int = 5000
    summary_chars: int = 600
    max_rolling_chars: int = 2000
    max_debrief_chars: int = 6000

    # Vision cadence
    vision_interval_ms: int = 3000
    vision_backoff_ms: int = 30000   # skip captures for this long after a provider 429
    vision_max_side: int = 1024      # frames are downscaled before upload

    # Session defaults (start_session may override)
    save_default: str = 'none'       # none | persist
    stt_mode: str = 'mock'           # mock | external-stream

    # Persistence (opt-in per session via saveMode=persist)
    database_url: str = 'sqlite:///./contextlens.db'
    persistence_enabled: bool = True

    # Deepgram live transcription
    deepgram_api_key: str = ''
    deepgram_model: str = 'nova-2'
    deepgram_listen_url: str = 'wss://api.deepgram.com/v1/listen'

    # Analytics sink
    analytics_mode: str = 'mock'     # mock | snowflake
    analytics_path: str = './analytics_out/metrics.jsonl'
    snowflake_account: str = ''
    snowflake_user: str = ''
    snowflake_password: str = ''
    snowflake_database: str = ''
    snowflake_schema: str = ''
    snowflake_warehouse: str = ''
    snowflake_timeout_seconds: int = 60

    model_config = SettingsConfigDict(
        env_file=find_env_file(),
        env_file_encoding='utf-8',
        extra='ignore',
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.database_url and self.database_url.startswith('postgres://'):
            self.database_url = self.database_url.replace('postgres://', 'postgresql://', 1)

    @property
    def groq_model(self) -> str:
        """
        Backward-compat accessor.
        Prefer using `llm_groq_chat_model` in new code.
        """
        return self.llm_groq_chat_model


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
