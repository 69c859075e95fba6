from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "dev"
    DATABASE_URL: str = "sqlite:///./leadflow.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"

    # Token simples para as rotas administrativas (header X-Admin-Token)
    ADMIN_API_TOKEN: str = ""

    # WhatsApp Cloud API (apenas o webhook de entrada vive aqui)
    WA_VERIFY_TOKEN: str = ""
    WA_WEBHOOK_SECRET: str = ""

    # Geração de texto (Gemini REST)
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-1.5-flash"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"

    # Flow engine
    FLOW_MAX_JUMP_DEPTH: int = Field(default=8, ge=1)
    FLOW_MAX_STEPS: int = Field(default=100, ge=1)
    FLOW_AI_HISTORY_LIMIT: int = Field(default=10, ge=0)
    FLOW_HISTORY_MAX: int = Field(default=50, ge=1)
    FLOW_COLLABORATOR_TIMEOUT_SECS: float = Field(default=20.0, gt=0)
    FLOW_COLLABORATOR_WORKERS: int = Field(default=16, ge=1)
    FLOW_TIMEZONE: str = "America/Mexico_City"

    # Concorrência
    FLOW_LOCK_BACKEND: str = "local"  # local | redis
    FLOW_LOCK_TIMEOUT_SECS: float = Field(default=30.0, gt=0)

    # Scheduler
    FLOW_SCHEDULER_ENABLED: bool = True
    FLOW_SCHEDULER_TICK_SECS: float = Field(default=5.0, gt=0)
    # timer cujo handler falhou (ex.: lead ocupado) volta ao heap após este atraso
    FLOW_TIMER_RETRY_SECS: float = Field(default=30.0, gt=0)
    FLOW_TIMER_MAX_ATTEMPTS: int = Field(default=20, ge=1)

    # Efeitos: inline (mesmo processo) ou via Celery
    FLOW_EFFECTS_ASYNC: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
