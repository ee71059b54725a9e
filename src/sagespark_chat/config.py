"""Application settings and logging setup."""

import logging
from functools import lru_cache
from typing import List

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = (
    "You are SageSpark, an intelligent and sophisticated AI assistant. "
    "Your goal is to provide accurate, helpful, and concise responses."
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Gemini
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    temperature: float = 0.5
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Session cookie
    session_secret: str = "change-me"
    session_algorithm: str = "HS256"
    session_cookie_name: str = "session"
    session_max_age_days: int = 7
    cookie_secure: bool = False

    # Storage
    database_path: str = "data/db.json"
    max_guest_sessions: int = 1000

    cors_origins: str = "*"
    log_json: bool = False

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",")]


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(json: bool = False) -> None:
    """Set up the structlog processor chain."""
    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    )
