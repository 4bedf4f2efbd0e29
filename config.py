"""
Pydantic Settings - application configuration loaded from environment variables.
"""
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Application ───────────────────────────
    APP_ENV: str = "development"

    # ── Database ──────────────────────────────
    DATABASE_URL: str = "sqlite:///./students.db"
    DATABASE_ECHO: bool = False

    # ── Uploads ───────────────────────────────
    MAX_UPLOAD_BYTES: int = 500 * 1024

    # ── Logging ───────────────────────────────
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    # ── CORS ──────────────────────────────────
    CORS_ORIGINS: List[str] = ["*"]

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def sql_echo(self) -> bool:
        return self.DATABASE_ECHO and self.APP_ENV == "development"


settings = Settings()
