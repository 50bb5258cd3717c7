"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    # ── Database ─────────────────────────────────────────
    postgres_user: str = "campaigns"
    postgres_password: str = "campaigns_pw"
    postgres_db: str = "email_analytics"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = ""

    # ── LLM ──────────────────────────────────────────────
    llm_strategy: str = "rule_based"  # rule_based | model
    model_path: str = "models/model.gguf"
    model_context_size: int = 2048
    model_gpu_layers: int = 0
    model_max_tokens: int = 512
    model_temperature: float = 0.7
    model_top_p: float = 0.9
    model_top_k: int = 40
    model_timeout_seconds: float = 30.0
    model_verbose: bool = False

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"
    max_page_size: int = 1000
    sql_row_limit: int = 1000
    query_timeout_ms: int = 10_000

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        protected_namespaces = ()


@lru_cache
def get_settings() -> Settings:
    return Settings()
