from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # LLM
    LLM_API_KEY: Optional[str] = None
    LLM_BASE_URL: Optional[str] = None
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TEMPERATURE: float = 0.2

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./composer.db"
    CHECKPOINT_BACKEND: str = "sql"  # 'sql' or 'memory'

    # Agent loop
    MAX_REASONING_ROUNDS: int = 4
    RECURSION_LIMIT: int = 25

    # Timeouts (seconds)
    TOOL_TIMEOUT_SECONDS: float = 20.0
    CONTEXT_TIMEOUT_SECONDS: float = 20.0
    MODEL_TIMEOUT_SECONDS: float = 60.0

    # Google Workspace
    GOOGLE_API_BASE_URL: str = "https://www.googleapis.com"
    GOOGLE_ACCESS_TOKEN: Optional[str] = None
    SEARCH_MAX_RESULTS: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
    )


settings = Settings()
