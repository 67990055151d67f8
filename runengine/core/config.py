from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ENV: str = "local"
    APP_NAME: str = "agent-run-engine"
    LOG_LEVEL: str = "INFO"

    # IDE backend the engine talks to (agent-chat, plan-project, tests, ...)
    BACKEND_BASE_URL: str = "http://localhost:5000"
    BACKEND_TIMEOUT_S: float = 60.0
    BACKEND_STREAM_READ_TIMEOUT_S: float = 300.0

    CHAT_HISTORY_LIMIT: int = 50
    DEFAULT_AUTOPILOT: bool = False

    LEDGER_MAX_THOUGHTS: int = 1000
    LEDGER_MAX_EVENTS: int = 5000

    ACTIVITY_BANNER_CLEAR_S: float = 4.0
    NOTICE_TTL_S: float = 6.0

    CORS_ORIGINS: list[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


@lru_cache
def get_settings() -> Settings:
    return Settings()
