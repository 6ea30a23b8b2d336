from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    # Model selection
    LLM_PROVIDER: str = "openai"
    LLM_MODEL: str = "gpt-4o"
    LLM_BASE_URL: str | None = None
    LLM_API_KEY: str = ""

    # Per-provider credentials, e.g. PROVIDER_API_KEYS='{"deepseek": "sk-..."}'
    PROVIDER_API_KEYS: dict[str, str] = {}

    # Forces one of: native, prompt_engineering, structured_outputs
    TOOL_CALL_ENGINE: str | None = None

    MAX_ITERATIONS: int = 10
    THINKING_ENABLED: bool = False
    TEMPERATURE: float = 0.7
    TOOL_CONCURRENCY: int = 4
    LLM_MAX_RETRIES: int = 3

    # Abort a run when no event has been appended for this many seconds
    ABORT_ON_IDLE_SECONDS: float | None = None

    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    ROOT_DIR: Path = Path(__file__).resolve().parent.parent.parent
    EVENT_DB_PATH: Path = ROOT_DIR / "agentkernel.db"

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
