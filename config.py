from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    db_path: Path = Path(__file__).parent / "flashdeck.db"
    copilot_env_file: Path = Path(__file__).parent / ".env"
    copilot_model: str = "gpt-4.1"
    quiz_history_limit: int = 5
    max_sessions: int = 100
    log_level: str = "INFO"

    model_config = {"env_prefix": "FLASHDECK_"}


settings = Settings()
