import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


class Settings:
    def __init__(self) -> None:
        base_dir = Path(__file__).resolve().parent.parent.parent
        self.APP_NAME: str = os.getenv("APP_NAME", "OSFlow API")
        self.SQLALCHEMY_DATABASE_URI: str = os.getenv(
            "SQLALCHEMY_DATABASE_URI",
            f"sqlite:///{(base_dir / 'osflow.db').as_posix()}",
        )
        self.ENV: str = os.getenv("ENV", "development")
        self.SEED_DEMO_DATA: bool = _env_bool("SEED_DEMO_DATA", "true")

        # Orquestrador de ordens de servico
        self.ORDER_CONFLICT_RETRIES: int = int(os.getenv("ORDER_CONFLICT_RETRIES", "3"))
        self.SCHEDULE_HORIZON_DAYS: int = int(os.getenv("SCHEDULE_HORIZON_DAYS", "90"))
        self.BLOCK_EMPTY_ACTIVITY_PLAN: bool = _env_bool("BLOCK_EMPTY_ACTIVITY_PLAN")

        self.NOTIFICATION_WEBHOOK_URL: Optional[str] = os.getenv("NOTIFICATION_WEBHOOK_URL") or None
        self.NOTIFICATION_TIMEOUT_SECONDS: float = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5"))

        default_cors = [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]
        cors_origins = os.getenv("BACKEND_CORS_ORIGINS")
        self.BACKEND_CORS_ORIGINS: List[str] = (
            [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
            if cors_origins
            else default_cors
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
