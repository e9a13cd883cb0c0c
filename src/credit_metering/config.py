"""
Application configuration using Pydantic Settings.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models.generation import GenerationKind
from .utils.ip import DEFAULT_LOCAL_PLACEHOLDER


class Settings(BaseSettings):
    """Settings loaded from CREDIT_* environment variables or a .env file."""

    # Store
    MONGO_URI: str = ""
    MONGO_DB: str = "gentube"

    # Credits
    FREE_CREDITS_VALUE: int = Field(default=30, ge=0)
    IMAGE_CREDIT_COST: int = Field(default=6, gt=0)
    IMAGE_EDIT_CREDIT_COST: int = Field(default=10, gt=0)
    VIDEO_CREDIT_COST: int = Field(default=50, gt=0)

    # Requests
    MAX_PROMPT_LENGTH: int = 1500
    LOCAL_IP_PLACEHOLDER: str = DEFAULT_LOCAL_PLACEHOLDER

    # Generation backend
    GENERATION_TIMEOUT_SECONDS: float = 300.0
    POLL_INITIAL_DELAY_SECONDS: float = 1.0
    POLL_MAX_DELAY_SECONDS: float = 15.0
    POLL_BACKOFF_FACTOR: float = 2.0
    TEST_MODE: bool = False
    TEST_MODE_ASSET_URL: str = (
        "https://storage.googleapis.com/gen-image-storage/9f6c23a0-d623-4b5c-8cc8-3b35013576f3.png"
    )

    # Throttle
    RATE_LIMIT_MAX_REQUESTS: int = 10
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_COOLDOWN_SECONDS: float = 2.0
    RATE_LIMIT_CLEANUP_INTERVAL_SECONDS: float = 300.0

    # Ledger log
    LEDGER_LOG_PATH: Path = Path("logs/credit_ledger.log")

    model_config = SettingsConfigDict(env_prefix="CREDIT_", env_file=".env", extra="ignore")

    def credit_cost(self, kind: GenerationKind) -> int:
        return {
            GenerationKind.IMAGE: self.IMAGE_CREDIT_COST,
            GenerationKind.IMAGE_EDIT: self.IMAGE_EDIT_CREDIT_COST,
            GenerationKind.VIDEO: self.VIDEO_CREDIT_COST,
        }[kind]
