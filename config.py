import logging
import os
from dataclasses import dataclass
from typing import Optional

import structlog
from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///finance_chat.db"

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    assistant_id: Optional[str] = None

    plaid_client_id: Optional[str] = None
    plaid_secret: Optional[str] = None
    plaid_env: str = "sandbox"

    # Public URL of the functions app (webhooks and local storage links)
    functions_base_url: str = "http://localhost:8000"

    s3_bucket: Optional[str] = None
    aws_region: str = "us-east-1"
    local_storage_dir: str = "storage"

    firebase_credentials: Optional[str] = None
    tesseract_cmd: Optional[str] = None

    run_poll_interval: float = 1.0
    run_poll_attempts: int = 60

    log_level: str = "INFO"

    @property
    def plaid_webhook_url(self) -> str:
        return f"{self.functions_base_url.rstrip('/')}/functions/v1/plaid-webhook"


def load_settings() -> Settings:
    """Read settings from the environment (and ``.env`` if present)."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///finance_chat.db"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        assistant_id=os.getenv("OPENAI_ASSISTANT_ID"),
        plaid_client_id=os.getenv("PLAID_CLIENT_ID"),
        plaid_secret=os.getenv("PLAID_SECRET"),
        plaid_env=os.getenv("PLAID_ENV", "sandbox"),
        functions_base_url=os.getenv("FUNCTIONS_BASE_URL", "http://localhost:8000"),
        s3_bucket=os.getenv("S3_BUCKET"),
        aws_region=os.getenv("AWS_REGION", "us-east-1"),
        local_storage_dir=os.getenv("LOCAL_STORAGE_DIR", "storage"),
        firebase_credentials=os.getenv("FIREBASE_CREDENTIALS"),
        tesseract_cmd=os.getenv("TESSERACT_CMD"),
        run_poll_interval=float(os.getenv("RUN_POLL_INTERVAL", "1.0")),
        run_poll_attempts=int(os.getenv("RUN_POLL_ATTEMPTS", "60")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


def configure_logging(level: str = "INFO"):
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
    )
