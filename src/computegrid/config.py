"""
Runtime configuration and logging setup.

Values come from the environment (a local .env file is loaded first).
Economic constants are not configurable here; they live in
computegrid.core.economics.constants.
"""

import logging
import logging.handlers  # For RotatingFileHandler
import os
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from computegrid.core.economics.constants import (
    CANARY_POOL_MIN_PER_TYPE,
    CANARY_TASK_FREQUENCY,
    MIN_TRUST_SCORE,
    TASK_POOL_MIN_PER_TYPE,
    TASK_REDUNDANCY,
)
from computegrid.core.storage import DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)

DEV_MANIFEST_SECRET = "computegrid-dev-secret-change-me"
DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://localhost:8000,http://127.0.0.1:5173"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


@dataclass
class GridConfig:
    database_url: str = DEFAULT_DATABASE_URL
    manifest_secret: str = DEV_MANIFEST_SECRET
    task_pool_min: int = TASK_POOL_MIN_PER_TYPE
    canary_pool_min: int = CANARY_POOL_MIN_PER_TYPE
    task_redundancy: int = TASK_REDUNDANCY
    canary_frequency: float = CANARY_TASK_FREQUENCY
    min_trust_score: float = MIN_TRUST_SCORE
    require_manifest_signature: bool = False
    log_level: str = "INFO"
    log_file: Optional[str] = None
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: DEFAULT_CORS_ORIGINS.split(","))

    def __post_init__(self):
        if self.task_redundancy < 1:
            raise ValueError(f"TASK_REDUNDANCY must be >= 1, got {self.task_redundancy}")
        if not 0.0 <= self.canary_frequency <= 1.0:
            raise ValueError(f"CANARY_TASK_FREQUENCY must be in [0, 1], got {self.canary_frequency}")

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "GridConfig":
        if dotenv:
            load_dotenv()

        secret = os.getenv("MANIFEST_SECRET") or os.getenv("SESSION_SECRET")
        if not secret:
            logger.warning("MANIFEST_SECRET not set - using the development secret. "
                           "Manifest signatures are forgeable!")
            secret = DEV_MANIFEST_SECRET

        cors = os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")

        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            manifest_secret=secret,
            task_pool_min=_env_int("TASK_POOL_MIN", TASK_POOL_MIN_PER_TYPE),
            canary_pool_min=_env_int("CANARY_POOL_MIN", CANARY_POOL_MIN_PER_TYPE),
            task_redundancy=_env_int("TASK_REDUNDANCY", TASK_REDUNDANCY),
            canary_frequency=_env_float("CANARY_TASK_FREQUENCY", CANARY_TASK_FREQUENCY),
            min_trust_score=_env_float("MIN_TRUST_SCORE", MIN_TRUST_SCORE),
            require_manifest_signature=_env_bool("REQUIRE_MANIFEST_SIGNATURE"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=_env_int("API_PORT", 8000),
            cors_origins=[origin.strip() for origin in cors if origin.strip()],
        )


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Route all computegrid loggers through the root logger.

    Existing root handlers are replaced so repeated calls do not duplicate
    output. With log_file set, a rotating file (5MB x 2) is added.
    """
    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # SQLAlchemy is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
