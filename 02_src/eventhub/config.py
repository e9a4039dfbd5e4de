"""Project-level configuration and path helpers."""

import os
import socket
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "eventhub.db"
DEFAULT_LOG_PATH = LOGS_DIR / "eventhub.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


def default_instance_id() -> str:
    """Identifier of this gateway process, unique across the fleet."""
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


@dataclass
class Settings:
    """Runtime settings, read from the environment."""

    database_url: str | None = None
    api_host: str = "localhost"
    api_port: int = 8000
    log_level: str = "INFO"
    log_file: str | None = None

    broker_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    instance_id: str = field(default_factory=default_instance_id)

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    webhook_timeout_seconds: float = 30.0
    retry_sweep_interval_seconds: float = 60.0
    max_in_flight_per_subscription: int = 4
    signature_tolerance_seconds: int = 300

    heartbeat_interval_seconds: float = 25.0
    heartbeat_timeout_seconds: float = 60.0

    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:5173"]
    )

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        cors = os.getenv("CORS_ORIGINS")
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            api_host=os.getenv("API_HOST", "localhost"),
            api_port=_env_int("API_PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE"),
            broker_backend=os.getenv("BROKER_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            instance_id=os.getenv("INSTANCE_ID") or default_instance_id(),
            jwt_secret=os.getenv("JWT_SECRET", "change-me"),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            webhook_timeout_seconds=_env_float("WEBHOOK_TIMEOUT_SECONDS", 30.0),
            retry_sweep_interval_seconds=_env_float(
                "RETRY_SWEEP_INTERVAL_SECONDS", 60.0
            ),
            max_in_flight_per_subscription=_env_int(
                "MAX_IN_FLIGHT_PER_SUBSCRIPTION", 4
            ),
            signature_tolerance_seconds=_env_int("SIGNATURE_TOLERANCE_SECONDS", 300),
            heartbeat_interval_seconds=_env_float("HEARTBEAT_INTERVAL_SECONDS", 25.0),
            heartbeat_timeout_seconds=_env_float("HEARTBEAT_TIMEOUT_SECONDS", 60.0),
            cors_origins=(
                [origin.strip() for origin in cors.split(",") if origin.strip()]
                if cors
                else ["http://localhost:5173"]
            ),
        )
