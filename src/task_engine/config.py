import os
import socket
from datetime import timedelta
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Configuration for the task store and the execution engine."""
    DATABASE_URL: str = "sqlite+aiosqlite:///:memory:"
    POLL_INTERVAL_SECONDS: float = 1.0
    WORKER_POOL_SIZE: int = 10
    POLL_BATCH_SIZE: int = 100
    DEFAULT_ACTION_TIMEOUT_SECONDS: float = 300.0
    CANCEL_GRACE_SECONDS: float = 10.0
    LEASE_GRACE_SECONDS: float = 60.0
    RETRY_MAX_BACKOFF_SECONDS: float = 3600.0
    RETRY_JITTER: float = 0.2
    EXECUTION_HISTORY_LIMIT: int = 100
    LEASE_HOLDER: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="TASK_ENGINE_", env_file=".env", extra="ignore")

    @property
    def lease_holder(self) -> str:
        return self.LEASE_HOLDER or f"{socket.gethostname()}:{os.getpid()}"

    @property
    def default_action_timeout(self) -> timedelta:
        return timedelta(seconds=self.DEFAULT_ACTION_TIMEOUT_SECONDS)

    @property
    def lease_grace(self) -> timedelta:
        return timedelta(seconds=self.LEASE_GRACE_SECONDS)

    @property
    def retry_max_backoff(self) -> timedelta:
        return timedelta(seconds=self.RETRY_MAX_BACKOFF_SECONDS)


def get_engine_settings() -> EngineSettings:
    """Return a fresh engine settings instance."""
    return EngineSettings()
