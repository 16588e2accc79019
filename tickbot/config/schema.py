"""tickbot configuration schema: YAML file with environment overrides."""

from __future__ import annotations

import socket

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchedulerConfig(BaseModel):
    """Recurring schedules (scheduler.*)."""

    enabled: bool = True
    tick_interval_s: float = 60.0
    max_history: int = 100
    timezone: str | None = None  # IANA name; None = local time


class TasksConfig(BaseModel):
    """Task queue and the local worker (tasks.*)."""

    max_retries: int = 3
    retry_backoff_s: float = 0.0
    retry_backoff_factor: float = 2.0
    retry_backoff_max_s: float = 300.0
    poll_interval_s: float = 5.0
    sweep_interval_s: float = 60.0
    cleanup_after_s: float = 86_400.0
    device_id: str = Field(default_factory=socket.gethostname)
    capabilities: list[str] = Field(default_factory=lambda: ["llm", "tts", "tools"])


class ExecutorConfig(BaseModel):
    """Import paths (``module:attr``) of the executors used by ``tickbot run``."""

    schedules: str | None = None
    tasks: str | None = None


class Config(BaseSettings):
    """Root configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TICKBOT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    data_dir: str | None = None
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    tasks: TasksConfig = Field(default_factory=TasksConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # env vars win over values read from config.yaml (passed as init kwargs)
        return (env_settings, init_settings, file_secret_settings)
