"""Process-wide settings, loaded once from the environment at start-up."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MAX_CONCURRENT_RUNS = 5


@dataclass(frozen=True)
class BrowserSettings:
    executable_path: str = ""
    launch_args: Tuple[str, ...] = ()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Results storage
    test_results_path: Path = Path("test-results")
    reports_base_url: str = "/reports"

    # Scheduling
    max_concurrent_runs: int = Field(default=MAX_CONCURRENT_RUNS, ge=1, le=32)
    watchdog_interval_seconds: float = Field(default=5.0, gt=0)

    # Execution engine
    engine_backend: str = "local"  # local | docker-sdk | docker-cli
    engine_command: str = "behave"
    engine_image: str = "testhub-behave-runner:latest"
    features_path: Path = Path("features")

    # Report renderer
    allure_command: str = "allure"

    # Browser automation
    browser_executable_path: str = ""
    browser_launch_args: List[str] = Field(default_factory=list)

    # Issue tracker
    jira_enabled: bool = False
    jira_base_url: str = ""
    jira_username: str = ""
    jira_api_token: str = ""
    jira_project_key: Optional[str] = None
    jira_issue_type: str = "Bug"

    zephyr_enabled: bool = False
    zephyr_base_url: str = ""
    zephyr_username: str = ""
    zephyr_api_token: str = ""
    zephyr_project_key: Optional[str] = None

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    @field_validator("engine_backend")
    @classmethod
    def validate_backend(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"local", "docker-sdk", "docker-cli"}:
            raise ValueError("engine_backend must be one of: local, docker-sdk, docker-cli")
        return normalized

    @property
    def browser(self) -> BrowserSettings:
        return BrowserSettings(
            executable_path=self.browser_executable_path,
            launch_args=tuple(self.browser_launch_args),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
