from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class ToolSettings(BaseModel):
    timeout_seconds: int = 300
    cancel_poll_seconds: float = 0.1
    env: dict[str, str] = Field(default_factory=dict)


class Settings(BaseSettings):
    app_name: str = "wsscan"
    analyzer_path: str = Field(default=os.environ.get("ANALYZER_PATH", "analyzerManager"))
    storage_path: str = Field(default=os.environ.get("STORAGE_PATH", "storage"))
    database_url: str | None = None
    log_level: str = "INFO"

    platform_url: str | None = None
    access_token: str | None = None
    username: str | None = None
    password: str | None = None

    http_proxy: str | None = None
    https_proxy: str | None = None
    proxy_authorization: str | None = Field(
        default=None,
        description="'Basic <base64 user:password>' or 'Bearer <token>' added to the proxy URLs",
    )

    exclude_pattern: str = "**/*{node_modules,venv,.git}*"
    cache_ttl_days: int = 7
    keep_logs_count: int = 100

    tool_settings: dict[str, ToolSettings] = Field(
        default_factory=lambda: {
            "default": ToolSettings(),
            "analyze-applicability": ToolSettings(),
            "sast": ToolSettings(timeout_seconds=600),
        }
    )

    def get_tool_config(self, tool: str) -> ToolSettings:
        base = self.tool_settings.get("default", ToolSettings())
        specific = self.tool_settings.get(tool)
        if specific:
            merged = {**base.model_dump(), **specific.model_dump(exclude_unset=True)}
            return ToolSettings(**merged)
        return base

    @property
    def logs_path(self) -> Path:
        return Path(self.storage_path) / "logs"

    @property
    def runs_path(self) -> Path:
        return Path(self.storage_path) / "runs"

    @property
    def cache_url(self) -> str:
        return self.database_url or f"sqlite:///{Path(self.storage_path) / 'cache.db'}"

    def has_complete_credentials(self) -> bool:
        if not self.platform_url:
            return False
        return bool(self.access_token or (self.username and self.password))

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
