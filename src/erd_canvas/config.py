import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────
# Section configs
# ─────────────────────────────────────────────────────────────


class LoggingSettings(BaseModel):
    level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    format: str = "%(asctime)-20s %(name)-40s %(levelname)-8s: %(message)s"


class StorageSettings(BaseModel):
    directory: Path = Field(
        Path.home() / ".erd-canvas" / "projects",
        description="Directory holding one JSON blob per project id.",
    )
    autosave: bool = Field(
        True, description="Persist the open project after every mutation."
    )


class HistorySettings(BaseModel):
    max_entries: int = Field(100, description="Undo history depth.")


class LayoutSettings(BaseModel):
    rank_separation: float = Field(80, description="Minimum gap between ranks.")
    node_separation: float = Field(60, description="Minimum gap between tables of a rank.")
    default_node_width: float = Field(
        250, description="Width used when a table's rendered size is unknown."
    )
    default_node_height: float = Field(
        200, description="Height used when a table's rendered size is unknown."
    )
    margin: float = Field(50, description="Offset of the layout's top-left corner.")
    ordering_sweeps: int = Field(4, description="Crossing-reduction sweeps.")


class ClipboardSettings(BaseModel):
    duplicate_offset: float = Field(20, description="Position delta of a duplicated table.")
    paste_offset: float = Field(50, description="Paste offset from the selected table.")
    paste_anchor_x: float = 100
    paste_anchor_y: float = 100


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8765
    cors_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
        ]
    )


# ─────────────────────────────────────────────────────────────
# Top-level settings
# ─────────────────────────────────────────────────────────────


class Settings(BaseSettings):
    """
    Application configuration.

    Precedence (highest → lowest):

    1. Init kwargs (tests/overrides)
    2. Environment variables (ERD_CANVAS_STORAGE__DIRECTORY, ...)
    3. .env
    4. Defaults in this class
    """

    model_config = SettingsConfigDict(
        env_prefix="ERD_CANVAS_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    logging: LoggingSettings = LoggingSettings()
    storage: StorageSettings = StorageSettings()
    history: HistorySettings = HistorySettings()
    layout: LayoutSettings = LayoutSettings()
    clipboard: ClipboardSettings = ClipboardSettings()
    server: ServerSettings = ServerSettings()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Configure root logging from the settings' logging section."""
    settings = settings or get_settings()
    logging.basicConfig(level=settings.logging.level, format=settings.logging.format)
