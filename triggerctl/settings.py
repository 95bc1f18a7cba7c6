"""Environment-driven settings."""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-level settings, read from TRIGGERCTL_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="TRIGGERCTL_")

    data_dir: Path = Path(".triggerctl")
    log_level: str = "INFO"
    log_file: Optional[Path] = None
