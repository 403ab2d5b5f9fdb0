"""Configuration management for cellsync."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

ENV_BASE_DIR = "CELLSYNC_BASE_DIR"
ENV_HOST = "CELLSYNC_HOST"
ENV_PORT = "CELLSYNC_PORT"


def default_base_dir() -> Path:
    return Path(os.environ.get(ENV_BASE_DIR) or Path.home() / ".cellsync")


class Settings(BaseModel):
    base_dir: Path = Path.home() / ".cellsync"
    host: str = "127.0.0.1"
    port: int = 2150

    # Execution
    execution_timeout: Optional[float] = None
    cancel_grace: float = 2.0
    kernel_start_timeout: float = 30.0
    input_timeout: float = 300.0

    # Broadcasting
    send_queue_size: int = 256

    # Background work
    autosave_interval: float = 5.0
    background_workers: int = 2

    @property
    def notebooks_dir(self) -> Path:
        return self.base_dir / "notebooks"

    @property
    def config_path(self) -> Path:
        return self.base_dir / "config.json"


def ensure_dirs(settings: Settings) -> None:
    settings.base_dir.mkdir(parents=True, exist_ok=True)
    settings.notebooks_dir.mkdir(exist_ok=True)


def _apply_env(settings: Settings) -> Settings:
    overrides = {}
    if os.environ.get(ENV_HOST):
        overrides["host"] = os.environ[ENV_HOST]
    if os.environ.get(ENV_PORT):
        overrides["port"] = int(os.environ[ENV_PORT])
    return settings.model_copy(update=overrides) if overrides else settings


def load_settings(base_dir: Optional[Path] = None) -> Settings:
    """
    Load settings from <base_dir>/config.json.

    The file is created with defaults when missing. CELLSYNC_HOST and
    CELLSYNC_PORT override the stored values.
    """
    base_dir = Path(base_dir) if base_dir is not None else default_base_dir()
    path = base_dir / "config.json"
    if path.exists():
        data = json.loads(path.read_text())
        data["base_dir"] = str(base_dir)
        settings = Settings.model_validate(data)
    else:
        settings = Settings(base_dir=base_dir)
        save_settings(settings)
        logger.info("Created default config at %s", path)
    return _apply_env(settings)


def save_settings(settings: Settings) -> None:
    """Write settings to <base_dir>/config.json."""
    ensure_dirs(settings)
    data = settings.model_dump(mode="json", exclude={"base_dir"})
    settings.config_path.write_text(json.dumps(data, indent=2) + "\n")
