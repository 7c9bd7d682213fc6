"""
Configuration management for blanket-dash.

Handles loading, saving, and updating dashboard configuration.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from blanket_dash.atomic import AtomicFileWriter, FileLock
from blanket_dash.client import DEFAULT_BASE_URL, DEFAULT_TIMEOUT


logger = logging.getLogger(__name__)


# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "blanket-dash"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"

# Environment override for the backend location
BASE_URL_ENV_VAR = "BLANKET_BASE_URL"
ENV_FILE = Path.cwd() / ".env"


class DashboardSettings(BaseModel):
    """Dashboard settings."""

    base_url: str = Field(default=DEFAULT_BASE_URL, description="Backend base URL")
    request_timeout: float = Field(default=DEFAULT_TIMEOUT, description="Seconds per REST call")

    # Polling
    page_size: int = Field(default=50, description="Most recent tasks fetched per refresh")
    refresh_interval_ms: int = Field(default=2000, description="Autorefresh tick interval")
    task_mutation_delay_ms: int = Field(default=1000, description="Delay before re-sync after a task mutation")

    # Log tail
    log_buffer_size: int = Field(default=100, description="Log events kept per tailed task")
    log_trim_size: int = Field(default=10, description="Events evicted when the buffer overflows")

    # Filters
    filter_debounce_ms: int = Field(default=500, description="Quiet period before a filter change is saved")

    local_store_file: Optional[str] = Field(default=None, description="Local settings store (default ~/.config/blanket-dash/local_store.json)")


class ConfigManager:
    """
    Manages dashboard configuration.

    Handles loading configuration from disk, making updates,
    and persisting changes atomically.
    """

    def __init__(self, config_file: Optional[Path] = None, env_file: Optional[Path] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to configuration file. Defaults to ~/.config/blanket-dash/config.json
            env_file: .env file consulted for BLANKET_BASE_URL. Defaults to ./.env
        """
        self.config_file = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        self.env_file = Path(env_file) if env_file else ENV_FILE

        self.lock = FileLock(self.config_file.with_suffix('.lock'))

        self.settings = self._load_config()

    def _load_config(self) -> DashboardSettings:
        """Load configuration from file or create default, then apply env overrides."""
        data = AtomicFileWriter.read_json(self.config_file)

        if data is None:
            settings = DashboardSettings()
        else:
            try:
                settings = DashboardSettings(**data)
            except (TypeError, ValidationError) as e:
                logger.warning(f"Invalid config file {self.config_file}, using defaults: {e}")
                settings = DashboardSettings()

        if self.env_file.exists():
            load_dotenv(self.env_file)

        base_url = os.environ.get(BASE_URL_ENV_VAR)
        if base_url:
            settings.base_url = base_url

        return settings

    def save_config(self) -> None:
        """Save configuration atomically with locking."""
        if not self.lock.acquire(timeout=5):
            raise RuntimeError("Could not acquire config lock")

        try:
            AtomicFileWriter.write_json(self.config_file, self.settings.model_dump(), indent=2)
        finally:
            self.lock.release()

    def reload(self) -> None:
        """Reload configuration from disk."""
        self.settings = self._load_config()

    def update_settings(self, **kwargs) -> None:
        """
        Update settings and save.

        Args:
            **kwargs: Settings to update (base_url, page_size, etc.)

        Raises:
            ValueError: If a setting name is unknown
        """
        for key in kwargs:
            if key not in DashboardSettings.model_fields:
                raise ValueError(f"Unknown setting: {key}")

        self.settings = DashboardSettings(**{**self.settings.model_dump(), **kwargs})
        self.save_config()

    def local_store_path(self) -> Path:
        if self.settings.local_store_file:
            return Path(self.settings.local_store_file).expanduser()
        return self.config_file.parent / "local_store.json"
