"""Load and save the tracked symbol list as a JSON document."""

import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from errors import ConfigParseError, ConfigReadError, IoError

logger = logging.getLogger(__name__)

APP_NAME = "bstock"
CONFIG_FILENAME = "config.json"

DEFAULT_SYMBOLS = ["PLTR", "NBIS", "GOOGL", "NVDA", "MSFT", "TSLA", "SLDP", "IREN"]
DEFAULT_PERIOD_DAYS = 90


class StockConfig(BaseModel):
    """Tracked symbols and the history window fetched for each of them"""
    symbols: List[str] = Field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    analysis_period_days: int = Field(default=DEFAULT_PERIOD_DAYS, ge=1)


def default_config_dir() -> Path:
    """Per-user configuration directory for the current platform"""
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming")
        return base / APP_NAME / APP_NAME / "config"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / f"com.{APP_NAME}.{APP_NAME}"
    base = os.environ.get("XDG_CONFIG_HOME")
    return (Path(base) if base else Path.home() / ".config") / APP_NAME


class PersistenceManager:
    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else default_config_dir() / CONFIG_FILENAME

    def load(self) -> StockConfig:
        """Read the stored config, or return the built-in default when no file exists."""
        if not self.config_file.exists():
            return StockConfig()
        try:
            content = self.config_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigReadError(f"Failed to read config file {self.config_file}: {e}") from e
        try:
            return StockConfig.model_validate_json(content)
        except ValidationError as e:
            raise ConfigParseError(f"Failed to parse config file {self.config_file}: {e}") from e

    def load_or_default(self) -> StockConfig:
        try:
            return self.load()
        except (ConfigReadError, ConfigParseError) as e:
            logger.warning("%s; using default config", e)
            return StockConfig()

    def save(self, config: StockConfig) -> None:
        """Write ``config`` as pretty-printed JSON, creating the directory if needed."""
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w', encoding="utf-8") as f:
                json.dump(config.model_dump(), f, indent=2)
                f.write('\n')
        except OSError as e:
            raise IoError(f"Failed to write config file {self.config_file}: {e}") from e
        logger.info("Saved %d symbols to %s", len(config.symbols), self.config_file)
