"""Configuration management."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "download_path": str(Path.home() / "Downloads" / "VidSolve"),
    "concurrency": 6,
    "max_retries": 3,
    "segment_timeout": 30.0,
    "backoff_base": 0.5,
    "backoff_cap": 16.0,
    "eval_timeout": 2.0,
    "persona_order": ["android_vr", "web", "web_embedded"],
    "format_cache_size": 64,
    "transform_cache_size": 3,
    "progress_interval": 0.5,
    "keepalive_interval": 25.0,
}


class Config:
    """Manages application configuration."""

    def __init__(self, config_file: Path = None):
        if config_file is None:
            # Use user's home directory for config
            config_file = Path.home() / "vidsolve_settings.json"
        self.file = Path(config_file)
        self.data: Dict[str, Any] = json.loads(json.dumps(DEFAULTS))
        self.load()

    def load(self):
        """Load configuration from file, keeping defaults for anything missing."""
        if not self.file.exists():
            return
        try:
            with open(self.file, 'r', encoding='utf-8') as f:
                loaded = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable settings file {self.file}: {e}")
            return
        if isinstance(loaded, dict):
            self.data.update(loaded)
        else:
            logger.warning(f"Ignoring settings file {self.file}: not a JSON object")

    def save(self):
        """Save configuration to file."""
        try:
            self.file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.file, 'w', encoding='utf-8') as f:
                json.dump(self.data, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save settings to {self.file}: {e}")

    def _number(self, key: str, kind=float, minimum=0):
        try:
            value = kind(self.data[key])
        except (KeyError, TypeError, ValueError):
            return DEFAULTS[key]
        return value if value >= minimum else DEFAULTS[key]

    @property
    def download_path(self) -> Path:
        """Get the download path."""
        try:
            return Path(self.data["download_path"])
        except (KeyError, TypeError):
            return Path(DEFAULTS["download_path"])

    def set_download_path(self, path: str | Path):
        """Set the download path."""
        self.data["download_path"] = str(path)
        self.save()

    @property
    def concurrency(self) -> int:
        return self._number("concurrency", int, 1)

    @property
    def max_retries(self) -> int:
        return self._number("max_retries", int)

    @property
    def segment_timeout(self) -> float:
        return self._number("segment_timeout")

    @property
    def backoff_base(self) -> float:
        return self._number("backoff_base")

    @property
    def backoff_cap(self) -> float:
        return self._number("backoff_cap")

    @property
    def eval_timeout(self) -> float:
        return self._number("eval_timeout")

    @property
    def persona_order(self) -> List[str]:
        order = self.data.get("persona_order")
        if isinstance(order, list) and order and all(isinstance(p, str) for p in order):
            return order
        return list(DEFAULTS["persona_order"])

    @property
    def format_cache_size(self) -> int:
        return self._number("format_cache_size", int, 1)

    @property
    def transform_cache_size(self) -> int:
        return self._number("transform_cache_size", int, 1)

    @property
    def progress_interval(self) -> float:
        return self._number("progress_interval")

    @property
    def keepalive_interval(self) -> float:
        return self._number("keepalive_interval")
