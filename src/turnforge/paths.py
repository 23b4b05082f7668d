"""XDG Base Directory compliant paths for Turnforge.

On Linux:
  - Data:   ~/.local/share/turnforge (XDG_DATA_HOME)
  - Config: ~/.config/turnforge (XDG_CONFIG_HOME)
  - Cache:  ~/.cache/turnforge (XDG_CACHE_HOME)

On other platforms, falls back to ~/.turnforge/{data,config,cache}.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Final

# Application identifier
APP_NAME: Final[str] = "turnforge"


def _is_linux() -> bool:
    return sys.platform.startswith("linux")


def _get_xdg_path(env_var: str, default_subdir: str) -> Path:
    """Get XDG directory path with fallback to default."""
    if env_var in os.environ:
        return Path(os.environ[env_var]) / APP_NAME
    return Path.home() / default_subdir / APP_NAME


@dataclass(frozen=True)
class XDGPaths:
    """XDG Base Directory compliant paths."""

    data_home: Path
    config_home: Path
    cache_home: Path

    @classmethod
    def detect(cls) -> "XDGPaths":
        """Detect paths for the current platform."""
        if _is_linux():
            return cls(
                data_home=_get_xdg_path("XDG_DATA_HOME", ".local/share"),
                config_home=_get_xdg_path("XDG_CONFIG_HOME", ".config"),
                cache_home=_get_xdg_path("XDG_CACHE_HOME", ".cache"),
            )

        fallback = Path.home() / f".{APP_NAME}"
        return cls(
            data_home=fallback / "data",
            config_home=fallback / "config",
            cache_home=fallback / "cache",
        )

    def ensure_dirs(self) -> None:
        """Create all directories if they don't exist."""
        self.data_home.mkdir(parents=True, exist_ok=True)
        self.config_home.mkdir(parents=True, exist_ok=True)
        self.cache_home.mkdir(parents=True, exist_ok=True)

    @property
    def log_path(self) -> Path:
        """Application log path."""
        return self.cache_home / "turnforge.log"

    @property
    def config_file(self) -> Path:
        """Main configuration file."""
        return self.config_home / "config.toml"


# Global paths instance - initialized on import
paths = XDGPaths.detect()
