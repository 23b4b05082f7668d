"""TOML configuration file support for Turnforge.

Loads configuration from:
1. System: /etc/turnforge/config.toml
2. User: ~/.config/turnforge/config.toml (XDG_CONFIG_HOME)
3. Local: ./.turnforge.toml (project-specific)
4. Environment variables (highest priority)

Configuration is merged in order, with later sources overriding earlier ones.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from turnforge.paths import paths

logger = logging.getLogger(__name__)


@dataclass
class GeneralConfig:
    """General configuration settings."""

    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"
    log_max_bytes: int = 1_000_000
    log_backup_count: int = 3


@dataclass
class PipelineConfig:
    """Action pipeline behaviour."""

    auto_approve: bool = False
    # After a turn that recorded failed actions, the next turn waits for a human.
    pause_auto_approve_after_failure: bool = True
    allowed_actions: list[str] = field(
        default_factory=lambda: ["write", "delete", "rename", "add", "execute"]
    )
    manifest_file: str = "package.json"
    statement_db: str | None = None  # relative to the project root
    install_command: list[str] = field(default_factory=list)
    chunk_size: int = 64


@dataclass
class CheckpointConfig:
    """Identity used for checkpoint commits."""

    author_name: str = "Turnforge"
    author_email: str = "turnforge@localhost"


@dataclass
class AuthConfig:
    """Device authorization endpoints and polling behaviour."""

    device_code_url: str = "https://chat.qwen.ai/api/v1/oauth2/device/code"
    token_url: str = "https://chat.qwen.ai/api/v1/oauth2/token"
    client_id: str = "f0304373b74a44d2b584a3fb70ca9e56"
    scope: str = "openid profile email model.completion"
    default_resource_url: str = "https://dashscope.aliyuncs.com/api/v1/"
    request_timeout: float = 30.0
    default_interval_seconds: int = 5
    initial_delay_seconds: float = 3.0
    slow_down_increment_seconds: int = 5
    keyring_service: str = "com.turnforge.device-auth"


@dataclass
class Config:
    """Complete Turnforge configuration."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)

    @classmethod
    def load(cls, sources: list[Path] | None = None) -> "Config":
        """Load configuration from all sources."""
        config = cls()

        if sources is None:
            sources = [
                Path("/etc/turnforge/config.toml"),
                paths.config_file,
                Path.cwd() / ".turnforge.toml",
            ]

        for source in sources:
            if source.exists():
                config = config._merge_from_file(source)

        return config._apply_env_overrides()

    def _merge_from_file(self, path: Path) -> "Config":
        """Merge configuration from a TOML file."""
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            # A broken config file should not stop the tool from starting.
            logger.warning("Failed to load config from %s: %s", path, e)
            return self
        return self._merge_dict(data)

    def _merge_dict(self, data: dict[str, Any]) -> "Config":
        """Merge a dictionary into the configuration."""
        for section in ("general", "pipeline", "checkpoints", "auth"):
            if section in data:
                setattr(self, section, _merge_dataclass(getattr(self, section), data[section]))
        return self

    def _apply_env_overrides(self) -> "Config":
        """Apply environment variable overrides."""
        env_mappings = {
            "TURNFORGE_LOG_LEVEL": ("general", "log_level"),
            "TURNFORGE_LOG_FORMAT": ("general", "log_format"),
            "TURNFORGE_AUTO_APPROVE": ("pipeline", "auto_approve", _parse_bool),
            "TURNFORGE_MANIFEST_FILE": ("pipeline", "manifest_file"),
            "TURNFORGE_STATEMENT_DB": ("pipeline", "statement_db"),
            "TURNFORGE_CHUNK_SIZE": ("pipeline", "chunk_size", int),
            "TURNFORGE_AUTHOR_NAME": ("checkpoints", "author_name"),
            "TURNFORGE_AUTHOR_EMAIL": ("checkpoints", "author_email"),
            "TURNFORGE_AUTH_CLIENT_ID": ("auth", "client_id"),
            "TURNFORGE_AUTH_DEVICE_CODE_URL": ("auth", "device_code_url"),
            "TURNFORGE_AUTH_TOKEN_URL": ("auth", "token_url"),
        }

        for env_var, mapping in env_mappings.items():
            value = os.environ.get(env_var)
            if value is None:
                continue
            section_name, field_name = mapping[0], mapping[1]
            converter = mapping[2] if len(mapping) > 2 else str
            section = getattr(self, section_name)
            try:
                setattr(section, field_name, converter(value))  # type: ignore[operator]
            except (ValueError, TypeError):
                logger.warning("Ignoring invalid value for %s: %r", env_var, value)

        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to a dictionary."""
        return {
            "general": dict(vars(self.general)),
            "pipeline": dict(vars(self.pipeline)),
            "checkpoints": dict(vars(self.checkpoints)),
            "auth": dict(vars(self.auth)),
        }


def _merge_dataclass(obj: Any, data: dict[str, Any]) -> Any:
    """Merge dictionary values into a dataclass instance."""
    for key, value in data.items():
        if hasattr(obj, key):
            current_value = getattr(obj, key)
            if isinstance(current_value, bool) and isinstance(value, str):
                value = _parse_bool(value)
            elif isinstance(current_value, int) and not isinstance(current_value, bool) and isinstance(value, str):
                value = int(value)
            elif isinstance(current_value, float) and isinstance(value, str):
                value = float(value)
            setattr(obj, key, value)
        else:
            logger.debug("Unknown config key ignored: %s", key)
    return obj


def _parse_bool(value: str) -> bool:
    """Parse a boolean from string."""
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


# Global configuration instance - loaded on first access
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from disk."""
    global _config
    _config = Config.load()
    return _config
