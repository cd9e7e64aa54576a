"""Settings for cloudflared-me.

Loads settings from environment variables and an optional YAML file.
Environment variables override YAML values.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from cloudflared_me.errors import CloudflaredMeError

DEFAULT_CONFIG_DIR = Path.home() / ".cloudflared"
DEFAULT_SETTINGS_FILE = Path.home() / ".config" / "cloudflared-me" / "config.yaml"


class ConfigError(CloudflaredMeError):
    """Settings error."""

    pass


@dataclass
class Config:
    """cloudflared-me settings.

    Settings are loaded from:
    1. Default values
    2. YAML file (CLOUDFLARED_ME_CONFIG or ~/.config/cloudflared-me/config.yaml)
    3. Environment variables (override YAML)
    """

    # cloudflared binary, resolved from PATH when unset
    cloudflared_path: Optional[str] = None

    # Where config.yaml and tunnel credentials live
    config_dir: Path = field(default_factory=lambda: DEFAULT_CONFIG_DIR)

    # Origin certificate written by `cloudflared tunnel login`
    origin_cert: Optional[Path] = None

    # Logs
    log_file: Path = Path("cloudflared_me.log")
    tunnel_log_file: Path = Path("cloudflared_tunnel.log")
    debug: bool = False

    # Timeouts (seconds)
    command_timeout: int = 60
    login_timeout: int = 600

    @property
    def origin_cert_path(self) -> Path:
        """Return path to the origin certificate (~/.cloudflared/cert.pem)."""
        if self.origin_cert is not None:
            return self.origin_cert
        return DEFAULT_CONFIG_DIR / "cert.pem"

    def validate(self) -> list[str]:
        """Validate settings and return list of errors."""
        errors = []

        if self.command_timeout < 1:
            errors.append("command_timeout must be at least 1")

        if self.login_timeout < 1:
            errors.append("login_timeout must be at least 1")

        if self.cloudflared_path is not None and not self.cloudflared_path.strip():
            errors.append("cloudflared_path must not be empty")

        return errors

    @classmethod
    def _load_without_validation(cls) -> "Config":
        """Load settings without validation (for testing)."""
        config = cls()
        config = cls._load_from_yaml(config)
        config = cls._load_from_env(config)
        return config

    @classmethod
    def load(cls) -> "Config":
        """Load settings from environment and optional YAML file.

        Raises:
            ConfigError: If settings are invalid.
        """
        config = cls._load_without_validation()

        errors = config.validate()
        if errors:
            raise ConfigError("; ".join(errors))

        return config

    @classmethod
    def _load_from_yaml(cls, config: "Config") -> "Config":
        """Load settings from YAML file.

        Checks in order:
        1. CLOUDFLARED_ME_CONFIG env var (explicit path)
        2. ~/.config/cloudflared-me/config.yaml (default location)
        """
        config_path = os.environ.get("CLOUDFLARED_ME_CONFIG")

        if config_path:
            path = Path(config_path)
        else:
            path = DEFAULT_SETTINGS_FILE

        if not path.exists():
            return config

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load settings file: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Settings file must contain a mapping: {path}")

        try:
            if "cloudflared_path" in data:
                config.cloudflared_path = str(data["cloudflared_path"])
            if "config_dir" in data:
                config.config_dir = Path(data["config_dir"]).expanduser()
            if "origin_cert" in data:
                config.origin_cert = Path(data["origin_cert"]).expanduser()
            if "log_file" in data:
                config.log_file = Path(data["log_file"]).expanduser()
            if "tunnel_log_file" in data:
                config.tunnel_log_file = Path(data["tunnel_log_file"]).expanduser()
            if "debug" in data:
                config.debug = cls._parse_bool(data["debug"])
            if "command_timeout" in data:
                config.command_timeout = int(data["command_timeout"])
            if "login_timeout" in data:
                config.login_timeout = int(data["login_timeout"])
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid value in settings file: {e}")

        return config

    @classmethod
    def _load_from_env(cls, config: "Config") -> "Config":
        """Load settings from environment variables."""
        env_mappings = {
            "CLOUDFLARED_ME_CLOUDFLARED_PATH": ("cloudflared_path", str),
            "CLOUDFLARED_ME_CONFIG_DIR": ("config_dir", cls._parse_path),
            "CLOUDFLARED_ME_ORIGIN_CERT": ("origin_cert", cls._parse_path),
            "CLOUDFLARED_ME_LOG_FILE": ("log_file", cls._parse_path),
            "CLOUDFLARED_ME_TUNNEL_LOG_FILE": ("tunnel_log_file", cls._parse_path),
            "CLOUDFLARED_ME_DEBUG": ("debug", cls._parse_bool),
            "CLOUDFLARED_ME_COMMAND_TIMEOUT": ("command_timeout", int),
            "CLOUDFLARED_ME_LOGIN_TIMEOUT": ("login_timeout", int),
        }

        for env_var, (attr, converter) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                try:
                    setattr(config, attr, converter(value))
                except (ValueError, TypeError) as e:
                    raise ConfigError(f"Invalid value for {env_var}: {e}")

        return config

    @staticmethod
    def _parse_bool(value: str | bool) -> bool:
        """Parse a boolean value from string or bool."""
        if isinstance(value, bool):
            return value
        return str(value).lower() in ("true", "1", "yes", "on")

    @staticmethod
    def _parse_path(value: str) -> Path:
        """Parse a path value, expanding ~."""
        return Path(value).expanduser()
