"""mailengine settings: pydantic models backed by a JSON file, secrets from the environment."""

import json
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import (
    ConfigurationError,
    FileSystemError,
    InvalidConfigError,
    MailEngineError,
    MissingConfigError,
)
from .logging import get_logger, log_call
from .paths import CONFIG_PATH, DATABASE_PATH, LOGS_DIR

logger = get_logger(__name__)


class CredentialConfig(BaseModel):
    """Pydantic model for credential encryption settings."""

    secret_env_var: str = "EMAIL_ENCRYPTION_KEY"
    min_secret_length: int = 32
    per_account_keys: bool = True


class TransportConfig(BaseModel):
    """Pydantic model for socket transport settings."""

    connect_timeout: float = 10.0  # in seconds
    read_timeout: float = 30.0  # in seconds, per read
    buffer_size: int = 4096
    max_response_bytes: int = 10 * 1024 * 1024

    @field_validator("connect_timeout", "read_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be > 0")
        return value

    @field_validator("buffer_size")
    @classmethod
    def _sane_buffer(cls, value: int) -> int:
        if value < 512:
            raise ValueError("buffer_size must be >= 512")
        return value


class SyncConfig(BaseModel):
    """Pydantic model for IMAP sync and SMTP send behaviour."""

    fetch_window: int = 50
    mailbox: str = "INBOX"
    ehlo_hostname: str = "localhost"

    @field_validator("fetch_window")
    @classmethod
    def _positive_window(cls, value: int) -> int:
        if value < 1:
            raise ValueError("fetch_window must be >= 1")
        return value


class LoggingConfig(BaseModel):
    """Console level and optional JSON log files."""

    log_level: str = "INFO"
    log_to_file: bool = True
    log_dir: str = str(LOGS_DIR)


class DatabaseConfig(BaseModel):
    """Location of the SQLite mail store."""

    database_path: str = str(DATABASE_PATH)


class AppConfig(BaseModel):
    """Everything read from config.json."""

    version: str = "0.1.0"
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)


class ConfigManager:
    """Manages persistent application configuration.

    The encryption secret is never part of the JSON file; it is read from the
    environment variable named by ``credentials.secret_env_var``.
    """

    _instance = None
    _initialized = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super(ConfigManager, cls).__new__(cls)
        return cls._instance

    def __init__(self, config_path: Optional[Path] = None):
        if not ConfigManager._initialized:
            self.path = config_path or CONFIG_PATH
            self.config = self._load_config()
            ConfigManager._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (mainly for testing)."""
        cls._instance = None
        cls._initialized = False

    def _load_config(self) -> AppConfig:
        """Load configuration from file, or use defaults if not present."""

        if not self.path.exists():
            logger.debug(f"No config file at {self.path}, using defaults")
            return AppConfig()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            config = AppConfig(**data)
            logger.debug(f"Configuration loaded from {self.path}")
            return config

        except json.JSONDecodeError as e:
            raise InvalidConfigError(
                f"Configuration file is not valid JSON: {str(e)}"
            ) from e
        except ValidationError as e:
            raise InvalidConfigError(
                f"Configuration data does not match expected schema: {str(e)}"
            ) from e
        except OSError as e:
            raise FileSystemError(
                f"Failed to read configuration file: {self.path}"
            ) from e

    def save(self) -> None:
        """Write the current settings back to config.json."""

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self.config.model_dump(), f, indent=2, ensure_ascii=False)
            logger.debug("Configuration saved")
        except OSError as e:
            raise FileSystemError(
                f"Failed to write configuration file: {str(e)}"
            ) from e

    def get_secret(self) -> str:
        """Read the credential encryption secret from the environment.

        Raises:
            MissingConfigError: If the variable is unset or empty
        """
        env_var = self.config.credentials.secret_env_var
        secret = os.environ.get(env_var)
        if not secret:
            raise MissingConfigError(f"{env_var} not set in environment")
        return secret

    @log_call
    def set_config(self, key_path: str, value: Any, persist: bool = False):
        """Set a setting by dotted path, e.g. ``sync.fetch_window``."""

        try:
            keys = key_path.split(".")
            obj = self.config

            for key in keys[:-1]:
                if not hasattr(obj, key):
                    raise MissingConfigError(
                        f"Configuration path '{key_path}' is invalid: '{key}' not found"
                    )
                obj = getattr(obj, key)

            if not hasattr(obj, keys[-1]):
                raise MissingConfigError(
                    f"Configuration key '{keys[-1]}' does not exist in path '{key_path}'"
                )

            setattr(obj, keys[-1], value)

            if persist:
                self.save()

            logger.info(f"Config key '{key_path}' updated")

        except MailEngineError:
            raise
        except Exception as e:
            raise ConfigurationError(
                f"Failed to set configuration key '{key_path}': {str(e)}"
            ) from e


def get_config() -> AppConfig:
    """Get the active application configuration."""
    return ConfigManager().config
