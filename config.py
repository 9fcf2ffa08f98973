#!/usr/bin/env python3
"""
Configuration management for digest.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, makedirs, R_OK
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    This function configures the logging system for every digest module.
    It sets up a unified logging configuration that can be controlled via environment variables:

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger writes to stderr: stdout is reserved for the JSON-RPC stream
    when digest runs as an agent tool server.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    # Determine log level
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    # Check if timestamps should be disabled
    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    # Format: with or without timestamps
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stderr)],
        force=True  # Force reconfiguration if already configured
    )

    # Keep third-party chatter out of the agent's stderr unless asked for
    lib_level = level_map.get(environ.get("LIB_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("aiohttp", "mcp", "fastmcp", "opentelemetry"):
        getLogger(name).setLevel(lib_level)

    return getLogger("digest")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "digest.{name}".
    All loggers created this way inherit the global logging configuration set by _setup_global_logger().

    Args:
        name: The logger name (e.g., "fetcher", "models", "vault")

    Returns:
        A logger instance with the unified configuration

    Example:
        logger = get_logger("mymodule")
        logger.info("This will appear as 'digest.mymodule - INFO - This will appear...'")
    """
    return getLogger(f"digest.{name}")

# Create single global logger instance
logger = _setup_global_logger()


def expand_path(value: str | None) -> str:
    """Expand a leading ~ to the user's home directory."""
    if not value:
        return ""
    return path.expanduser(value)


def ensure_parent_dir(file_path: str) -> None:
    """Create the directory holding file_path if it does not exist yet."""
    parent = path.dirname(path.abspath(file_path))
    if parent and not path.isdir(parent):
        makedirs(parent, mode=0o755, exist_ok=True)


def _xdg_dir(env_var: str, fallback: str) -> str:
    base = environ.get(env_var) or path.join(path.expanduser("~"), fallback)
    return path.join(base, "digest")


def _schema_file() -> str:
    """Locate schema.sql beside the modules, or under the prefix a wheel install uses."""
    candidates = [
        path.join(path.dirname(path.abspath(__file__)), "schema.sql"),
        path.join(sys.prefix, "share", "digest", "schema.sql"),
    ]
    for candidate in candidates:
        if path.isfile(candidate):
            return candidate
    return candidates[0]


class Config:
    """Configuration manager for digest.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    The loading order ensures that:
    - .env file variables override system environment variables
    - Secrets file variables override both system and .env variables

    Example secrets.yaml format:
    ```yaml
    DIGEST_SERVER: "https://relay.example.com"
    DIGEST_TOKEN: "your-relay-token"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _flag(self, env_var: str, default: bool = False) -> bool:
        return environ.get(env_var, "true" if default else "false").lower() == "true"

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Storage locations
        self.DATA_DIR = expand_path(environ.get("DIGEST_DATA_DIR")) or _xdg_dir("XDG_DATA_HOME", ".local/share")
        self.CONFIG_DIR = _xdg_dir("XDG_CONFIG_HOME", ".config")
        self.DATABASE_PATH = expand_path(
            environ.get("DIGEST_DB") or environ.get("DATABASE_PATH")
        ) or path.join(self.DATA_DIR, "digest.db")
        self.OPML_PATH = expand_path(environ.get("DIGEST_OPML")) or path.join(self.DATA_DIR, "feeds.opml")
        self.SYNC_CONFIG_PATH = expand_path(environ.get("DIGEST_SYNC_CONFIG")) or path.join(self.CONFIG_DIR, "sync.json")
        self.SCHEMA_FILE_PATH = expand_path(environ.get("SCHEMA_FILE_PATH")) or _schema_file()
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)

        # HTTP request configuration
        self.USER_AGENT = environ.get("USER_AGENT", "digest/1.0 (RSS reader)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)
        self.MAX_RETRIES = self._validate_positive_int("MAX_RETRIES", 1, 0)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 1.0, 0.0)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.MAX_RESPONSE_SIZE_MB = self._validate_positive_int("MAX_RESPONSE_SIZE_MB", 10, 1)
        self.MAX_RESPONSE_SIZE = self.MAX_RESPONSE_SIZE_MB * 1024 * 1024
        self.ALLOW_PRIVATE_ADDRESSES = self._flag("ALLOW_PRIVATE_ADDRESSES")

        # Batch sync
        self.SYNC_CONCURRENCY = self._validate_positive_int("SYNC_CONCURRENCY", 4, 1)

        # Change-log replication
        self.VAULT_PUSH_BATCH = self._validate_positive_int("VAULT_PUSH_BATCH", 100, 1)
        self.VAULT_PULL_LIMIT = self._validate_positive_int("VAULT_PULL_LIMIT", 500, 1)
        self.VAULT_HTTP_TIMEOUT = self._validate_positive_int("VAULT_HTTP_TIMEOUT", 30, 1)

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE environment variable is set, loads the specified YAML file
        and sets environment variables from it. Both a top-level mapping and a
        mapping nested under `environment` are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        try:
            if not path.isfile(secrets_file_path):
                logger.warning(f"Secrets file not found at {secrets_file_path}")
                return

            if not access(secrets_file_path, R_OK):
                logger.error(f"No read permission for secrets file at {secrets_file_path}")
                return

            file_size = path.getsize(secrets_file_path)
            max_size = 2 * 1024 * 1024  # 2 MB limit for secrets file
            if file_size > max_size:
                logger.error(f"Secrets file too large: {file_size} bytes (limit: {max_size} bytes)")
                return

            with open(secrets_file_path, 'r') as f:
                secrets_config = yaml.safe_load(f)

            if not secrets_config:
                logger.warning(f"Empty or invalid YAML in secrets file {secrets_file_path}")
                return

            if not isinstance(secrets_config, dict):
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
                return
            env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

            secrets_loaded = 0
            for key, value in env_vars.items():
                if isinstance(key, str) and value is not None:
                    environ[key] = str(value)
                    secrets_loaded += 1
                    logger.debug(f"Set environment variable {key} from secrets file")
                else:
                    logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

            logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in secrets file {secrets_file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading secrets file {secrets_file_path}: {e}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "opml_path": self.OPML_PATH,
            "sync_config_path": self.SYNC_CONFIG_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_retries": self.MAX_RETRIES,
            "max_response_size_mb": self.MAX_RESPONSE_SIZE_MB,
            "sync_concurrency": self.SYNC_CONCURRENCY,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
