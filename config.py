#!/usr/bin/env python3
"""
Configuration management for the Feed Poller.

This module centralizes configuration loading, validation, and logging setup.
Values come from environment variables, an optional .env file and an optional
YAML secrets file, and are exposed both as the global ``config`` object and as
an immutable ``PollerSettings`` snapshot that is passed explicitly into the
orchestrator, fetcher and artifact stores.
"""

from dataclasses import dataclass
from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

VERSION = "1.0.0"

# Synthetic status codes for local failure classes (outside the 100-599 range)
ERRORCODE_CONNECTION_FAILURE = 666
ERRORCODE_DOWNLOAD_FAILURE = 667
ERRORCODE_FILE_SIZE_EXCEEDED = 668

DEFAULT_MAX_BODY_LENGTH = 40971520  # 40 MiB


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True
    )

    # Keep per-feed output in order when piped to a collector
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    # Exporter libraries are chatty at INFO
    quiet_level = level_map.get(environ.get("AZURE_LOG_LEVEL", "WARNING").upper(), WARNING)
    for name in ("azure", "azure.core.pipeline.policies.http_logging_policy", "azure.monitor"):
        getLogger(name).setLevel(quiet_level)

    return getLogger("FeedPoller")


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "artifacts", "orchestrator")

    Returns:
        A logger named "FeedPoller.{name}"
    """
    return getLogger(f"FeedPoller.{name}")


logger = _setup_global_logger()


class Config:
    """Configuration manager for the Feed Poller.

    Loading order:
    1. Environment variables
    2. .env file next to this module (if present)
    3. YAML secrets file (if SECRETS_FILE is set), which overrides both

    Example secrets.yaml format:
    ```yaml
    AZURE_STORAGE_ACCOUNT: "yourstorageaccount"
    AZURE_STORAGE_KEY: "your-storage-key"
    ```
    """

    def __init__(self):
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

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Feed catalog
        self.FEED_DATABASE_PATH = environ.get("FEED_DATABASE_PATH", "feed_poller_queue.db")
        self.USER_AGENT = environ.get("USER_AGENT", f"FeedPoller/{VERSION} (conditional feed poller)")

        # HTTP request configuration
        self.FETCH_CONCURRENCY = self._validate_positive_int("FETCH_CONCURRENCY", 100, 1)
        self.CONNECT_TIMEOUT = self._validate_positive_float("CONNECT_TIMEOUT", 20.0, 1.0)
        self.HTTP_TIMEOUT = self._validate_positive_float("HTTP_TIMEOUT", 30.0, 1.0)
        self.POOL_IDLE_TIMEOUT = self._validate_positive_float("POOL_IDLE_TIMEOUT", 20.0, 0.1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 9, 0)
        self.MAX_BODY_LENGTH = self._validate_positive_int("MAX_BODY_LENGTH", DEFAULT_MAX_BODY_LENGTH, 1)

        # Artifact storage
        base_dir = path.dirname(path.abspath(__file__))
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.ARTIFACT_DIR = environ.get("ARTIFACT_DIR", self.DATA_PATH)
        self.ARTIFACT_BACKEND = environ.get("ARTIFACT_BACKEND", "file").strip().lower()
        if self.ARTIFACT_BACKEND not in ("file", "azure"):
            logger.warning(f"Unknown ARTIFACT_BACKEND '{self.ARTIFACT_BACKEND}', using 'file'")
            self.ARTIFACT_BACKEND = "file"

        # Azure storage configuration (ARTIFACT_BACKEND=azure)
        self.AZURE_STORAGE_ACCOUNT = environ.get("AZURE_STORAGE_ACCOUNT")
        self.AZURE_STORAGE_KEY = environ.get("AZURE_STORAGE_KEY")
        self.AZURE_STORAGE_CONTAINER = environ.get("AZURE_STORAGE_CONTAINER", "feed-artifacts")

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Both a top-level mapping and a mapping nested under ``environment`` are
        accepted. Values are converted to strings and written into os.environ.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment')
        if not isinstance(env_vars, dict):
            env_vars = secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Read a small YAML document, or return None (after logging why) if it can't be used."""
        if not (path.isfile(file_path) and access(file_path, R_OK)):
            logger.warning(f"Cannot read {kind} file {file_path}, ignoring it")
            return None
        try:
            if path.getsize(file_path) > max_size:
                logger.error(f"Refusing {kind} file {file_path}: larger than {max_size} bytes")
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or None
        except yaml.YAMLError as e:
            logger.error(f"Malformed YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Cannot open {kind} file {file_path}: {e}")
        return None

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "feed_database_path": self.FEED_DATABASE_PATH,
            "artifact_backend": self.ARTIFACT_BACKEND,
            "artifact_dir": self.ARTIFACT_DIR,
            "fetch_concurrency": self.FETCH_CONCURRENCY,
            "connect_timeout": self.CONNECT_TIMEOUT,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "max_body_length": self.MAX_BODY_LENGTH,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
            "has_azure_storage": bool(self.AZURE_STORAGE_ACCOUNT and self.AZURE_STORAGE_KEY),
        }


@dataclass(frozen=True)
class PollerSettings:
    """Immutable knobs for one polling run.

    Built from ``config`` by default, but tests and embedders can construct
    one directly to inject smaller limits or different synthetic codes.
    """

    user_agent: str = f"FeedPoller/{VERSION} (conditional feed poller)"
    concurrency: int = 100
    connect_timeout: float = 20.0
    request_timeout: float = 30.0
    pool_idle_timeout: float = 20.0
    max_redirects: int = 9
    max_body_length: int = DEFAULT_MAX_BODY_LENGTH
    connection_failure_code: int = ERRORCODE_CONNECTION_FAILURE
    download_failure_code: int = ERRORCODE_DOWNLOAD_FAILURE
    size_exceeded_code: int = ERRORCODE_FILE_SIZE_EXCEEDED

    @classmethod
    def from_config(cls, cfg: Optional[Config] = None, **overrides) -> "PollerSettings":
        cfg = cfg or config
        values = {
            "user_agent": cfg.USER_AGENT,
            "concurrency": cfg.FETCH_CONCURRENCY,
            "connect_timeout": cfg.CONNECT_TIMEOUT,
            "request_timeout": cfg.HTTP_TIMEOUT,
            "pool_idle_timeout": cfg.POOL_IDLE_TIMEOUT,
            "max_redirects": cfg.MAX_REDIRECTS,
            "max_body_length": cfg.MAX_BODY_LENGTH,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# Global configuration instance
config = Config()
