#!/usr/bin/env python3
"""
Configuration management for linkding-opml.

This module centralizes logging setup and configuration loading. Values come
from (lowest to highest precedence) built-in defaults, an optional YAML
config file, the process environment (including a `.env` file and an
optional YAML secrets file), and finally command-line overrides applied by
`main.py`.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOGGER_ROOT = "LinkdingOPML"

_LEVEL_MAP = {
    "DEBUG": DEBUG,
    "INFO": INFO,
    "WARNING": WARNING,
    "ERROR": ERROR,
}


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to WARNING
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering. All modules should use
    get_logger() to create module-specific loggers that inherit this configuration.
    """
    level = _LEVEL_MAP.get(environ.get("LOG_LEVEL", "WARNING").upper(), WARNING)

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

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Replaced streams (e.g. under pytest capture) may not support reconfigure
        pass

    # aiohttp access/client chatter is rarely useful at INFO
    getLogger("aiohttp").setLevel(WARNING)

    return getLogger(LOGGER_ROOT)


def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "discovery", "processor")

    Returns:
        A logger named "LinkdingOPML.{name}"
    """
    return getLogger(f"{LOGGER_ROOT}.{name}")


def configure_log_level(verbose: bool = False, debug: bool = False) -> None:
    """Adjust the global log level from command-line verbosity flags.

    --debug selects DEBUG and --verbose INFO. Without either the LOG_LEVEL
    environment variable (default WARNING) stays in effect; --quiet only
    silences console output, never warnings.
    """
    if debug:
        level = DEBUG
    elif verbose:
        level = INFO
    else:
        return
    getLogger().setLevel(level)


logger = _setup_global_logger()


class Config:
    """Configuration manager for linkding-opml.

    Sources, in increasing order of precedence:
    1. Built-in defaults
    2. YAML config file (LINKDING_OPML_CONFIG or ./linkding-to-opml.yaml)
    3. Environment variables, including a .env file and a YAML secrets file
       (SECRETS_FILE) whose top-level mapping is exported to the environment
    4. Command-line overrides via apply_overrides()

    Example linkding-to-opml.yaml:
    ```yaml
    linkding:
      url: "https://links.example.com"
      token: "your-api-token"
    cache:
      file_path: "./linkding-to-opml.json"
      max_age: 720
    http:
      timeout: 30
      max_redirects: 3
    import:
      duplicates: skip
    ```
    """

    DEFAULT_CONFIG_FILE = "linkding-to-opml.yaml"
    CONFIG_FILE_SIZE_LIMIT = 2 * 1024 * 1024

    def __init__(self, config_file: Optional[str] = None):
        """Initialize configuration with environment variables and validation."""
        self.CONFIG_FILE_PATH: Optional[str] = None
        self._load_environment()
        self._file_config = self._load_config_file(config_file)
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.abspath(environ.get("DOTENV_DIR", ".")), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.debug(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _load_secrets_file(self):
        """Export a YAML secrets mapping (SECRETS_FILE) into the environment.

        Both a top-level mapping and a mapping nested under `environment` are
        accepted, e.g.:

        ```yaml
        LINKDING_TOKEN: "your-api-token"
        LINKDING_URL: "https://links.example.com"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, self.CONFIG_FILE_SIZE_LIMIT, 'secrets')
        if not isinstance(secrets_config, dict):
            if secrets_config is not None:
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")
        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'config')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.debug(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_config_file(self, config_file: Optional[str]) -> Dict[str, Any]:
        """Read the YAML config file, returning an empty mapping when absent."""
        file_path = config_file or environ.get("LINKDING_OPML_CONFIG") or self.DEFAULT_CONFIG_FILE
        data = self._safe_read_yaml(file_path, self.CONFIG_FILE_SIZE_LIMIT, 'config')
        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Config file {file_path} must be a YAML mapping; ignoring it")
            return {}
        logger.info(f"Loaded configuration file {file_path}")
        self.CONFIG_FILE_PATH = file_path
        return data

    def _file_value(self, section: Optional[str], key: str) -> Any:
        """Look up `section.key` (or a top-level `key`) in the YAML config file."""
        source = self._file_config
        if section:
            source = source.get(section)
            if not isinstance(source, dict):
                return None
        return source.get(key)

    def _setting(self, env_var: str, section: Optional[str], key: str, default: Any) -> Any:
        """Resolve a raw setting: environment first, then config file, then default."""
        value = environ.get(env_var)
        if value is not None:
            return value
        value = self._file_value(section, key)
        if value is not None:
            return value
        return default

    def _validate_positive_int(self, env_var: str, section: Optional[str], key: str, default: int, min_val: int = 1) -> int:
        """Validate and parse an integer setting no smaller than min_val."""
        raw = self._setting(env_var, section, key, default)
        try:
            value = int(str(raw).strip())
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value '{raw}', using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, section: Optional[str], key: str, default: float, min_val: float = 0.0) -> float:
        """Validate and parse a float setting no smaller than min_val."""
        raw = self._setting(env_var, section, key, default)
        try:
            value = float(str(raw).strip().rstrip('s'))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value '{raw}', using default {default}")
            return default

    def _bool_setting(self, env_var: str, section: Optional[str], key: str, default: bool) -> bool:
        raw = self._setting(env_var, section, key, default)
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")

    def _list_setting(self, env_var: str, section: Optional[str], key: str) -> List[str]:
        raw = self._setting(env_var, section, key, [])
        return parse_tag_list(raw)

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Linkding API
        self.LINKDING_URL = (self._setting("LINKDING_URL", "linkding", "url", "") or "").strip()
        self.LINKDING_TOKEN = (self._setting("LINKDING_TOKEN", "linkding", "token", "") or "").strip()
        self.LINKDING_TIMEOUT = self._validate_positive_float("LINKDING_TIMEOUT", "linkding", "timeout", 30.0, 1.0)

        # Discovery cache
        self.CACHE_FILE_PATH = self._setting("CACHE_FILE_PATH", "cache", "file_path", "./linkding-to-opml.json")
        self.CACHE_MAX_AGE_HOURS = self._validate_positive_int("CACHE_MAX_AGE_HOURS", "cache", "max_age", 720, 0)

        # HTTP client used for discovery
        self.HTTP_TIMEOUT = self._validate_positive_float("HTTP_TIMEOUT", "http", "timeout", 30.0, 1.0)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", "http", "max_redirects", 3, 0)
        self.USER_AGENT = self._setting(
            "USER_AGENT", "http", "user_agent", "Mozilla/5.0 (compatible; linkding-to-opml/1.0)"
        )

        # Processing
        self.CONCURRENCY = self._validate_positive_int("CONCURRENCY", None, "concurrency", 16, 1)
        self.RETRY_ATTEMPTS = self._validate_positive_int("RETRY_ATTEMPTS", None, "retry_attempts", 3, 1)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", None, "retry_delay_base", 1.0, 0.0)

        # Export
        self.OUTPUT_PATH = self._setting("OUTPUT_PATH", None, "output", "feeds.opml")
        self.FILTER_TAGS = self._list_setting("FILTER_TAGS", None, "tags")
        self.OPML_TITLE = self._setting("OPML_TITLE", None, "opml_title", "Linkding Feeds")

        # Import
        self.DUPLICATE_POLICY = str(self._setting("DUPLICATE_POLICY", "import", "duplicates", "skip")).strip().lower()
        self.IMPORT_TAGS = self._list_setting("IMPORT_TAGS", "import", "tags")
        self.DRY_RUN = self._bool_setting("DRY_RUN", "import", "dry_run", False)

        # Debugging aids
        self.SAVE_FAILED_HTML = self._bool_setting("SAVE_FAILED_HTML", None, "save_failed_html", False)
        self.DEBUG_OUTPUT_DIR = self._setting("DEBUG_OUTPUT_DIR", None, "debug_output_dir", "./debug")

    def apply_overrides(self, overrides: Dict[str, Any]) -> None:
        """Apply command-line overrides; None values leave the setting untouched."""
        for name, value in overrides.items():
            if value is None:
                continue
            if not hasattr(self, name):
                raise AttributeError(f"Unknown configuration setting: {name}")
            setattr(self, name, value)
            logger.debug(f"Configuration override {name}={value!r}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "linkding_url": self.LINKDING_URL,
            "linkding_token": mask_token(self.LINKDING_TOKEN),
            "cache_file": self.CACHE_FILE_PATH,
            "cache_max_age_hours": self.CACHE_MAX_AGE_HOURS,
            "http_timeout": self.HTTP_TIMEOUT,
            "max_redirects": self.MAX_REDIRECTS,
            "user_agent": self.USER_AGENT,
            "concurrency": self.CONCURRENCY,
            "retry_attempts": self.RETRY_ATTEMPTS,
            "output": self.OUTPUT_PATH,
            "filter_tags": list(self.FILTER_TAGS),
            "duplicates": self.DUPLICATE_POLICY,
            "import_tags": list(self.IMPORT_TAGS),
            "dry_run": self.DRY_RUN,
        }


def parse_tag_list(raw: Any) -> List[str]:
    """Normalize a comma-separated string or a list into a clean list of tags."""
    if raw is None:
        return []
    if isinstance(raw, str):
        parts = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        parts = []
        for value in raw:
            parts.extend(str(value).split(","))
    else:
        parts = [str(raw)]
    return [p.strip() for p in parts if p and p.strip()]


def mask_token(token: str) -> str:
    """Show only the first 8 characters of an API token."""
    if not token or len(token) <= 8:
        return "****"
    return token[:8] + "****"

