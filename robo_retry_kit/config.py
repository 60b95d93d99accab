"""
Configuration provider for robo_retry_kit.

Values are looked up by dotted property key (``retry.count``). Each key maps
to an environment variable by upper-casing it and replacing dots with
underscores (``RETRY_COUNT``), so settings can live in ``.env`` files, in the
process environment, or be overridden from the pytest command line.

Lookup order:
1. Overrides (command-line options)
2. Environment variables (including values loaded from .env / .env.<app_env>)
3. The default supplied by the caller
"""

import logging
import os
import threading

from dotenv import load_dotenv

from .utils.RoboHelper import get_env


logger = logging.getLogger(__name__)
logger.propagate = True

RETRY_COUNT = "retry.count"
SCREENSHOT_ON_FAILURE = "screenshot.on.failure"
SCREENSHOT_PATH = "screenshot.path"
SCREENSHOT_RETENTION_DAYS = "screenshot.retention.days"
REPORT_PATH = "report.path"
REPORT_TITLE = "report.title"
BROWSER = "browser"
ENVIRONMENT = "environment"
HEADLESS = "headless"

DEFAULT_RETRY_COUNT = 2
DEFAULT_SCREENSHOT_PATH = "screenshots"
DEFAULT_REPORT_PATH = "reports"
DEFAULT_REPORT_TITLE = "Test Execution Report"

_TRUE_VALUES = {"y", "yes", "true", "1", "on"}
_FALSE_VALUES = {"n", "no", "false", "0", "off"}


def env_key(key: str) -> str:
    """Map a dotted property key to its environment variable name."""
    return key.strip().upper().replace(".", "_")


def load_environment_files(env_file=".env"):
    """
    Load base .env values, then APP_ENV specific overrides.

    Values already present in the process environment win over the base
    file; the environment specific file overrides both.
    """
    load_dotenv(env_file)

    app_env = os.getenv("APP_ENV", "").upper()
    if app_env:
        specific_file = f"{env_file}.{app_env.lower()}"
        if os.path.exists(specific_file):
            load_dotenv(specific_file, override=True)
            logger.info(f"Loaded environment-specific config from {specific_file}")
        else:
            logger.warning(
                f"Environment file {specific_file} not found for APP_ENV={app_env}"
            )


class ConfigProvider:
    """Typed access to configuration properties."""

    def __init__(self, overrides=None, env_file=".env", load_env=True):
        if load_env:
            load_environment_files(env_file)
        self._overrides = {}
        self._lock = threading.Lock()
        for key, value in (overrides or {}).items():
            self.set_override(key, value)

    def set_override(self, key, value):
        """Override a property for the lifetime of this provider. ``None`` clears it."""
        with self._lock:
            if value is None:
                self._overrides.pop(key, None)
            else:
                self._overrides[key] = str(value)

    def get_property(self, key, default=None):
        with self._lock:
            override = self._overrides.get(key)
        if override is not None and override.strip():
            return override.strip()
        return get_env(env_key(key), default)

    def get_int_property(self, key, default: int) -> int:
        value = self.get_property(key)
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(
                f"Invalid integer value for property '{key}': {value!r}. "
                f"Using default value: {default}"
            )
            return default

    def get_boolean_property(self, key, default: bool) -> bool:
        value = self.get_property(key)
        if value is None:
            return default
        normalized = value.lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
        logger.warning(
            f"Invalid boolean value for property '{key}': {value!r}. "
            f"Using default value: {default}"
        )
        return default
