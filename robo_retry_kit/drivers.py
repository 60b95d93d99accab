"""
Active browser sessions, keyed by execution context.

The failure capture pipeline asks this registry for the driver that belongs to
the failing test's context; a context without a bound driver simply has
nothing to screenshot.
"""

import logging
import os
import shutil
import tempfile
import threading

from selenium import webdriver
from selenium.webdriver.chrome.options import Options

from . import config as cfg
from .session import current_context_id


logger = logging.getLogger(__name__)
logger.propagate = True


class DriverRegistry:
    def __init__(self):
        self._drivers = {}
        self._lock = threading.Lock()

    def bind(self, driver, context_id=None):
        context_id = current_context_id() if context_id is None else context_id
        with self._lock:
            previous = self._drivers.get(context_id)
            self._drivers[context_id] = driver
        if previous is not None and previous is not driver:
            logger.warning(f"Context {context_id} already had an active driver; replacing it")
        return driver

    def get(self, context_id=None):
        context_id = current_context_id() if context_id is None else context_id
        with self._lock:
            return self._drivers.get(context_id)

    def release(self, context_id=None):
        context_id = current_context_id() if context_id is None else context_id
        with self._lock:
            return self._drivers.pop(context_id, None)

    def active_count(self) -> int:
        with self._lock:
            return len(self._drivers)


driver_registry = DriverRegistry()


def create_chrome_driver(config):
    """
    Create a Chrome WebDriver with a unique, throw-away profile.

    Browser Configuration:
    - --user-data-dir: Unique temporary profile directory per test
    - --no-sandbox: Required for some environments
    - --disable-dev-shm-usage: Prevents shared memory issues
    - --headless=new: Modern headless implementation (if headless is enabled)

    Returns:
        Tuple of (driver, profile_dir)
    """
    profile_dir = tempfile.mkdtemp(prefix="chrome_profile_")

    chrome_options = Options()
    chrome_options.add_argument(f"--user-data-dir={profile_dir}")
    chrome_options.add_argument("--no-sandbox")
    chrome_options.add_argument("--disable-dev-shm-usage")

    if config.get_boolean_property(cfg.HEADLESS, False):
        chrome_options.add_argument("--headless=new")

    try:
        driver = webdriver.Chrome(options=chrome_options)
    except Exception:
        shutil.rmtree(profile_dir, ignore_errors=True)
        raise

    logger.info(f"Chrome driver started with profile {os.path.basename(profile_dir)}")
    return driver, profile_dir


def quit_driver(driver, profile_dir=None):
    """Quit ``driver`` and remove its profile directory; never raises."""
    try:
        driver.quit()
    except Exception as e:
        logger.warning(f"Error while quitting driver: {e}")
    if profile_dir:
        shutil.rmtree(profile_dir, ignore_errors=True)
