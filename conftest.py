"""
Shared fixtures for the robo_retry_kit test suite.

The plugin itself is loaded through its pytest11 entry point; the fixtures here
build isolated collaborators (configuration, drivers, classifier) so unit tests
never touch a real browser or the process-wide registries' state.
"""

import logging

import pytest

from robo_retry_kit import config as cfg
from robo_retry_kit.config import ConfigProvider
from robo_retry_kit.drivers import DriverRegistry
from robo_retry_kit.retry import FailureClassifier, failure_classifier

pytest_plugins = ["pytester"]

logger = logging.getLogger(__name__)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


class FakeDriver:
    """Stands in for a selenium WebDriver."""

    def __init__(self, image=PNG_BYTES, error=None):
        self.image = image
        self.error = error
        self.screenshots_taken = 0
        self.quit_called = False

    def get_screenshot_as_png(self):
        self.screenshots_taken += 1
        if self.error is not None:
            raise self.error
        return self.image

    def quit(self):
        self.quit_called = True


@pytest.fixture
def config_provider(tmp_path, monkeypatch):
    """ConfigProvider writing reports and screenshots below tmp_path."""
    for key in (
        cfg.RETRY_COUNT,
        cfg.SCREENSHOT_ON_FAILURE,
        cfg.SCREENSHOT_RETENTION_DAYS,
        cfg.BROWSER,
        cfg.ENVIRONMENT,
    ):
        monkeypatch.delenv(cfg.env_key(key), raising=False)
    return ConfigProvider(
        overrides={
            cfg.REPORT_PATH: str(tmp_path / "reports"),
            cfg.SCREENSHOT_PATH: str(tmp_path / "screenshots"),
        },
        load_env=False,
    )


@pytest.fixture
def classifier():
    return FailureClassifier()


@pytest.fixture(autouse=True)
def restore_failure_classifier():
    yield
    failure_classifier.reset()


@pytest.fixture
def drivers():
    return DriverRegistry()


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def make_driver():
    """Factory for fake drivers, e.g. make_driver(error=OSError("disk full"))."""
    return FakeDriver
