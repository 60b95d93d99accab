"""
Failure capture: screenshot the browser on a terminal failure and record the
failure details on the test's report entry.

Nothing in this module raises into the listener. A missing driver, a disabled
toggle or an I/O error all end up as "no screenshot" plus a log record, so the
original test failure is always what gets reported.
"""

import base64
import logging
import time
import traceback
from datetime import datetime
from pathlib import Path

from . import config as cfg
from .drivers import driver_registry
from .utils.RoboHelper import sanitize_file_name, screenshot_timestamp


logger = logging.getLogger(__name__)
logger.propagate = True

FAILURE_SUFFIX = "failure"


def format_error_detail(error) -> str:
    if error is None:
        return ""
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def cleanup_old_screenshots(screenshot_dir, retention_days, now=None) -> int:
    """Delete .png files older than ``retention_days``; returns how many were removed."""
    directory = Path(screenshot_dir)
    if retention_days <= 0 or not directory.is_dir():
        return 0

    cutoff = (now if now is not None else time.time()) - retention_days * 24 * 60 * 60
    deleted = 0
    try:
        for path in directory.glob("*.png"):
            if path.stat().st_mtime < cutoff:
                path.unlink()
                deleted += 1
    except OSError as e:
        logger.error(f"Failed to cleanup old screenshots in {directory}: {e}", exc_info=True)
    logger.info(f"Cleaned up {deleted} old screenshot files")
    return deleted


class FailureCapturePipeline:
    def __init__(self, config, drivers=None, clock=datetime.now):
        self.config = config
        self.drivers = drivers if drivers is not None else driver_registry
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.config.get_boolean_property(cfg.SCREENSHOT_ON_FAILURE, True)

    @property
    def screenshot_dir(self) -> Path:
        return Path(self.config.get_property(cfg.SCREENSHOT_PATH, cfg.DEFAULT_SCREENSHOT_PATH))

    def screenshot_path(self, test_name) -> Path:
        file_name = (
            f"{sanitize_file_name(test_name)}_{FAILURE_SUFFIX}_"
            f"{screenshot_timestamp(self._clock())}.png"
        )
        return self.screenshot_dir / file_name

    def capture_on_failure(
        self, test_name, error=None, context_id=None, entry=None, retry_policy=None, captured_log=""
    ):
        """
        Capture a failure screenshot and record the failure on ``entry``.

        Only call this for a terminal failure, i.e. after the retry policy has
        declined another attempt.

        Args:
            test_name: Used to name the screenshot file
            error: The exception that failed the test, if any
            context_id: Execution context whose driver is captured (defaults to the calling thread)
            entry: Report entry to record the failure on (optional)
            retry_policy: Policy of the invocation, for the attempt annotation (optional)
            captured_log: Log text captured while the failing phase ran (optional)

        Returns:
            Path of the written screenshot, or None when nothing was captured
        """
        screenshot = self._capture(test_name, error, context_id)
        self.record_failure(entry, error, screenshot, retry_policy, captured_log)
        return screenshot

    def _capture(self, test_name, error, context_id):
        if not self.enabled:
            logger.debug(f"Screenshot on failure disabled, skipping capture for {test_name}")
            return None

        driver = self.drivers.get(context_id)
        if driver is None:
            logger.warning(f"WebDriver is not available, cannot capture screenshot for {test_name}")
            return None

        try:
            image = driver.get_screenshot_as_png()
            path = self.screenshot_path(test_name)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(image)
        except Exception as e:
            logger.error(
                f"Failed to capture screenshot for {test_name} "
                f"(error under test: {type(error).__name__ if error else 'n/a'}): {e}",
                exc_info=True,
            )
            return None

        logger.info(f"Screenshot captured for test failure: {path}")
        return path

    def record_failure(self, entry, error=None, screenshot=None, retry_policy=None, captured_log=""):
        """Attach failure details to ``entry``; errors are logged, not raised."""
        if entry is None:
            return
        try:
            if error is not None:
                entry.error_message = f"{type(error).__name__}: {error}"
                entry.error_detail = format_error_detail(error)
            if retry_policy is not None:
                entry.attempts_used = retry_policy.current_attempt
                entry.total_attempts = retry_policy.total_attempts
                entry.info(
                    f"Retry attempt: {retry_policy.current_attempt} "
                    f"of {retry_policy.total_attempts}"
                )
            if captured_log:
                entry.captured_log = captured_log
            if screenshot is not None:
                encoded = base64.b64encode(Path(screenshot).read_bytes()).decode("ascii")
                entry.attach(screenshot, "Failure Screenshot", encoded)
                entry.info(f"Screenshot captured: {screenshot}")
        except Exception as e:
            logger.error(f"Failed to attach failure details to report: {e}", exc_info=True)
