import base64
import logging
import os
import re
import time
from datetime import datetime

import pytest

from robo_retry_kit import config as cfg
from robo_retry_kit.capture import FailureCapturePipeline, cleanup_old_screenshots
from robo_retry_kit.retry import FailureContext, RetryPolicy
from robo_retry_kit.session import ReportEntry


FIXED_NOW = datetime(2024, 3, 9, 14, 5, 7, 123456)


@pytest.fixture
def pipeline(config_provider, drivers):
    return FailureCapturePipeline(config_provider, drivers, clock=lambda: FIXED_NOW)


def test_disabled_capture_never_writes_or_raises(pipeline, config_provider, drivers, fake_driver, tmp_path):
    config_provider.set_override(cfg.SCREENSHOT_ON_FAILURE, "false")
    drivers.bind(fake_driver)

    assert pipeline.capture_on_failure("test_login", RuntimeError("boom")) is None
    assert fake_driver.screenshots_taken == 0
    assert not (tmp_path / "screenshots").exists()


def test_missing_driver_returns_none_with_warning(pipeline, caplog, tmp_path):
    with caplog.at_level(logging.WARNING, logger="robo_retry_kit.capture"):
        assert pipeline.capture_on_failure("test_login") is None
    assert "WebDriver is not available" in caplog.text
    assert not (tmp_path / "screenshots").exists()


def test_capture_writes_timestamped_png(pipeline, drivers, fake_driver, tmp_path):
    drivers.bind(fake_driver)

    path = pipeline.capture_on_failure("test_login[chrome-admin]", RuntimeError("boom"))

    assert path == tmp_path / "screenshots" / "test_login_chrome-admin__failure_2024-03-09_14-05-07-123.png"
    assert path.read_bytes() == fake_driver.image


def test_screenshot_name_pattern(pipeline):
    name = pipeline.screenshot_path("test_checkout").name
    assert re.fullmatch(r"test_checkout_failure_\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}-\d{3}\.png", name)


def test_capture_uses_the_driver_of_the_given_context(pipeline, drivers, make_driver):
    mine, other = make_driver(), make_driver()
    drivers.bind(mine, context_id="a")
    drivers.bind(other, context_id="b")

    pipeline.capture_on_failure("test_x", context_id="b")

    assert (mine.screenshots_taken, other.screenshots_taken) == (0, 1)


def test_capture_error_is_logged_and_swallowed(pipeline, drivers, make_driver, caplog):
    drivers.bind(make_driver(error=OSError("browser went away")))

    with caplog.at_level(logging.ERROR, logger="robo_retry_kit.capture"):
        assert pipeline.capture_on_failure("test_login", ValueError("bad input")) is None

    assert "Failed to capture screenshot for test_login" in caplog.text
    assert "ValueError" in caplog.text


def test_write_failure_is_swallowed(config_provider, drivers, fake_driver, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    config_provider.set_override(cfg.SCREENSHOT_PATH, str(blocker / "shots"))
    drivers.bind(fake_driver)

    assert FailureCapturePipeline(config_provider, drivers).capture_on_failure("test_x") is None


def test_failure_is_recorded_on_entry(pipeline, drivers, fake_driver):
    drivers.bind(fake_driver)
    policy = RetryPolicy(max_attempts=2)
    policy.should_retry(FailureContext("test_login", error=RuntimeError()))
    entry = ReportEntry("test_login")

    try:
        raise RuntimeError("element not clickable")
    except RuntimeError as error:
        path = pipeline.capture_on_failure(
            "test_login", error, entry=entry, retry_policy=policy, captured_log="INFO clicked"
        )

    assert entry.error_message == "RuntimeError: element not clickable"
    assert "Traceback" in entry.error_detail
    assert entry.captured_log == "INFO clicked"
    assert (entry.attempts_used, entry.total_attempts) == (2, 3)
    assert "Retry attempt: 2 of 3" in [line.message for line in entry.logs]
    assert entry.artifacts[0].path == str(path)
    assert base64.b64decode(entry.artifacts[0].base64_data) == fake_driver.image


def test_record_failure_without_screenshot(pipeline):
    entry = ReportEntry("test_login")
    pipeline.capture_on_failure("test_login", KeyError("user"), entry=entry)
    assert entry.artifacts == []
    assert entry.error_message == "KeyError: 'user'"


def test_recording_errors_are_swallowed(pipeline, caplog, tmp_path):
    entry = ReportEntry("test_login")
    with caplog.at_level(logging.ERROR, logger="robo_retry_kit.capture"):
        pipeline.record_failure(entry, screenshot=tmp_path / "missing.png")
    assert "Failed to attach failure details to report" in caplog.text


def test_cleanup_old_screenshots(tmp_path):
    old = tmp_path / "old_failure.png"
    fresh = tmp_path / "fresh_failure.png"
    notes = tmp_path / "notes.txt"
    for path in (old, fresh, notes):
        path.write_bytes(b"x")
    ten_days_ago = time.time() - 10 * 24 * 60 * 60
    os.utime(old, (ten_days_ago, ten_days_ago))
    os.utime(notes, (ten_days_ago, ten_days_ago))

    assert cleanup_old_screenshots(tmp_path, retention_days=7) == 1
    assert not old.exists()
    assert fresh.exists() and notes.exists()


def test_cleanup_is_disabled_without_retention(tmp_path):
    (tmp_path / "a.png").write_bytes(b"x")
    assert cleanup_old_screenshots(tmp_path, retention_days=0) == 0
    assert cleanup_old_screenshots(tmp_path / "missing", retention_days=3) == 0
