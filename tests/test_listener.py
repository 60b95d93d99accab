import logging
from pathlib import Path

import pytest

from robo_retry_kit import config as cfg
from robo_retry_kit.capture import FailureCapturePipeline
from robo_retry_kit.exceptions import ReportWriterError
from robo_retry_kit.listener import ExecutionListener, InvocationState, ListenerOutcome
from robo_retry_kit.retry import NoRetry
from robo_retry_kit.session import ReportSession, Status


class TransientError(Exception):
    pass


@pytest.fixture
def listener(config_provider, drivers, classifier):
    listener = ExecutionListener(
        config_provider,
        capture=FailureCapturePipeline(config_provider, drivers),
        classifier=classifier,
    )
    listener.on_suite_start("unit")
    return listener


def start(listener, name="test_login", **kwargs):
    invocation = listener.create_invocation(name, "tests.test_login", **kwargs)
    entry = listener.on_test_start(invocation)
    return invocation, entry


def messages(entry):
    return [line.message for line in entry.logs]


def test_pass_on_first_attempt(listener):
    invocation, entry = start(listener)

    assert listener.on_test_success(invocation) is ListenerOutcome.PASS
    listener.on_test_end(invocation)

    assert entry.status is Status.PASS
    assert entry.attempts_used == 1
    assert "Test passed successfully" in messages(entry)
    assert any(m.startswith("Execution time: ") for m in messages(entry))
    assert listener.report_session.current() is None


def test_start_records_context_lines(listener, config_provider):
    config_provider.set_override(cfg.BROWSER, "firefox")
    _, entry = start(listener, description="Logs in")

    assert entry.description == "Logs in"
    assert messages(entry)[:4] == [
        "Test started: test_login",
        "Test class: tests.test_login",
        "Browser: firefox",
        "Environment: Unknown",
    ]


def test_default_description(listener):
    _, entry = start(listener)
    assert entry.description == "Test method: test_login"


def test_transient_failure_retried_then_terminal(listener, drivers, fake_driver, tmp_path):
    drivers.bind(fake_driver)
    invocation, entry = start(listener)

    outcomes = []
    for attempt in range(3):
        if attempt:
            assert listener.on_test_start(invocation) is entry
        outcomes.append(listener.on_test_failure(invocation, TransientError("timeout")))
        listener.on_test_end(invocation)

    assert outcomes == [ListenerOutcome.RETRY, ListenerOutcome.RETRY, ListenerOutcome.FAIL]
    assert invocation.state is InvocationState.FAILED
    assert entry.status is Status.FAIL
    assert (entry.attempts_used, entry.total_attempts) == (3, 3)
    assert entry.retries == 2
    assert fake_driver.screenshots_taken == 1
    assert len(entry.artifacts) == 1
    assert len(list((tmp_path / "screenshots").glob("test_login_failure_*.png"))) == 1

    lines = messages(entry)
    assert "Attempt 1 failed: TransientError: timeout. Retry pending (attempt 2 of 3)" in lines
    assert "Attempt 2 failed: TransientError: timeout. Retry pending (attempt 3 of 3)" in lines
    assert "Attempt 3 of 3 started" in lines
    assert "Test failed: TransientError: timeout" in lines
    assert listener.report_session.current() is None


def test_entry_stays_bound_while_retry_pending(listener):
    invocation, entry = start(listener)
    listener.on_test_failure(invocation, TransientError())

    assert listener.on_test_end(invocation) is None
    assert listener.report_session.current() is entry
    assert entry.status is None


def test_flaky_test_passes_on_retry(listener):
    invocation, entry = start(listener)
    assert listener.on_test_failure(invocation, TransientError()) is ListenerOutcome.RETRY
    listener.on_test_end(invocation)

    listener.on_test_start(invocation)
    assert listener.on_test_success(invocation) is ListenerOutcome.PASS
    listener.on_test_end(invocation)

    assert entry.status is Status.PASS
    assert entry.attempts_used == 2
    assert len(listener.report_session.writer.entries()) == 1


def test_non_retryable_failure_is_terminal_at_once(listener, drivers, fake_driver):
    drivers.bind(fake_driver)
    invocation, entry = start(listener)

    assert listener.on_test_failure(invocation, AssertionError("expected 1")) is ListenerOutcome.FAIL
    assert invocation.retry_policy.attempts_made == 0
    assert entry.attempts_used == 1
    assert fake_driver.screenshots_taken == 1


def test_no_retry_marker_is_honored(listener):
    invocation, _ = start(listener, no_retry=NoRetry("Known flaky backend"))
    assert listener.on_test_failure(invocation, TransientError()) is ListenerOutcome.FAIL


def test_disallowed_retry_is_terminal(listener):
    invocation, _ = start(listener)
    assert listener.on_test_failure(invocation, TransientError(), allow_retry=False) is ListenerOutcome.FAIL
    assert invocation.retry_policy.attempts_made == 0


def test_captured_log_and_error_detail_recorded(listener):
    invocation, entry = start(listener)
    try:
        raise KeyError("user")
    except KeyError as error:
        listener.on_test_failure(invocation, error, allow_retry=False, captured_log="WARNING slow page")

    assert entry.error_message == "KeyError: 'user'"
    assert "KeyError" in entry.error_detail
    assert entry.captured_log == "WARNING slow page"


def test_skip(listener):
    invocation, entry = start(listener)
    assert listener.on_test_skip(invocation, "no browser available") is ListenerOutcome.SKIP
    listener.on_test_end(invocation)

    assert entry.status is Status.SKIP
    assert "Test skipped: no browser available" in messages(entry)


def test_warning_outcome(listener):
    invocation, entry = start(listener)
    assert listener.on_test_warning(invocation, "Expected failure: known bug") is ListenerOutcome.WARN
    listener.on_test_end(invocation)
    assert entry.status is Status.WARN


def test_teardown_failure_after_pass_keeps_status(listener):
    invocation, entry = start(listener)
    listener.on_test_success(invocation)
    listener.on_test_end(invocation, teardown_error=RuntimeError("driver quit failed"))

    assert entry.status is Status.PASS
    assert "Teardown failed: RuntimeError: driver quit failed" in messages(entry)


def test_capture_exception_does_not_change_outcome(config_provider, classifier, caplog):
    class ExplodingCapture:
        screenshot_dir = None

        def capture_on_failure(self, *args, **kwargs):
            raise RuntimeError("capture exploded")

    listener = ExecutionListener(config_provider, capture=ExplodingCapture(), classifier=classifier)
    invocation, entry = start(listener)

    with caplog.at_level(logging.ERROR, logger="robo_retry_kit.listener"):
        outcome = listener.on_test_failure(invocation, AssertionError(), allow_retry=False)

    assert outcome is ListenerOutcome.FAIL
    assert entry.status is Status.FAIL
    assert "Listener error while reporting failure of test_login" in caplog.text


def test_out_of_order_events_are_logged(listener, caplog):
    invocation = listener.create_invocation("test_login")
    with caplog.at_level(logging.ERROR, logger="robo_retry_kit.listener"):
        assert listener.on_test_success(invocation) is ListenerOutcome.PASS
        assert listener.on_test_failure(invocation, TransientError()) is ListenerOutcome.FAIL

    assert invocation.state is InvocationState.NOT_STARTED
    assert "cannot handle 'success' while NOT_STARTED" in caplog.text
    assert "cannot handle 'failure' while NOT_STARTED" in caplog.text


def test_restart_after_terminal_outcome_is_rejected(listener, caplog):
    invocation, _ = start(listener)
    listener.on_test_success(invocation)
    with caplog.at_level(logging.ERROR, logger="robo_retry_kit.listener"):
        assert listener.on_test_start(invocation) is None
    assert invocation.attempt == 1
    assert "cannot handle 'start' while PASSED" in caplog.text


def test_each_invocation_gets_a_fresh_policy(listener):
    first = listener.create_invocation("test_a")
    second = listener.create_invocation("test_a")
    assert first.retry_policy is not second.retry_policy


def test_retry_budget_comes_from_configuration(listener, config_provider):
    config_provider.set_override(cfg.RETRY_COUNT, "0")
    invocation, entry = start(listener)
    assert entry.total_attempts == 1
    assert listener.on_test_failure(invocation, TransientError()) is ListenerOutcome.FAIL


def test_suite_finish_writes_report(listener, tmp_path):
    invocation, _ = start(listener)
    listener.on_test_success(invocation)
    listener.on_test_end(invocation)

    result = listener.on_suite_finish("unit")

    assert result["summary"]["passed"] == 1
    assert Path(result["report_path"]).exists()


def test_suite_start_propagates_writer_failure(config_provider, tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    config_provider.set_override(cfg.REPORT_PATH, str(blocker / "reports"))

    with pytest.raises(ReportWriterError):
        ExecutionListener(config_provider, ReportSession(config_provider)).on_suite_start()


def test_suite_start_cleans_old_screenshots(config_provider, tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr(
        "robo_retry_kit.listener.cleanup_old_screenshots",
        lambda directory, days: calls.append((directory, days)),
    )
    config_provider.set_override(cfg.SCREENSHOT_RETENTION_DAYS, "7")

    ExecutionListener(config_provider).on_suite_start()

    assert calls == [(tmp_path / "screenshots", 7)]


def test_teardown_failure_of_retried_attempt_is_noted(listener):
    invocation, entry = start(listener)
    listener.on_test_failure(invocation, TransientError())
    listener.on_test_end(invocation, teardown_error=RuntimeError("driver quit failed"))

    listener.on_test_start(invocation)
    listener.on_test_success(invocation)
    listener.on_test_end(invocation)

    assert entry.status is Status.PASS
    assert "Teardown failed during attempt 1: RuntimeError: driver quit failed" in messages(entry)
