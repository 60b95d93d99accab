"""
Execution listener: drives retry decisions, report entries and failure capture
from test lifecycle events.

Per invocation the states are strictly ordered:

    NOT_STARTED -> RUNNING -> (RETRYING -> RUNNING)* -> PASSED | FAILED | SKIPPED | WARNED

The listener never re-runs a test itself. ``on_test_failure`` returns
``ListenerOutcome.RETRY`` and the runner executes the test body again, calling
``on_test_start`` for the new attempt.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from . import config as cfg
from .capture import FailureCapturePipeline, cleanup_old_screenshots, format_error_detail
from .exceptions import LifecycleError
from .retry import FailureContext, NoRetry, RetryPolicy, failure_classifier
from .session import LogLevel, ReportSession, Status, current_context_id


logger = logging.getLogger(__name__)
logger.propagate = True


class InvocationState(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    RETRYING = "retrying"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    WARNED = "warned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        InvocationState.PASSED,
        InvocationState.FAILED,
        InvocationState.SKIPPED,
        InvocationState.WARNED,
    }
)

_TRANSITIONS = {
    InvocationState.NOT_STARTED: {InvocationState.RUNNING},
    InvocationState.RETRYING: {InvocationState.RUNNING},
    InvocationState.RUNNING: {InvocationState.RETRYING} | TERMINAL_STATES,
}


class ListenerOutcome(Enum):
    """What the runner should do with an attempt's result."""

    PASS = "pass"
    FAIL = "fail"
    RETRY = "retry"
    SKIP = "skip"
    WARN = "warn"


@dataclass
class TestInvocation:
    """Everything the listener knows about one test function invocation."""

    __test__ = False

    test_name: str
    retry_policy: RetryPolicy
    class_name: str = ""
    description: str = ""
    node_id: str = ""
    no_retry: Optional[NoRetry] = None
    context_id: int = field(default_factory=current_context_id)
    state: InvocationState = InvocationState.NOT_STARTED
    attempt: int = 0
    attempt_started: Optional[float] = None

    def transition(self, new_state, event):
        if new_state not in _TRANSITIONS.get(self.state, ()):
            raise LifecycleError(self.node_id or self.test_name, self.state, event)
        self.state = new_state

    def elapsed_ms(self) -> int:
        if self.attempt_started is None:
            return 0
        return int((time.monotonic() - self.attempt_started) * 1000)

    def failure_context(self, error):
        return FailureContext(self.test_name, self.class_name, error, self.no_retry)


class ExecutionListener:
    def __init__(self, config=None, report_session=None, capture=None, classifier=None):
        self.config = config if config is not None else cfg.ConfigProvider()
        self.report_session = (
            report_session if report_session is not None else ReportSession(self.config)
        )
        self.capture = capture if capture is not None else FailureCapturePipeline(self.config)
        self.classifier = classifier if classifier is not None else failure_classifier

    @contextmanager
    def _guard(self, action):
        try:
            yield
        except Exception as e:
            logger.error(f"Listener error while {action}: {e}", exc_info=True)

    def create_invocation(
        self, test_name, class_name="", description="", node_id="", no_retry=None, context_id=None
    ):
        """Build the descriptor for a new invocation with a fresh RetryPolicy."""
        return TestInvocation(
            test_name=test_name,
            retry_policy=RetryPolicy(config=self.config, classifier=self.classifier),
            class_name=class_name,
            description=description or f"Test method: {test_name}",
            node_id=node_id or test_name,
            no_retry=no_retry,
            context_id=current_context_id() if context_id is None else context_id,
        )

    # ------------------------------------------------------------------
    # Suite events
    # ------------------------------------------------------------------

    def on_suite_start(self, suite_name=""):
        """Create the shared report writer. ReportWriterError propagates."""
        logger.info(f"Test suite started: {suite_name}")
        self.report_session.on_suite_start()

        retention_days = self.config.get_int_property(cfg.SCREENSHOT_RETENTION_DAYS, 0)
        if retention_days > 0:
            cleanup_old_screenshots(self.capture.screenshot_dir, retention_days)

    def on_suite_finish(self, suite_name=""):
        logger.info(f"Test suite finished: {suite_name}")
        with self._guard("flushing the report"):
            return self.report_session.on_suite_finish()
        return None

    # ------------------------------------------------------------------
    # Test events
    # ------------------------------------------------------------------

    def on_test_start(self, invocation):
        """Start (or restart) an attempt; returns the invocation's report entry."""
        try:
            invocation.transition(InvocationState.RUNNING, "start")
        except LifecycleError as e:
            logger.error(str(e))
            return None

        invocation.attempt += 1
        invocation.attempt_started = time.monotonic()
        policy = invocation.retry_policy
        entry = None

        with self._guard(f"starting {invocation.test_name}"):
            if invocation.attempt == 1:
                entry = self.report_session.begin_entry(
                    invocation.test_name,
                    invocation.description,
                    invocation.class_name,
                    context_id=invocation.context_id,
                    node_id=invocation.node_id,
                )
                entry.total_attempts = policy.total_attempts
                entry.info(f"Test started: {invocation.test_name}")
                entry.info(f"Test class: {invocation.class_name}")
                entry.info(f"Browser: {self.config.get_property(cfg.BROWSER, 'Unknown')}")
                entry.info(f"Environment: {self.config.get_property(cfg.ENVIRONMENT, 'Unknown')}")
            else:
                entry = self.report_session.current(invocation.context_id)
                if entry is not None:
                    entry.info(
                        f"Attempt {invocation.attempt} of {policy.total_attempts} started"
                    )
            if entry is not None:
                entry.attempts_used = invocation.attempt

        logger.info(
            f"Test started: {invocation.test_name} in class: {invocation.class_name} "
            f"(attempt {invocation.attempt} of {policy.total_attempts})"
        )
        return entry

    def on_test_success(self, invocation):
        if not self._enter(invocation, InvocationState.PASSED, "success"):
            return ListenerOutcome.PASS

        with self._guard(f"reporting success of {invocation.test_name}"):
            entry = self.report_session.current(invocation.context_id)
            if entry is not None:
                entry.mark(Status.PASS, "Test passed successfully")
                self._record_duration(entry, invocation)

        logger.info(f"Test passed: {invocation.test_name}")
        return ListenerOutcome.PASS

    def on_test_failure(self, invocation, error=None, allow_retry=True, captured_log=""):
        """
        Handle a failed attempt.

        Returns ListenerOutcome.RETRY when the runner should run the test
        again, ListenerOutcome.FAIL when this failure is terminal. Failure
        capture only happens for the terminal failure.
        """
        if invocation.state is not InvocationState.RUNNING:
            logger.error(str(LifecycleError(invocation.node_id, invocation.state, "failure")))
            return ListenerOutcome.FAIL

        policy = invocation.retry_policy
        retry = False
        if allow_retry:
            try:
                retry = policy.should_retry(invocation.failure_context(error))
            except Exception as e:
                logger.error(
                    f"Retry decision failed for {invocation.test_name}, treating failure "
                    f"as terminal: {e}",
                    exc_info=True,
                )

        if retry:
            invocation.transition(InvocationState.RETRYING, "failure")
            with self._guard(f"reporting retry of {invocation.test_name}"):
                entry = self.report_session.current(invocation.context_id)
                if entry is not None:
                    entry.warning(
                        f"Attempt {invocation.attempt} failed: {_describe(error)}. "
                        f"Retry pending (attempt {policy.current_attempt} of "
                        f"{policy.total_attempts})"
                    )
            logger.warning(
                f"Test failed, retry pending: {invocation.test_name} - {_describe(error)}"
            )
            return ListenerOutcome.RETRY

        invocation.transition(InvocationState.FAILED, "failure")
        with self._guard(f"reporting failure of {invocation.test_name}"):
            entry = self.report_session.current(invocation.context_id)
            if entry is not None:
                entry.mark(Status.FAIL, f"Test failed: {_describe(error)}")
            self.capture.capture_on_failure(
                invocation.test_name,
                error,
                context_id=invocation.context_id,
                entry=entry,
                retry_policy=policy,
                captured_log=captured_log,
            )
            if entry is not None:
                self._record_duration(entry, invocation)

        logger.error(f"Test failed: {invocation.test_name} - {_describe(error)}")
        return ListenerOutcome.FAIL

    def on_test_skip(self, invocation, cause=None):
        if not self._enter(invocation, InvocationState.SKIPPED, "skip"):
            return ListenerOutcome.SKIP

        with self._guard(f"reporting skip of {invocation.test_name}"):
            entry = self.report_session.current(invocation.context_id)
            if entry is not None:
                entry.mark(Status.SKIP, f"Test skipped: {cause}" if cause else "Test skipped")
                entry.finish()

        logger.warning(f"Test skipped: {invocation.test_name}")
        return ListenerOutcome.SKIP

    def on_test_warning(self, invocation, message):
        """Terminal outcome that is neither a pass nor a failure (expected failures)."""
        if not self._enter(invocation, InvocationState.WARNED, "warning"):
            return ListenerOutcome.WARN

        with self._guard(f"reporting warning for {invocation.test_name}"):
            entry = self.report_session.current(invocation.context_id)
            if entry is not None:
                entry.mark(Status.WARN, message)
                self._record_duration(entry, invocation)

        logger.warning(f"Test finished with warning: {invocation.test_name} - {message}")
        return ListenerOutcome.WARN

    def on_test_end(self, invocation, teardown_error=None):
        """
        Release the context's entry binding after a terminal outcome.

        While a retry is pending the entry stays bound for the next attempt;
        a teardown failure of the retried attempt is only noted on the entry.
        """
        if invocation.state is InvocationState.RETRYING:
            if teardown_error is not None:
                with self._guard(f"noting teardown failure of {invocation.test_name}"):
                    entry = self.report_session.current(invocation.context_id)
                    if entry is not None:
                        entry.warning(
                            f"Teardown failed during attempt {invocation.attempt}: "
                            f"{_describe(teardown_error)}"
                        )
            return None

        entry = None
        with self._guard(f"closing entry of {invocation.test_name}"):
            entry = self.report_session.current(invocation.context_id)
            if entry is not None and teardown_error is not None:
                entry.log(LogLevel.FAIL, f"Teardown failed: {_describe(teardown_error)}")
                if not entry.error_detail:
                    entry.error_detail = format_error_detail(teardown_error)
            if not invocation.state.is_terminal:
                logger.warning(
                    f"Test {invocation.test_name} ended without an outcome "
                    f"(state: {invocation.state.name})"
                )
            if entry is not None and entry.end_time is None:
                entry.finish()

        self.report_session.end_entry(invocation.context_id)
        return entry

    # ------------------------------------------------------------------

    def _enter(self, invocation, state, event):
        try:
            invocation.transition(state, event)
        except LifecycleError as e:
            logger.error(str(e))
            return False
        return True

    def _record_duration(self, entry, invocation):
        entry.info(f"Execution time: {invocation.elapsed_ms()} ms")
        entry.finish()


def _describe(error):
    if error is None:
        return "Unknown error"
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__
