"""
Retry decisions for failed test attempts.

FailureClassifier
    Process-wide registry of exception classes that must never be retried.
    Registrations are global: a class registered by one test affects every
    later decision in the process, on every thread. Single add/remove
    operations are atomic; there is no ordering guarantee between
    concurrent register/unregister calls made from different threads.

RetryPolicy
    One instance per test invocation. Counts retries against a ceiling read
    once from configuration and decides, for each failed attempt, whether
    the runner should execute the test again.

Attempt numbering: attempts are counted from 1 and a test gets at most
``max_attempts + 1`` executions (the first run plus ``max_attempts``
retries).
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from . import config as cfg
from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)
logger.propagate = True

DEFAULT_NO_RETRY_REASON = "Retry disabled by marker"

# AssertionError: failed checks; ValueError: illegal arguments;
# AttributeError: attribute access on None
DEFAULT_NON_RETRYABLE = (AssertionError, ValueError, AttributeError)


def _require_exception_class(category):
    if not (isinstance(category, type) and issubclass(category, BaseException)):
        raise TypeError(f"Expected an exception class, got {category!r}")


class FailureClassifier:
    """Registry of non-retryable exception categories."""

    def __init__(self, non_retryable=DEFAULT_NON_RETRYABLE):
        self._defaults = tuple(non_retryable)
        for category in self._defaults:
            _require_exception_class(category)
        self._kinds = set(self._defaults)
        self._lock = threading.Lock()

    def register(self, category):
        _require_exception_class(category)
        with self._lock:
            self._kinds.add(category)
        logger.info(f"Added non-retryable exception: {category.__name__}")

    def unregister(self, category):
        _require_exception_class(category)
        with self._lock:
            self._kinds.discard(category)
        logger.info(f"Removed non-retryable exception: {category.__name__}")

    def categories(self):
        """Snapshot of the registered categories."""
        with self._lock:
            return frozenset(self._kinds)

    def reset(self):
        """Restore the default categories."""
        with self._lock:
            self._kinds = set(self._defaults)

    def matching_category(self, error: BaseException):
        """Return the registered category ``error`` belongs to, or None."""
        error_type = type(error)
        for category in self.categories():
            if issubclass(error_type, category):
                return category
        return None

    def is_retryable(self, error: BaseException) -> bool:
        return self.matching_category(error) is None


failure_classifier = FailureClassifier()


@dataclass(frozen=True)
class NoRetry:
    """Per-test override that disables retries for one test function."""

    reason: str = DEFAULT_NO_RETRY_REASON


@dataclass(frozen=True)
class FailureContext:
    """What RetryPolicy needs to know about one failed attempt."""

    test_name: str
    class_name: str = ""
    error: Optional[BaseException] = None
    no_retry: Optional[NoRetry] = None

    @property
    def qualified_name(self):
        return f"{self.class_name}.{self.test_name}" if self.class_name else self.test_name


def read_max_attempts(config) -> int:
    """Read the retry budget, falling back to the default on bad values."""
    if config is None:
        return cfg.DEFAULT_RETRY_COUNT
    try:
        value = config.get_int_property(cfg.RETRY_COUNT, cfg.DEFAULT_RETRY_COUNT)
    except Exception as e:
        logger.warning(
            f"Failed to read retry count from configuration ({e}), "
            f"using default value: {cfg.DEFAULT_RETRY_COUNT}"
        )
        return cfg.DEFAULT_RETRY_COUNT
    if value < 0:
        logger.warning(
            f"Negative retry count {value} in configuration, "
            f"using default value: {cfg.DEFAULT_RETRY_COUNT}"
        )
        return cfg.DEFAULT_RETRY_COUNT
    return value


class RetryPolicy:
    """Retry budget and decision logic for a single test invocation."""

    def __init__(self, max_attempts=None, config=None, classifier=None):
        if max_attempts is None:
            max_attempts = read_max_attempts(config)
        elif max_attempts < 0:
            raise ConfigurationError(f"max_attempts must be >= 0, got {max_attempts}")
        self._max_attempts = max_attempts
        self._attempts_made = 0
        self.classifier = classifier if classifier is not None else failure_classifier

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def attempts_made(self) -> int:
        return self._attempts_made

    @property
    def is_terminal(self) -> bool:
        return self._attempts_made >= self._max_attempts

    @property
    def current_attempt(self) -> int:
        """1-based number of the attempt currently running."""
        return self._attempts_made + 1

    @property
    def total_attempts(self) -> int:
        return self._max_attempts + 1

    def should_retry(self, failure: FailureContext) -> bool:
        """Decide whether the failed attempt described by ``failure`` is retried.

        Must be called exactly once per failed attempt.
        """
        name = failure.qualified_name

        if self.is_terminal:
            logger.info(
                f"Maximum retry count ({self._max_attempts}) reached for test: {name} "
                f"(attempt {self.current_attempt} of {self.total_attempts})"
            )
            return False

        error = failure.error
        if error is not None:
            category = self.classifier.matching_category(error)
            if category is not None:
                logger.info(
                    f"Test failure excluded from retry due to exception type: "
                    f"{type(error).__name__} (non-retryable: {category.__name__}) "
                    f"for test: {name}"
                )
                return False

        if failure.no_retry is not None:
            reason = failure.no_retry.reason or DEFAULT_NO_RETRY_REASON
            logger.info(f"Retry disabled for test: {name}. Reason: {reason}")
            return False

        self._attempts_made += 1
        logger.info(
            f"Retrying test: {name} "
            f"(attempt {self.current_attempt} of {self.total_attempts})"
        )
        if error is not None:
            logger.info(f"Retry reason: {error}")
        return True
