"""
Robo Retry Kit
Retry-on-failure, failure screenshots and HTML reporting for browser based pytest suites.
"""

from robo_retry_kit.utils import RoboHelper
from robo_retry_kit.capture import FailureCapturePipeline
from robo_retry_kit.config import ConfigProvider
from robo_retry_kit.drivers import DriverRegistry, driver_registry
from robo_retry_kit.listener import ExecutionListener, ListenerOutcome, TestInvocation
from robo_retry_kit.retry import FailureClassifier, NoRetry, RetryPolicy, failure_classifier
from robo_retry_kit.session import ReportEntry, ReportSession, ReportWriter, Status

__version__ = RoboHelper.get_version()

__all__ = [
    "ConfigProvider",
    "DriverRegistry",
    "ExecutionListener",
    "FailureCapturePipeline",
    "FailureClassifier",
    "ListenerOutcome",
    "NoRetry",
    "ReportEntry",
    "ReportSession",
    "ReportWriter",
    "RetryPolicy",
    "Status",
    "TestInvocation",
    "driver_registry",
    "failure_classifier",
]
