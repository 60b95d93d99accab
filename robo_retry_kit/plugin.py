"""
Robo Retry Kit - Pytest Plugin
Retries failed tests, captures a screenshot on the terminal failure and
writes one HTML report per session.

PYTEST HOOK EXECUTION ORDER (Session Lifecycle):
=====================================================

PHASE 1: SESSION INITIALIZATION
1. pytest_addhooks              - Register robo_retry_kit hook specifications
2. pytest_addoption             - Register command-line options
3. pytest_configure             - Build the configuration provider and execution listener
4. pytest_report_header         - Add retry/screenshot settings to the header
5. pytest_sessionstart          - Create the shared report writer (suite start)

PHASE 2: TEST EXECUTION (per test - repeated for each test)
6. pytest_runtest_protocol      - Run the test, re-running it while a retry is pending
7. pytest_runtest_makereport    - Feed setup/call/teardown results to the listener
8. pytest_report_teststatus     - Show intermediate failed attempts as RERUN

PHASE 3: XDIST WORKER COORDINATION (parallel execution only)
9. pytest_testnodedown          - Merge worker report entries into the controller

PHASE 4: SESSION FINALIZATION
10. pytest_sessionfinish        - Flush the report once (suite finish)
11. pytest_terminal_summary     - Print totals, retries and the report location

CUSTOM HOOKS (see hookspec.py):
========================================
- pytest_robo_report_entry_started  - Enrich a report entry when a test starts
- pytest_robo_html_content_ready    - Receive the generated HTML report
"""

import logging
import threading

import pytest
from _pytest.runner import runtestprotocol

from . import config as cfg
from . import hookspec
from .drivers import create_chrome_driver, driver_registry, quit_driver
from .exceptions import ReportWriterError
from .listener import ExecutionListener, InvocationState, ListenerOutcome
from .retry import DEFAULT_NO_RETRY_REASON, NoRetry, read_max_attempts


logger = logging.getLogger(__name__)
logger.propagate = True

_MASTER_CONFIG = None  # Controller config, target of xdist worker aggregation

RERUN_OUTCOME = "rerun"
WORKER_OUTPUT_KEY = "robo_report_entries"


def _get_listener(config):
    return getattr(config, "_robo_listener", None)


def _is_worker(config):
    return hasattr(config, "workerinput")


# ============================================================================
# Session initialization
# ============================================================================


def pytest_addhooks(pluginmanager):
    pluginmanager.add_hookspecs(hookspec)


def pytest_addoption(parser):
    """
    Register command-line options for the robo-retry-kit plugin.

    Every option overrides the matching configuration property.
    """
    group = parser.getgroup("robo-retry-kit", "Robo Retry Kit Options")
    group.addoption(
        "--robo-report",
        action="store",
        dest="robo_report_path",
        default=None,
        help="Directory for the HTML report (property report.path, default: reports)",
    )
    group.addoption(
        "--robo-report-title",
        action="store",
        dest="robo_report_title",
        default=None,
        help="Title for the HTML report (property report.title)",
    )
    group.addoption(
        "--robo-retry-count",
        action="store",
        dest="robo_retry_count",
        type=int,
        default=None,
        help="Maximum number of retries per failing test (property retry.count, default: 2)",
    )
    group.addoption(
        "--robo-screenshot-dir",
        action="store",
        dest="robo_screenshot_dir",
        default=None,
        help="Directory for failure screenshots (property screenshot.path)",
    )
    group.addoption(
        "--robo-no-screenshot",
        action="store_true",
        dest="robo_no_screenshot",
        default=False,
        help="Disable screenshots on failure (property screenshot.on.failure)",
    )


def pytest_configure(config):
    """
    Initialize the plugin.

    Config attributes created:
    - config._robo_listener: ExecutionListener for this process
    - config._robo_report_result: Flush result, set at session finish
    """
    config.addinivalue_line(
        "markers",
        "no_retry(reason=None): never retry this test when it fails",
    )

    overrides = {
        cfg.REPORT_PATH: config.getoption("robo_report_path"),
        cfg.REPORT_TITLE: config.getoption("robo_report_title"),
        cfg.RETRY_COUNT: config.getoption("robo_retry_count"),
        cfg.SCREENSHOT_PATH: config.getoption("robo_screenshot_dir"),
    }
    if config.getoption("robo_no_screenshot"):
        overrides[cfg.SCREENSHOT_ON_FAILURE] = "false"

    provider = cfg.ConfigProvider(
        overrides={key: value for key, value in overrides.items() if value is not None}
    )
    config._robo_listener = ExecutionListener(provider)
    config._robo_report_result = None

    global _MASTER_CONFIG
    if not _is_worker(config):
        _MASTER_CONFIG = config


def pytest_unconfigure(config):
    global _MASTER_CONFIG
    if _MASTER_CONFIG is config:
        _MASTER_CONFIG = None


def pytest_report_header(config):
    # Only run in master process
    if _is_worker(config):
        return None
    listener = _get_listener(config)
    if listener is None:
        return None

    from . import __version__

    provider = listener.config
    screenshots = provider.get_boolean_property(cfg.SCREENSHOT_ON_FAILURE, True)
    return [
        f"Robo Retry Kit v{__version__}",
        f"Environment:    {provider.get_property(cfg.ENVIRONMENT, 'dev')}",
        f"Browser:        {provider.get_property(cfg.BROWSER, 'chrome')}",
        f"Retry count:    {read_max_attempts(provider)}",
        f"Screenshots:    {'on failure' if screenshots else 'disabled'}",
    ]


def pytest_sessionstart(session):
    """Suite start: create the shared report writer."""
    listener = _get_listener(session.config)
    if listener is None:
        return
    try:
        listener.on_suite_start(session.config.rootpath.name)
    except ReportWriterError as e:
        logger.error(f"Reporting could not be initialized: {e}", exc_info=True)
        pytest.exit(f"robo-retry-kit: {e}", returncode=pytest.ExitCode.INTERNAL_ERROR)


# ============================================================================
# Test execution
# ============================================================================


def _build_invocation(item, listener):
    marker = item.get_closest_marker("no_retry")
    no_retry = None
    if marker is not None:
        reason = marker.kwargs.get("reason") or (marker.args[0] if marker.args else None)
        no_retry = NoRetry(reason or DEFAULT_NO_RETRY_REASON)

    cls = getattr(item, "cls", None)
    if cls is not None:
        class_name = f"{cls.__module__}.{cls.__qualname__}"
    else:
        module = getattr(item, "module", None)
        class_name = module.__name__ if module is not None else item.nodeid.split("::")[0]

    function = getattr(item, "function", None)
    docstring = (getattr(function, "__doc__", None) or "").strip()
    description = docstring.splitlines()[0] if docstring else ""

    return listener.create_invocation(
        test_name=item.name,
        class_name=class_name,
        description=description,
        node_id=item.nodeid,
        no_retry=no_retry,
        context_id=threading.get_ident(),
    )


def _notify_entry_started(item, entry):
    try:
        item.config.hook.pytest_robo_report_entry_started(entry=entry, item=item)
    except Exception as e:
        logger.error(
            f"Error calling pytest_robo_report_entry_started for test {item.nodeid}: {e}",
            exc_info=True,
        )


@pytest.hookimpl(tryfirst=True)
def pytest_runtest_protocol(item, nextitem):
    """
    Run one test, executing it again for as long as the listener leaves the
    invocation in RETRYING.

    Every attempt is reported to pytest; attempts that will be retried carry
    the "rerun" outcome so they are not counted as failures.
    """
    listener = _get_listener(item.config)
    if listener is None:
        return None

    invocation = _build_invocation(item, listener)
    item._robo_invocation = invocation

    while True:
        item.ihook.pytest_runtest_logstart(nodeid=item.nodeid, location=item.location)
        entry = listener.on_test_start(invocation)
        if entry is not None and invocation.attempt == 1:
            _notify_entry_started(item, entry)

        reports = runtestprotocol(item, nextitem=nextitem, log=False)
        for report in reports:
            item.ihook.pytest_runtest_logreport(report=report)
        item.ihook.pytest_runtest_logfinish(nodeid=item.nodeid, location=item.location)

        if invocation.state is not InvocationState.RETRYING:
            break

    return True


def _skip_reason(report):
    longrepr = report.longrepr
    if isinstance(longrepr, tuple) and len(longrepr) == 3:
        reason = str(longrepr[2])
        return reason[len("Skipped: "):] if reason.startswith("Skipped: ") else reason
    return str(longrepr) if longrepr else None


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Translate each phase report into a listener event.

    Runs while the test's fixtures are still alive, so a terminal failure in
    the call phase is screenshot before the driver fixture is torn down.
    """
    outcome = yield
    report = outcome.get_result()

    listener = _get_listener(item.config)
    invocation = getattr(item, "_robo_invocation", None)
    if listener is None or invocation is None:
        return

    error = call.excinfo.value if call.excinfo is not None else None

    if report.when == "setup":
        if report.skipped:
            listener.on_test_skip(invocation, _skip_reason(report))
        elif report.failed:
            # Fixture errors are terminal; only the test body is retried
            listener.on_test_failure(
                invocation, error, allow_retry=False, captured_log=report.caplog
            )

    elif report.when == "call":
        if hasattr(report, "wasxfail"):
            if report.skipped:
                listener.on_test_warning(invocation, f"Expected failure: {report.wasxfail}")
            else:
                listener.on_test_success(invocation)
        elif report.passed:
            listener.on_test_success(invocation)
        elif report.skipped:
            listener.on_test_skip(invocation, _skip_reason(report))
        elif report.failed:
            verdict = listener.on_test_failure(
                invocation,
                error,
                allow_retry=error is not None,
                captured_log=report.caplog,
            )
            if verdict is ListenerOutcome.RETRY:
                report.outcome = RERUN_OUTCOME

    elif report.when == "teardown":
        teardown_error = error if report.failed else None
        if invocation.state is InvocationState.RETRYING and report.failed:
            report.outcome = RERUN_OUTCOME
        listener.on_test_end(invocation, teardown_error=teardown_error)


def pytest_report_teststatus(report, config):
    if report.outcome != RERUN_OUTCOME:
        return None
    if report.when == "call":
        return "rerun", "R", ("RERUN", {"yellow": True})
    return "", "", ""


# ============================================================================
# XDIST worker coordination
# ============================================================================


@pytest.hookimpl(optionalhook=True)
def pytest_testnodedown(node, error):
    """
    Merge the report entries of a finished xdist worker into the controller.

    Called once per worker, in the controller process only.
    """
    config = getattr(node, "config", None) or _MASTER_CONFIG
    listener = _get_listener(config) if config is not None else None
    if listener is None:
        logger.warning("Master config not available for result aggregation")
        return

    worker_id = (
        node.workerinput.get("workerid", "unknown")
        if hasattr(node, "workerinput")
        else "unknown"
    )
    if error:
        logger.warning(f"Worker {worker_id} encountered error: {error}")

    output = getattr(node, "workeroutput", None) or {}
    imported = listener.report_session.import_entries(output.get(WORKER_OUTPUT_KEY, []))
    logger.info(f"Merged {imported} report entries from worker {worker_id}")


# ============================================================================
# Session finalization
# ============================================================================


@pytest.hookimpl(trylast=True)
def pytest_sessionfinish(session, exitstatus):
    """
    Suite finish: flush the report exactly once.

    xdist workers hand their entries to the controller instead of writing a
    report of their own.
    """
    config = session.config
    listener = _get_listener(config)
    if listener is None:
        return

    if _is_worker(config):
        config.workeroutput[WORKER_OUTPUT_KEY] = listener.report_session.export_entries()
        return

    result = listener.on_suite_finish(config.rootpath.name)
    config._robo_report_result = result
    if not result:
        return

    try:
        config.hook.pytest_robo_html_content_ready(
            config=config,
            html_content=result["html_content"],
            report_path=result["report_path"],
        )
    except Exception as hook_error:
        logger.warning(
            f"Hook pytest_robo_html_content_ready failed: {hook_error}",
            exc_info=True,
        )


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    # Only run in master process
    if _is_worker(config):
        return

    result = getattr(config, "_robo_report_result", None)
    if not result:
        return
    summary = result["summary"]

    terminalreporter.ensure_newline()
    terminalreporter.section("Robo Retry Kit Summary", sep="=")
    for line in (
        f"Total Tests:  {summary['total']}",
        f"Passed:       {summary['passed']}",
        f"Failed:       {summary['failed']}",
        f"Skipped:      {summary['skipped']}",
        f"Warnings:     {summary['warned']}",
        f"Retries:      {summary['retried']}",
    ):
        terminalreporter.write_line(line)
    if summary["total"] > 0:
        terminalreporter.write_line(f"Pass Rate:    {summary['pass_rate']:.1f}%")
    terminalreporter.write_line(f"Report:       {result['report_path']}")
    terminalreporter.ensure_newline()


# ============================================================================
# Pytest Fixtures (provided by plugin for all consuming projects)
# ============================================================================


@pytest.fixture(scope="function")
def driver(request):
    """
    Chrome WebDriver bound to the test's execution context.

    SCOPE: Function-scoped (created/destroyed for each test)

    While the test runs the driver is registered as the active browser
    session, which is what the failure screenshot is taken from.

    Configuration:
    - headless (env HEADLESS, default: N): run Chrome without a window

    Cleanup:
    - Releases the active-session binding
    - Calls driver.quit() and removes the temporary profile directory
    """
    listener = _get_listener(request.config)
    provider = listener.config if listener is not None else cfg.ConfigProvider()
    web_driver, profile_dir = create_chrome_driver(provider)
    context_id = threading.get_ident()
    driver_registry.bind(web_driver, context_id)

    # Register a finalizer to always clean up driver and profile directory
    def finalizer():
        driver_registry.release(context_id)
        quit_driver(web_driver, profile_dir)

    request.addfinalizer(finalizer)

    yield web_driver


@pytest.fixture(scope="function")
def report_entry(request):
    """
    Report entry of the running test, for adding custom log lines.

    Usage:
        def test_checkout(driver, report_entry):
            report_entry.info("Cart filled")
    """
    listener = _get_listener(request.config)
    if listener is None:
        return None
    return listener.report_session.current()
