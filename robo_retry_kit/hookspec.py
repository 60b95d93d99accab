"""
Hook specifications for robo_retry_kit plugin.
These hooks allow source projects to customize the reporting behavior.
Hook names carry the pytest_ prefix so that conftest.py implementations are
discovered by the pytest plugin manager.
"""

import pytest


@pytest.hookspec
def pytest_robo_report_entry_started(entry, item):
    """
    Called once per test, right after its report entry is created.

    Source projects can implement this hook in their conftest.py to:
    - Add categories (e.g. Jira IDs or features) to the entry
    - Log project-specific metadata lines into the entry
    - Replace the description shown in the report

    Args:
        entry: ReportEntry bound to the test's execution context
        item: pytest Item being executed

    Returns:
        None. Return values are ignored.

    Example in source project's conftest.py:
        def pytest_robo_report_entry_started(entry, item):
            marker = item.get_closest_marker("jira")
            if marker:
                entry.categories.append(marker.args[0])
                entry.info(f"Jira: {marker.args[0]}")
    """


@pytest.hookspec
def pytest_robo_html_content_ready(config, html_content, report_path):
    """
    Hook specification for source projects to receive generated HTML report content.

    This hook is called after the HTML report is successfully generated and saved.
    Source projects can implement this hook in their conftest.py to:
    - Send HTML report as email attachment
    - Upload report to cloud storage
    - Post-process or transform the HTML content

    Args:
        config: Pytest config object with access to options and settings
        html_content: Complete HTML content as string
        report_path: Absolute path to the saved HTML report file

    Returns:
        None. This is a notification hook, return values are ignored.
    """
