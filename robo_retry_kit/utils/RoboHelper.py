# Shared helpers for configuration lookups, naming and report summaries
import getpass
import logging
import os
import platform
import re
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version
from typing import Any


logger = logging.getLogger(__name__)
logger.propagate = True

SCREENSHOT_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
REPORT_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


def get_env(key: str, default: Any = "") -> Any:
    value = os.getenv(key)
    if value is not None:
        value = value.strip()
        return value if value else default
    return default


def sanitize_file_name(name: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with an underscore."""
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)


def screenshot_timestamp(moment: datetime) -> str:
    """Format a timestamp as yyyy-MM-dd_HH-mm-ss-SSS (millisecond precision)."""
    return f"{moment.strftime(SCREENSHOT_TIMESTAMP_FORMAT)}-{moment.microsecond // 1000:03d}"


def report_timestamp(moment: datetime) -> str:
    return moment.strftime(REPORT_TIMESTAMP_FORMAT)


def format_duration(seconds):
    """
    Convert duration in seconds to HH:MM:SS format string.

    Durations below one second are rendered in milliseconds so that fast
    tests do not all show up as 00:00:00.

    Args:
        seconds: Duration in seconds (float or int)

    Returns:
        Formatted duration string
    """
    if isinstance(seconds, (float, int)):
        if 0 <= seconds < 1:
            return f"{int(seconds * 1000)} ms"
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        secs = int(seconds % 60)
        return f"{hours:02}:{minutes:02}:{secs:02}"
    return str(seconds)


def build_system_info(config) -> dict:
    """Collect the run metadata shown in the report header."""
    try:
        user = getpass.getuser()
    except Exception:
        user = "unknown"
    return {
        "OS": f"{platform.system()} {platform.release()}".strip(),
        "Python Version": platform.python_version(),
        "Browser": config.get_property("browser", "chrome"),
        "Environment": config.get_property("environment", "dev"),
        "User": user,
    }


def create_report_summary(entries, start_time=None, end_time=None):
    """
    Create summary object for HTML report template.

    Args:
        entries: List of ReportEntry objects
        start_time: Datetime object for test session start
        end_time: Datetime object for test session end (defaults to now)

    Returns:
        Dictionary containing summary statistics for the report
    """
    end_time = end_time or datetime.now()
    if start_time:
        duration_str = str(end_time - start_time).split(".")[0]  # Remove microseconds
    else:
        duration_str = ""

    counts = {"pass": 0, "fail": 0, "skip": 0, "warn": 0}
    for entry in entries:
        if entry.status is not None and entry.status.value in counts:
            counts[entry.status.value] += 1

    total = len(entries)
    return {
        "total": total,
        "duration": duration_str,
        "passed": counts["pass"],
        "failed": counts["fail"],
        "skipped": counts["skip"],
        "warned": counts["warn"],
        "retried": sum(entry.retries for entry in entries),
        "pass_rate": (counts["pass"] / total) * 100 if total else 0.0,
        "generated_date": end_time.strftime("%m-%d-%Y"),
        "generated_time": end_time.strftime("%I:%M:%S %p"),
    }


def get_version():
    try:
        return version("robo-retry-kit")
    except PackageNotFoundError:
        return "0.0.0"
