"""
Utility functions for robo-retry-kit
"""

from .RoboHelper import (
    get_env,
    format_duration,
    sanitize_file_name,
    create_report_summary,
    build_system_info,
)

__all__ = [
    "get_env",
    "format_duration",
    "sanitize_file_name",
    "create_report_summary",
    "build_system_info",
]
