import os
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..RoboHelper import format_duration


TEMPLATE_NAME = "html_template.html"


def _environment(template_dir):
    env = Environment(
        loader=FileSystemLoader(str(template_dir)),
        autoescape=select_autoescape(["html", "xml"]),
    )
    env.globals["format_duration"] = format_duration
    return env


def get_html_template():
    """
    Returns the Jinja2 template object for the HTML report.
    Checks for source template in project working directory first, then falls back to package template.
    """
    # Check for source template in current working directory only
    source_template_dir = Path.cwd() / "templates" / "html_report"
    source_template_file = source_template_dir / TEMPLATE_NAME

    if source_template_file.exists():
        return _environment(source_template_dir).get_template(TEMPLATE_NAME)

    # Fall back to package template inside robo_retry_kit directory
    package_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
    package_template_dir = os.path.join(package_root, "templates", "html_report")
    return _environment(package_template_dir).get_template(TEMPLATE_NAME)


def render_html_report(template, report_title, summary, entries, system_info=None):
    """
    Render the HTML report for the given entries.

    Args:
        template: Jinja2 template returned by get_html_template()
        report_title: Title shown in the page header
        summary: Dictionary produced by create_report_summary()
        entries: List of ReportEntry objects, one section each
        system_info: Optional mapping of run metadata (OS, browser, ...)

    Returns:
        Rendered HTML as a string
    """
    return template.render(
        report_title=report_title,
        summary=summary,
        entries=entries,
        system_info=system_info or {},
    )


def write_html_report(html_content, report_path):
    report_path = Path(report_path)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    with open(report_path, "w", encoding="utf-8") as f:
        f.write(html_content)
    return report_path
