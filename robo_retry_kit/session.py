"""
Report session: one report entry per running test, bound to the execution
context (thread) that runs it, and a single shared writer that renders every
entry into one HTML report at suite finish.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from . import config as cfg
from .exceptions import ReportWriterError
from .utils.RoboHelper import build_system_info, create_report_summary, report_timestamp
from .utils.reports.HtmlReportUtils import (
    get_html_template,
    render_html_report,
    write_html_report,
)


logger = logging.getLogger(__name__)
logger.propagate = True


def current_context_id():
    """Identity of the calling execution context."""
    return threading.get_ident()


class Status(str, Enum):
    """Terminal status of a report entry."""

    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"
    WARN = "warn"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


@dataclass
class LogLine:
    timestamp: datetime
    level: LogLevel
    message: str

    def to_dict(self):
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            level=LogLevel(data["level"]),
            message=data["message"],
        )


@dataclass
class Artifact:
    """A file attached to an entry, usually a failure screenshot."""

    path: str
    title: str = "Failure Screenshot"
    base64_data: Optional[str] = None

    def to_dict(self):
        return {"path": self.path, "title": self.title, "base64_data": self.base64_data}

    @classmethod
    def from_dict(cls, data):
        return cls(**data)


@dataclass
class ReportEntry:
    """Structured record of one test invocation's outcome, logs and artifacts."""

    name: str
    class_name: str = ""
    description: str = ""
    node_id: str = ""
    categories: List[str] = field(default_factory=list)
    logs: List[LogLine] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)
    status: Optional[Status] = None
    error_message: str = ""
    error_detail: str = ""
    captured_log: str = ""
    attempts_used: int = 1
    total_attempts: int = 1
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    duration: Optional[float] = None

    @property
    def retries(self) -> int:
        return max(self.attempts_used - 1, 0)

    @property
    def is_terminal(self) -> bool:
        return self.status is not None

    def log(self, level, message):
        self.logs.append(LogLine(datetime.now(), LogLevel(level), str(message)))

    def info(self, message):
        self.log(LogLevel.INFO, message)

    def warning(self, message):
        """Add a warning line without touching the terminal status."""
        self.log(LogLevel.WARNING, message)

    def mark(self, status, message=None):
        """Set the terminal status and log ``message``.

        Only the first terminal status sticks; returns False when the entry
        was already terminal.
        """
        status = Status(status)
        level = LogLevel.WARNING if status is Status.WARN else LogLevel(status.value)
        if message:
            self.log(level, message)
        if self.status is not None:
            if self.status is not status:
                logger.debug(
                    f"Entry {self.name} already marked {self.status.value}, "
                    f"ignoring {status.value}"
                )
            return False
        self.status = status
        return True

    def attach(self, path, title="Failure Screenshot", base64_data=None):
        artifact = Artifact(str(path), title, base64_data)
        self.artifacts.append(artifact)
        return artifact

    def finish(self, duration=None):
        self.end_time = datetime.now()
        if duration is not None:
            self.duration = duration
        elif self.duration is None:
            self.duration = (self.end_time - self.start_time).total_seconds()

    def to_dict(self):
        return {
            "name": self.name,
            "class_name": self.class_name,
            "description": self.description,
            "node_id": self.node_id,
            "categories": list(self.categories),
            "logs": [line.to_dict() for line in self.logs],
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "status": self.status.value if self.status else None,
            "error_message": self.error_message,
            "error_detail": self.error_detail,
            "captured_log": self.captured_log,
            "attempts_used": self.attempts_used,
            "total_attempts": self.total_attempts,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["logs"] = [LogLine.from_dict(line) for line in data.get("logs", [])]
        data["artifacts"] = [Artifact.from_dict(a) for a in data.get("artifacts", [])]
        data["status"] = Status(data["status"]) if data.get("status") else None
        data["start_time"] = datetime.fromisoformat(data["start_time"])
        if data.get("end_time"):
            data["end_time"] = datetime.fromisoformat(data["end_time"])
        return cls(**data)


class ReportWriter:
    """Process-wide accumulator of report entries, persisted once."""

    def __init__(self, report_dir, title=cfg.DEFAULT_REPORT_TITLE, system_info=None):
        self.title = title
        self.system_info = dict(system_info or {})
        self.start_time = datetime.now()
        try:
            self.report_dir = Path(report_dir)
            self.report_dir.mkdir(parents=True, exist_ok=True)
            self.report_path = (
                self.report_dir / f"Report_{report_timestamp(self.start_time)}.html"
            )
            self.template = get_html_template()
        except Exception as e:
            raise ReportWriterError(f"Report writer initialization failed: {e}") from e

        self._entries = []
        self._lock = threading.Lock()
        self._result = None
        logger.info(f"Report writer initialized. Report path: {self.report_path}")

    @property
    def flushed(self) -> bool:
        return self._result is not None

    def create_entry(self, name, description="", class_name="", **kwargs):
        entry = ReportEntry(name=name, description=description, class_name=class_name, **kwargs)
        if class_name:
            entry.categories.append(class_name)
        with self._lock:
            self._entries.append(entry)
        return entry

    def add_entries(self, entries):
        with self._lock:
            self._entries.extend(entries)

    def entries(self):
        with self._lock:
            return list(self._entries)

    def flush(self):
        """Render and persist the report.

        Returns a dict with ``html_content`` and ``report_path``. Only the
        first call writes the file; later calls return the same result.
        """
        with self._lock:
            if self._result is not None:
                logger.debug("Report already flushed, skipping")
                return self._result
            entries = list(self._entries)
            summary = create_report_summary(entries, self.start_time)
            html_content = render_html_report(
                self.template, self.title, summary, entries, self.system_info
            )
            report_path = write_html_report(html_content, self.report_path)
            self._result = {
                "html_content": html_content,
                "report_path": str(report_path.absolute()),
                "summary": summary,
            }
        logger.info(f"HTML report generated: {self._result['report_path']}")
        return self._result


class ReportSession:
    """
    Manages the shared report writer and the per-context current entry.

    Each execution context (thread by default) owns one slot in the binding
    map; callers may pass an explicit ``context_id`` instead of relying on
    the calling thread.
    """

    def __init__(self, config=None, writer_factory=ReportWriter):
        self.config = config if config is not None else cfg.ConfigProvider(load_env=False)
        self._writer_factory = writer_factory
        self._writer = None
        self._writer_lock = threading.Lock()
        self._bindings = {}
        self._bindings_lock = threading.Lock()

    @property
    def writer(self):
        return self._writer

    def on_suite_start(self):
        """Create the shared writer if it does not exist yet.

        Raises ReportWriterError when the writer cannot be created.
        """
        with self._writer_lock:
            if self._writer is not None:
                return self._writer
            self._writer = self._writer_factory(
                self.config.get_property(cfg.REPORT_PATH, cfg.DEFAULT_REPORT_PATH),
                title=self.config.get_property(cfg.REPORT_TITLE, cfg.DEFAULT_REPORT_TITLE),
                system_info=build_system_info(self.config),
            )
            return self._writer

    def on_suite_finish(self):
        """Persist every accumulated entry. Safe with zero entries."""
        writer = self.on_suite_start()
        with self._bindings_lock:
            leaked = len(self._bindings)
        if leaked:
            logger.warning(f"{leaked} report entries still bound at suite finish")
        return writer.flush()

    def begin_entry(self, test_name, description="", class_name="", context_id=None, **kwargs):
        writer = self.on_suite_start()
        context_id = current_context_id() if context_id is None else context_id
        entry = writer.create_entry(test_name, description, class_name, **kwargs)
        with self._bindings_lock:
            previous = self._bindings.get(context_id)
            self._bindings[context_id] = entry
        if previous is not None:
            logger.debug(
                f"Context {context_id} still bound to entry '{previous.name}' "
                f"when '{test_name}' started; replacing binding"
            )
        logger.info(f"Created report entry: {test_name} with category: {class_name}")
        return entry

    def current(self, context_id=None):
        context_id = current_context_id() if context_id is None else context_id
        with self._bindings_lock:
            return self._bindings.get(context_id)

    def end_entry(self, context_id=None):
        """Clear the context's binding and return the entry that was bound."""
        context_id = current_context_id() if context_id is None else context_id
        with self._bindings_lock:
            return self._bindings.pop(context_id, None)

    def bound_contexts(self):
        with self._bindings_lock:
            return list(self._bindings)

    def export_entries(self):
        """Serializable copy of every entry (pytest-xdist worker output)."""
        if self._writer is None:
            return []
        return [entry.to_dict() for entry in self._writer.entries()]

    def import_entries(self, payload):
        """Merge entries exported by another process into the shared writer."""
        writer = self.on_suite_start()
        entries = []
        for data in payload or []:
            try:
                entries.append(ReportEntry.from_dict(data))
            except Exception as e:
                logger.error(f"Discarding malformed report entry {data!r}: {e}", exc_info=True)
        writer.add_entries(entries)
        return len(entries)
