"""Loguru sinks for the runtime.

Every record carries ``extra["session"]``: the id of the session whose loop
emitted it, or ``-`` outside any session. Nested sessions override it for
the duration of the child run.
"""

from __future__ import annotations

import sys
from contextlib import AbstractContextManager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

NO_SESSION = "-"

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <magenta>{extra[session]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[session]} | {name}:{function}:{line} - {message}"

_DEFAULT_PATHS = {
    "file": ".agent_runtime/logs/agent.log",
    "json": ".agent_runtime/logs/agent.jsonl",
}

DEFAULT_SINKS: list[dict[str, Any]] = [{"type": "console"}, {"type": "file"}]


@dataclass(frozen=True)
class LogSink:
    kind: str
    level: str
    path: str | None = None
    rotation: str = "10 MB"
    retention: int = 3
    # Only records emitted while this session id is active reach the sink.
    session: str | None = None

    def describe(self) -> str:
        target = "stderr" if self.kind == "console" else self.path
        scope = f", session {self.session}" if self.session else ""
        return f"{self.kind} ({target}, {self.level}{scope})"


def parse_sinks(level: str, entries: list[dict[str, Any]]) -> list[LogSink]:
    """Turn ``LogConsumers`` entries into sinks. Unknown types are skipped with a warning."""
    sinks: list[LogSink] = []
    for entry in entries:
        kind = entry.get("type", "")
        if kind != "console" and kind not in _DEFAULT_PATHS:
            logger.warning(f"Unknown log consumer type: {kind!r}")
            continue
        sinks.append(LogSink(
            kind=kind,
            level=str(entry.get("level", level)).upper(),
            path=None if kind == "console" else str(entry.get("path", _DEFAULT_PATHS[kind])),
            rotation=str(entry.get("rotation", "10 MB")),
            retention=int(entry.get("retention", 3)),
            session=entry.get("session"),
        ))
    return sinks


def _session_filter(session_id: str):
    return lambda record: record["extra"].get("session") == session_id


def _add_sink(sink: LogSink) -> int:
    options: dict[str, Any] = {"level": sink.level}
    if sink.session:
        options["filter"] = _session_filter(sink.session)

    if sink.kind == "console":
        return logger.add(sys.stderr, format=_CONSOLE_FORMAT, **options)

    Path(sink.path).parent.mkdir(parents=True, exist_ok=True)
    if sink.kind == "json":
        # serialize=True keeps extra["session"] as a structured field.
        return logger.add(sink.path, serialize=True, rotation=sink.rotation, retention=sink.retention, **options)
    return logger.add(sink.path, format=_FILE_FORMAT, rotation=sink.rotation, retention=sink.retention, **options)


def setup_logging(level: str = "INFO", consumers: list[dict[str, Any]] | None = None) -> list[str]:
    """Replace all loguru handlers with the configured sinks. Returns a description of each."""
    logger.remove()
    logger.configure(extra={"session": NO_SESSION})

    sinks = parse_sinks(level, DEFAULT_SINKS if consumers is None else consumers)
    for sink in sinks:
        _add_sink(sink)
    return [sink.describe() for sink in sinks]


def session_log_context(session_id: str) -> AbstractContextManager:
    """Tag every record logged inside the block (including awaited tasks) with ``session_id``."""
    return logger.contextualize(session=session_id)
