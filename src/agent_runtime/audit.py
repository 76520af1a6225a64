"""Append-only JSONL audit trail of file tool operations."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

AUDITED_TOOLS = frozenset({"read_file", "write_file", "list_files", "search_files"})


class AuditLogger:
    def __init__(self, session_id: str, workspace_root: str | Path):
        self._session_id = session_id
        self._path = Path(workspace_root) / ".agent_runtime" / "metrics" / f"audit-{session_id}.jsonl"

    @property
    def path(self) -> Path:
        return self._path

    @staticmethod
    def should_log(tool_name: str) -> bool:
        return tool_name in AUDITED_TOOLS

    async def log(self, entry: dict[str, Any]) -> None:
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "session": self._session_id,
            **{k: v for k, v in entry.items() if v is not None},
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except OSError as ex:
            logger.warning(f"Failed to write audit entry to {self._path}: {ex}")

    def read_entries(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        entries: list[dict[str, Any]] = []
        with open(self._path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries
