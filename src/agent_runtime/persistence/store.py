from __future__ import annotations

import json
import os
import time
from pathlib import Path
from typing import Any

from loguru import logger

from agent_runtime.persistence.models import SessionSummary


class SessionStore:
    """One pretty-printed JSON file per session under ``.agent_runtime/sessions``."""

    def __init__(self, workspace_root: str | Path):
        self._directory = Path(workspace_root) / ".agent_runtime" / "sessions"

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, session_id: str) -> Path:
        return self._directory / f"{session_id}.json"

    def write(self, data: dict[str, Any]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(data["id"])
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_path, path)

    def read(self, session_id: str) -> dict[str, Any] | None:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def list_summaries(self) -> list[SessionSummary]:
        if not self._directory.exists():
            return []

        summaries: list[SessionSummary] = []
        for path in self._directory.glob("*.json"):
            try:
                with open(path, encoding="utf-8") as f:
                    raw = json.load(f)
                summaries.append(_summary_from_dict(raw))
            except (OSError, ValueError, KeyError, TypeError) as ex:
                logger.debug(f"Skipping unreadable session file {path.name}: {ex}")
        summaries.sort(key=lambda s: s.start_time, reverse=True)
        return summaries

    def cleanup(self, max_age_days: float, *, now: float | None = None) -> int:
        """Delete session files last modified more than ``max_age_days`` ago."""
        if not self._directory.exists():
            return 0

        cutoff = (time.time() if now is None else now) - max_age_days * 86_400
        deleted = 0
        for path in self._directory.glob("*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    deleted += 1
            except OSError as ex:
                logger.warning(f"Failed to remove session file {path.name}: {ex}")
        if deleted:
            logger.info(f"Removed {deleted} session file(s) older than {max_age_days} days")
        return deleted


def _summary_from_dict(raw: dict[str, Any]) -> SessionSummary:
    token_usage = raw.get("tokenUsage") or {}
    return SessionSummary(
        id=str(raw["id"]),
        role=str(raw["role"]),
        model=str(raw["model"]),
        status=str(raw.get("status", "running")),
        start_time=str(raw["startTime"]),
        end_time=raw.get("endTime"),
        outcome=raw.get("outcome"),
        chain_id=raw.get("chainId"),
        task_id=raw.get("taskId"),
        total_tokens=int(token_usage.get("total", 0)),
        message_count=len(raw.get("messages") or []),
        parent_session_id=raw.get("parentSessionId"),
    )
