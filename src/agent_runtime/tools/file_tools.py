"""Workspace-scoped file tools: read, write, list and search."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from agent_runtime.tool import ExecutionContext, ToolDefinition, ToolResult

MAX_LIST_ENTRIES = 500
MAX_SEARCH_MATCHES = 100

_SKIP_DIRS = frozenset({".git", ".agent_runtime", "node_modules", "__pycache__", ".venv"})


def _resolve(workspace_root: str, path: str) -> Path:
    root = Path(workspace_root).resolve()
    target = (root / path.lstrip("/")).resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"Path {path} is outside the workspace")
    return target


def _relative(workspace_root: str, target: Path) -> str:
    return target.relative_to(Path(workspace_root).resolve()).as_posix()


def _glob(workspace_root: str, directory: Path, pattern: str) -> list[Path]:
    """Glob under ``directory``, keeping only matches that resolve inside the workspace."""
    root = Path(workspace_root).resolve()
    parts = Path(pattern).parts
    if Path(pattern).is_absolute() or ".." in parts:
        raise ValueError(f"Pattern {pattern} is outside the workspace")
    return [entry for entry in sorted(directory.glob(pattern)) if root in entry.resolve().parents]


READ_FILE_TOOL = ToolDefinition(
    name="read_file",
    description="Read a text file from the workspace. Optionally limit to a line range.",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path relative to the workspace root"},
            "start_line": {"type": "integer", "description": "First line to return (1-based)"},
            "end_line": {"type": "integer", "description": "Last line to return (inclusive)"},
        },
        "required": ["path"],
    },
    category="file",
)

WRITE_FILE_TOOL = ToolDefinition(
    name="write_file",
    description=(
        "Write content to a workspace file, creating it if it doesn't exist. "
        "Empty content deletes the file."
    ),
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path relative to the workspace root"},
            "content": {"type": "string", "description": "The content to write to the file"},
        },
        "required": ["path", "content"],
    },
    category="file",
    mutates=True,
    file_action="modify",
)

LIST_FILES_TOOL = ToolDefinition(
    name="list_files",
    description="List files in a workspace directory, optionally filtered by a glob pattern.",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory relative to the workspace root"},
            "pattern": {"type": "string", "description": "Glob pattern, e.g. '**/*.py'"},
        },
    },
    category="file",
)

SEARCH_FILES_TOOL = ToolDefinition(
    name="search_files",
    description="Search workspace files for a regular expression and return matching lines.",
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Regular expression to search for"},
            "path": {"type": "string", "description": "Directory relative to the workspace root"},
            "file_pattern": {"type": "string", "description": "Glob limiting which files are searched"},
        },
        "required": ["query"],
    },
    category="file",
)


async def execute_read_file(args: dict[str, Any], context: ExecutionContext) -> ToolResult:
    path = args.get("path")
    if not path:
        return ToolResult(success=False, error="Missing required parameter: path")
    try:
        target = _resolve(context.workspace_root, path)
    except ValueError as ex:
        return ToolResult(success=False, error=str(ex))
    if not target.is_file():
        return ToolResult(success=False, error=f"File not found: {path}")

    try:
        lines = target.read_text(encoding="utf-8").splitlines()
    except UnicodeDecodeError:
        return ToolResult(success=False, error=f"File is not valid UTF-8 text: {path}")

    start = max(1, int(args.get("start_line") or 1))
    end = min(len(lines), int(args.get("end_line") or len(lines)))
    selected = lines[start - 1:end]
    return ToolResult(
        success=True,
        data={
            "path": path,
            "content": "\n".join(selected),
            "lines_returned": len(selected),
            "total_lines": len(lines),
        },
    )


async def execute_write_file(args: dict[str, Any], context: ExecutionContext) -> ToolResult:
    path = args.get("path")
    content = args.get("content")
    if not path:
        return ToolResult(success=False, error="Missing required parameter: path")
    try:
        target = _resolve(context.workspace_root, path)
    except ValueError as ex:
        return ToolResult(success=False, error=str(ex))

    if not isinstance(content, str) or content.strip() == "":
        if not target.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        target.unlink()
        return ToolResult(success=True, data={"path": path, "action": "deleted", "bytes": 0})

    existed = target.exists()
    target.parent.mkdir(parents=True, exist_ok=True)
    encoded = content.encode("utf-8")
    target.write_bytes(encoded)
    return ToolResult(
        success=True,
        data={"path": path, "action": "modified" if existed else "created", "bytes": len(encoded)},
    )


async def execute_list_files(args: dict[str, Any], context: ExecutionContext) -> ToolResult:
    path = args.get("path") or "."
    pattern = args.get("pattern") or "*"
    try:
        directory = _resolve(context.workspace_root, path)
    except ValueError as ex:
        return ToolResult(success=False, error=str(ex))
    if not directory.is_dir():
        return ToolResult(success=False, error=f"Directory not found: {path}")

    try:
        entries = _glob(context.workspace_root, directory, pattern)
    except ValueError as ex:
        return ToolResult(success=False, error=str(ex))

    files: list[str] = []
    for entry in entries:
        if _SKIP_DIRS.intersection(entry.relative_to(directory).parts):
            continue
        files.append(_relative(context.workspace_root, entry) + ("/" if entry.is_dir() else ""))
        if len(files) >= MAX_LIST_ENTRIES:
            break
    return ToolResult(
        success=True,
        data={"path": path, "files": files, "count": len(files), "truncated": len(files) >= MAX_LIST_ENTRIES},
    )


async def execute_search_files(args: dict[str, Any], context: ExecutionContext) -> ToolResult:
    query = args.get("query")
    if not query:
        return ToolResult(success=False, error="Missing required parameter: query")
    try:
        regex = re.compile(query)
    except re.error as ex:
        return ToolResult(success=False, error=f"Invalid search pattern: {ex}")

    path = args.get("path") or "."
    try:
        directory = _resolve(context.workspace_root, path)
    except ValueError as ex:
        return ToolResult(success=False, error=str(ex))
    if not directory.is_dir():
        return ToolResult(success=False, error=f"Directory not found: {path}")

    try:
        candidates = _glob(context.workspace_root, directory, args.get("file_pattern") or "**/*")
    except ValueError as ex:
        return ToolResult(success=False, error=str(ex))

    matches: list[dict[str, Any]] = []
    total = 0
    for candidate in candidates:
        if not candidate.is_file() or _SKIP_DIRS.intersection(candidate.relative_to(directory).parts):
            continue
        try:
            text = candidate.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        for number, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                total += 1
                if len(matches) < MAX_SEARCH_MATCHES:
                    matches.append({
                        "file": _relative(context.workspace_root, candidate),
                        "line": number,
                        "text": line.strip()[:200],
                    })
    return ToolResult(
        success=True,
        data={"query": query, "path": path, "matches": matches, "total_matches": total},
    )
