from agent_runtime.tool import ToolDefinition, ToolHandler
from agent_runtime.tools.file_tools import (
    LIST_FILES_TOOL,
    READ_FILE_TOOL,
    SEARCH_FILES_TOOL,
    WRITE_FILE_TOOL,
    execute_list_files,
    execute_read_file,
    execute_search_files,
    execute_write_file,
)
from agent_runtime.tools.spawn_impl_session import SPAWN_IMPL_SESSION_TOOL, execute_spawn_impl_session

_BUILTINS: list[tuple[ToolDefinition, ToolHandler]] = [
    (READ_FILE_TOOL, execute_read_file),
    (WRITE_FILE_TOOL, execute_write_file),
    (LIST_FILES_TOOL, execute_list_files),
    (SEARCH_FILES_TOOL, execute_search_files),
    (SPAWN_IMPL_SESSION_TOOL, execute_spawn_impl_session),
]


def builtin_definitions() -> list[ToolDefinition]:
    return [definition for definition, _ in _BUILTINS]


def builtin_handlers() -> dict[str, ToolHandler]:
    return {definition.name: handler for definition, handler in _BUILTINS}


__all__ = [
    "LIST_FILES_TOOL",
    "READ_FILE_TOOL",
    "SEARCH_FILES_TOOL",
    "SPAWN_IMPL_SESSION_TOOL",
    "WRITE_FILE_TOOL",
    "builtin_definitions",
    "builtin_handlers",
]
