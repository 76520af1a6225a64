from __future__ import annotations

from typing import Any

from loguru import logger

from agent_runtime.tool import CONTROL_ROLE, ChildSessionRequest, ExecutionContext, ToolDefinition, ToolResult

SPAWN_IMPL_SESSION_TOOL = ToolDefinition(
    name="spawn_impl_session",
    description=(
        "Spawn a nested implementation agent session to work on a specific task. "
        "The impl agent runs with its own isolated context and returns results when complete."
    ),
    parameters={
        "type": "object",
        "properties": {
            "chain_id": {"type": "string", "description": "Chain ID the task belongs to"},
            "task_id": {"type": "string", "description": "Task ID to assign to the impl agent"},
            "context": {"type": "string", "description": "Additional instructions for the impl agent"},
        },
        "required": ["chain_id", "task_id"],
    },
    allowed_roles=(CONTROL_ROLE,),
    category="session",
)


async def execute_spawn_impl_session(args: dict[str, Any], context: ExecutionContext) -> ToolResult:
    chain_id = args.get("chain_id")
    task_id = args.get("task_id")
    if not chain_id:
        return ToolResult(success=False, error="Missing required parameter: chain_id")
    if not task_id:
        return ToolResult(success=False, error="Missing required parameter: task_id")

    if context.child_spawner is None:
        return ToolResult(
            success=False,
            error="Unsupported: nested sessions are not available in this runtime",
            data={"unsupported": True, "chain_id": chain_id, "task_id": task_id},
        )

    next_depth = context.nesting_depth + 1
    if next_depth > context.max_nesting_depth:
        return ToolResult(
            success=False,
            error=(
                f"Maximum nesting depth ({context.max_nesting_depth}) would be exceeded. "
                f"Current depth: {context.nesting_depth}"
            ),
            data={"current_depth": context.nesting_depth, "max_depth": context.max_nesting_depth},
        )

    logger.info(f"Spawning impl session for task {task_id} in chain {chain_id} (depth {next_depth})")
    try:
        result = await context.child_spawner.spawn(
            ChildSessionRequest(chain_id=chain_id, task_id=task_id, context=args.get("context"))
        )
    except Exception as ex:
        logger.error(f"Failed to spawn child session: {ex}")
        return ToolResult(
            success=False,
            error=f"Failed to spawn child session: {ex}",
            data={"chain_id": chain_id, "task_id": task_id},
        )

    data = {
        "child_session_id": result.session_id,
        "iterations": result.iterations,
        "tokens_used": result.tokens_used,
    }
    if result.success:
        data["summary"] = result.summary
        return ToolResult(success=True, data=data)
    return ToolResult(success=False, error=result.error or "Child session failed", data=data)
