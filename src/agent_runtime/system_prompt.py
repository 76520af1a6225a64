from __future__ import annotations

from agent_runtime.tool import CONTROL_ROLE, IMPL_ROLE, ToolDefinition

_ROLE_BRIEFS = {
    CONTROL_ROLE: (
        "You are the control agent. You plan and review work, manage chains and tasks, "
        "and delegate implementation to impl agents. You do not edit source code yourself."
    ),
    IMPL_ROLE: (
        "You are the implementation agent. You implement the assigned task inside the "
        "workspace, keeping changes within the files your role may touch."
    ),
}


def build_system_prompt(
    role: str,
    *,
    session_id: str,
    workspace_root: str,
    tools: list[ToolDefinition],
    chain_id: str | None = None,
    task_id: str | None = None,
) -> str:
    brief = _ROLE_BRIEFS.get(role, f"You are an agent acting in the {role} role.")
    prompt = f"""\
{brief}

Use the available tools to accomplish the work. Think step by step about which tools you need.
Tool calls are checked against governance rules before they run. If a call is denied, read the \
reason and choose a different approach instead of retrying the same call.

When the work is complete, briefly summarize what you did."""

    if tools:
        tool_lines = "\n".join(f"- {t.name}: {t.description}" for t in tools)
        prompt += f"\n\nAvailable tools:\n{tool_lines}"

    context_lines = [f"Session: {session_id}", f"Workspace: {workspace_root}"]
    if chain_id:
        context_lines.append(f"Chain: {chain_id}")
    if task_id:
        context_lines.append(f"Task: {task_id}")
    prompt += "\n\n" + "\n".join(context_lines)
    return prompt


def build_opening_message(
    role: str,
    chain_id: str | None = None,
    task_id: str | None = None,
    parent_context: str | None = None,
) -> str:
    if role == IMPL_ROLE and chain_id and task_id:
        parts = [
            f"You are assigned to work on task {task_id} in chain {chain_id}.",
            "Please read the task file and implement according to the acceptance criteria.",
        ]
    elif role == CONTROL_ROLE and chain_id:
        parts = [
            f"You are managing chain {chain_id}.",
            "Please review the chain status and take appropriate action.",
        ]
    elif role == CONTROL_ROLE:
        parts = ["You are a control agent ready to manage work.", "What would you like me to help you with?"]
    else:
        parts = ["You are an implementation agent ready to work.", "What would you like me to help you with?"]

    message = " ".join(parts)
    if parent_context:
        message += f"\n\nAdditional context from parent session:\n{parent_context}"
    return message
