import asyncio
import copy
import json
import unittest
from typing import Any

from loguru import logger

from agent_runtime.agent import run_session
from agent_runtime.agent_config import LoopDependencies, SessionCallbacks, SessionConfig
from agent_runtime.audit import AuditLogger
from agent_runtime.checkpoint import ApprovalResult, CheckpointHandler
from agent_runtime.errors import ProviderError
from agent_runtime.governance import GovernanceGate
from agent_runtime.persistence import Session
from agent_runtime.provider import ChatResponse, ChatUsage
from agent_runtime.providers.anthropic_provider import to_anthropic_messages
from agent_runtime.retry import RetryConfig
from agent_runtime.roles import StaticRoleSource
from agent_runtime.shutdown import ShutdownCoordinator
from agent_runtime.tool import ToolCall
from agent_runtime.tool_executor import ToolExecutor
from agent_runtime.tool_registry import ToolRegistry
from agent_runtime.tools import builtin_definitions, builtin_handlers

from tests.persistence.base import WorkspaceTestCase


async def _no_sleep(_seconds: float) -> None:
    return None


def _response(
    content: str = "",
    *,
    calls: list[ToolCall] | None = None,
    stop: str = "end_turn",
    input_tokens: int = 10,
    output_tokens: int = 5,
) -> ChatResponse:
    return ChatResponse(
        content=content,
        tool_calls=list(calls or []),
        stop_reason=stop,
        usage=ChatUsage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def _tool_turn(name: str, **arguments) -> ChatResponse:
    return _response(calls=[ToolCall(id=f"toolu-{name}", name=name, arguments=arguments)], stop="tool_use")


def _tool_result_ids(messages: list[dict]) -> list[str]:
    _, converted = to_anthropic_messages(messages)
    return [
        block["tool_use_id"]
        for message in converted
        if message["role"] == "user" and isinstance(message["content"], list)
        for block in message["content"]
        if block.get("type") == "tool_result"
    ]


class _ScriptedProvider:
    def __init__(self, steps: list[Any]):
        self._steps = list(steps)
        self.calls = 0
        self.seen_messages: list[list[dict]] = []
        self.seen_tools: list[list[dict]] = []

    async def chat(self, messages: list[dict], tools: list[dict]) -> ChatResponse:
        self.calls += 1
        self.seen_messages.append(copy.deepcopy(messages))
        self.seen_tools.append(tools)
        step = self._steps.pop(0) if self._steps else _response("done")
        if isinstance(step, BaseException):
            raise step
        return step


class _GatedProvider:
    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def chat(self, messages: list[dict], tools: list[dict]) -> ChatResponse:
        self.entered.set()
        await self.release.wait()
        return _response("still working", stop="max_tokens")


class RunSessionTestCase(WorkspaceTestCase):
    def _config(self, role: str = "impl", **kwargs) -> SessionConfig:
        kwargs.setdefault("retry", RetryConfig(max_retries=3, base_delay_ms=1))
        return SessionConfig(role=role, workspace_root=str(self._workspace), model="gpt-4o", **kwargs)

    def _deps(self, provider, **kwargs) -> LoopDependencies:
        registry = ToolRegistry(builtin_definitions())
        return LoopDependencies(
            provider=provider,
            registry=registry,
            executor=ToolExecutor(builtin_handlers()),
            governance_gate=GovernanceGate(registry),
            store=self._store,
            retry_sleep=_no_sleep,
            **kwargs,
        )

    def _saved(self, session_id: str) -> dict:
        return self._store.read(session_id)


class TurnLoopTests(RunSessionTestCase):
    def test_simple_conversation_completes(self) -> None:
        provider = _ScriptedProvider([_response("All done.")])

        result = asyncio.run(run_session(self._config(), self._deps(provider)))

        self.assertTrue(result.success)
        self.assertEqual("end_turn", result.stop_reason)
        self.assertEqual(1, result.iterations)
        self.assertEqual(15, result.tokens_used.total)
        self.assertIsNone(result.error)

        saved = self._saved(result.session_id)
        self.assertEqual("completed", saved["status"])
        self.assertEqual("success", saved["outcome"])
        self.assertEqual(1, saved["lastTurnIndex"])
        self.assertEqual(["system", "user", "assistant"], [m["role"] for m in saved["messages"]])

    def test_initial_prompt(self) -> None:
        provider = _ScriptedProvider([_response("ok")])

        asyncio.run(run_session(self._config(chain_id="CHAIN-1", task_id="T-1"), self._deps(provider)))

        first = provider.seen_messages[0]
        self.assertEqual("system", first[0]["role"])
        self.assertIn("Available tools:", first[0]["content"])
        self.assertIn("You are assigned to work on task T-1 in chain CHAIN-1.", first[1]["content"])
        tool_names = {t["name"] for t in provider.seen_tools[0]}
        self.assertIn("write_file", tool_names)
        self.assertNotIn("spawn_impl_session", tool_names)

    def test_loop_logs_are_tagged_with_the_session(self) -> None:
        sessions: list[str] = []
        handler_id = logger.add(lambda message: sessions.append(message.record["extra"].get("session")), level="INFO")
        try:
            result = asyncio.run(run_session(self._config(), self._deps(_ScriptedProvider([_response("ok")]))))
        finally:
            logger.remove(handler_id)

        self.assertIn(result.session_id, sessions)

    def test_custom_system_prompt(self) -> None:
        provider = _ScriptedProvider([_response("ok")])

        asyncio.run(run_session(self._config(system_prompt="Be brief."), self._deps(provider)))

        self.assertEqual("Be brief.", provider.seen_messages[0][0]["content"])

    def test_recovers_from_transient_provider_errors(self) -> None:
        provider = _ScriptedProvider([
            ProviderError("rate limited", status=429),
            ProviderError("rate limited", status=429),
            _response("Recovered."),
        ])

        result = asyncio.run(run_session(self._config(), self._deps(provider)))

        self.assertTrue(result.success)
        self.assertEqual(3, provider.calls)
        self.assertEqual(1, result.iterations)

    def test_non_retryable_provider_error_fails_session(self) -> None:
        provider = _ScriptedProvider([ProviderError("invalid request", status=400)])

        result = asyncio.run(run_session(self._config(), self._deps(provider)))

        self.assertFalse(result.success)
        self.assertEqual("error", result.stop_reason)
        self.assertEqual(1, provider.calls)
        saved = self._saved(result.session_id)
        self.assertEqual("failed", saved["status"])
        self.assertFalse(saved["error"]["recoverable"])

    def test_exhausted_retries_leave_session_resumable(self) -> None:
        provider = _ScriptedProvider([ProviderError("unavailable", status=503)] * 2)

        result = asyncio.run(run_session(self._config(retry=RetryConfig(max_retries=1, base_delay_ms=1)), self._deps(provider)))

        self.assertEqual("error", result.stop_reason)
        self.assertEqual(2, provider.calls)
        self.assertTrue(self._saved(result.session_id)["error"]["recoverable"])

    def test_token_limit_stops_session(self) -> None:
        provider = _ScriptedProvider([_response("Big answer", input_tokens=400, output_tokens=200)])

        result = asyncio.run(run_session(self._config(max_tokens=500), self._deps(provider)))

        self.assertFalse(result.success)
        self.assertEqual("cost_limit", result.stop_reason)
        self.assertTrue(result.cost_snapshot.limits.exceeded)
        self.assertIn("Token limit exceeded", result.error)
        self.assertEqual("failed", self._saved(result.session_id)["status"])

    def test_max_iterations(self) -> None:
        provider = _ScriptedProvider([_response("thinking", stop="max_tokens")] * 3)

        result = asyncio.run(run_session(self._config(max_iterations=3), self._deps(provider)))

        self.assertFalse(result.success)
        self.assertEqual("max_iterations", result.stop_reason)
        self.assertEqual(3, result.iterations)
        self.assertEqual(3, self._saved(result.session_id)["lastTurnIndex"])

    def test_max_depth(self) -> None:
        provider = _ScriptedProvider([])

        result = asyncio.run(run_session(self._config(nesting_depth=3, max_nesting_depth=2), self._deps(provider)))

        self.assertEqual("max_depth", result.stop_reason)
        self.assertEqual(0, provider.calls)
        self.assertFalse(self._store.exists(result.session_id))


class ToolCallTests(RunSessionTestCase):
    def test_role_violation_is_denied_and_loop_continues(self) -> None:
        provider = _ScriptedProvider([
            _tool_turn("spawn_impl_session", chain_id="CHAIN-1", task_id="T-1"),
            _response("Understood, I cannot do that."),
        ])

        result = asyncio.run(run_session(self._config(), self._deps(provider)))

        self.assertTrue(result.success)
        self.assertEqual(2, provider.calls)
        self.assertEqual(1, len(result.tool_calls))
        record = result.tool_calls[0]
        self.assertFalse(record.allowed)
        self.assertEqual("Tool spawn_impl_session is not available to impl role", record.denial_reason)

        tool_message = provider.seen_messages[1][-1]
        self.assertEqual("tool", tool_message["role"])
        self.assertEqual("toolu-spawn_impl_session", tool_message["tool_call_id"])
        self.assertTrue(json.loads(tool_message["content"])["error"].startswith("DENIED: "))

    def test_allowed_tool_runs_and_is_audited(self) -> None:
        provider = _ScriptedProvider([
            _tool_turn("write_file", path="src/app.py", content="print('hi')\n"),
            _response("Wrote the file."),
        ])

        result = asyncio.run(run_session(self._config(), self._deps(provider)))

        self.assertTrue(result.success)
        self.assertTrue((self._workspace / "src" / "app.py").exists())
        self.assertEqual({"path": "src/app.py", "action": "created", "bytes": 12}, result.tool_calls[0].result["data"])

        entries = AuditLogger(result.session_id, self._workspace).read_entries()
        self.assertEqual(1, len(entries))
        self.assertEqual("create", entries[0]["action"])
        self.assertEqual("pass", entries[0]["governance"])

    def test_path_denial_is_audited(self) -> None:
        provider = _ScriptedProvider([
            _tool_turn("write_file", path="docs/tasks/T-1.md", content="done"),
            _response("ok"),
        ])

        result = asyncio.run(run_session(self._config(), self._deps(provider)))

        self.assertFalse((self._workspace / "docs").exists())
        entries = AuditLogger(result.session_id, self._workspace).read_entries()
        self.assertEqual("denied", entries[0]["result"])
        self.assertIn("docs/tasks/**", entries[0]["reason"])

    def test_audit_can_be_disabled(self) -> None:
        provider = _ScriptedProvider([_tool_turn("write_file", path="src/app.py", content="x"), _response("ok")])

        result = asyncio.run(run_session(self._config(), self._deps(provider, audit_enabled=False)))

        self.assertFalse(AuditLogger(result.session_id, self._workspace).path.exists())

    def test_dry_run_skips_execution(self) -> None:
        provider = _ScriptedProvider([_tool_turn("write_file", path="src/app.py", content="x"), _response("ok")])

        result = asyncio.run(run_session(self._config(dry_run=True), self._deps(provider)))

        self.assertTrue(result.success)
        self.assertFalse((self._workspace / "src" / "app.py").exists())
        self.assertEqual({"success": True, "data": {"dry_run": True}}, result.tool_calls[0].result)

    def test_dynamic_role(self) -> None:
        provider = _ScriptedProvider([_tool_turn("write_file", path="src/app.py", content="x"), _response("ok")])
        source = StaticRoleSource.from_tool_ids({"reviewer": ["read_file"]})

        result = asyncio.run(
            run_session(self._config(role_id="reviewer"), self._deps(provider, role_source=source))
        )

        self.assertEqual(["read_file"], [t["name"] for t in provider.seen_tools[0]])
        self.assertEqual("Tool write_file not allowed for role reviewer", result.tool_calls[0].denial_reason)

    def test_observers_are_notified_and_contained(self) -> None:
        started: list[str] = []
        completed: list[bool] = []

        def broken_on_message(message: dict) -> None:
            raise RuntimeError("observer bug")

        callbacks = SessionCallbacks(
            on_message=broken_on_message,
            on_tool_call=lambda call: started.append(call.name),
            on_tool_result=lambda call, record: completed.append(record.allowed),
        )
        provider = _ScriptedProvider([_tool_turn("read_file", path="missing.txt"), _response("ok")])

        result = asyncio.run(run_session(self._config(), self._deps(provider, callbacks=callbacks)))

        self.assertTrue(result.success)
        self.assertEqual(["read_file"], started)
        self.assertEqual([True], completed)
        self.assertFalse(result.tool_calls[0].result["success"])

    def test_nested_impl_session(self) -> None:
        provider = _ScriptedProvider([
            _tool_turn("spawn_impl_session", chain_id="CHAIN-1", task_id="T-1", context="Start with tests."),
            _response("Implemented."),
            _response("Child finished."),
        ])

        result = asyncio.run(run_session(self._config(role="control", chain_id="CHAIN-1"), self._deps(provider)))

        self.assertTrue(result.success)
        self.assertEqual(3, provider.calls)
        self.assertEqual(1, len(result.child_sessions))
        child = result.child_sessions[0]
        self.assertTrue(child.success)

        child_opening = provider.seen_messages[1][1]["content"]
        self.assertIn("task T-1 in chain CHAIN-1", child_opening)
        self.assertIn("Start with tests.", child_opening)

        tool_result = result.tool_calls[0].result
        self.assertTrue(tool_result["success"])
        self.assertEqual(child.session_id, tool_result["data"]["child_session_id"])

        parent_saved = self._saved(result.session_id)
        child_saved = self._saved(child.session_id)
        self.assertEqual([child.session_id], parent_saved["childSessionIds"])
        self.assertEqual(result.session_id, child_saved["parentSessionId"])
        self.assertEqual(1, child_saved["nestingDepth"])
        self.assertEqual("impl", child_saved["role"])


class CheckpointAndResumeTests(RunSessionTestCase):
    def _pause_on_approval(self) -> str:
        provider = _ScriptedProvider([_tool_turn("spawn_impl_session", chain_id="CHAIN-1", task_id="T-1")])
        checkpoint = CheckpointHandler(require_approval=True, approval_timeout_ms=10)

        result = asyncio.run(
            run_session(self._config(role="control"), self._deps(provider, checkpoint_handler=checkpoint))
        )

        self.assertEqual("paused", result.stop_reason)
        self.assertFalse(result.success)
        self.assertEqual(1, provider.calls)
        self.assertEqual("Action rejected: approval timeout", result.tool_calls[0].denial_reason)
        self.assertEqual([], result.child_sessions)
        self.assertEqual("paused", self._saved(result.session_id)["status"])
        return result.session_id

    def test_approval_timeout_pauses_session(self) -> None:
        self._pause_on_approval()

    def test_rejection_records_denial_and_continues(self) -> None:
        class _Reject:
            async def ask(self, context, prompt):
                return ApprovalResult(approved=False, reason="rejected")

        provider = _ScriptedProvider([_tool_turn("spawn_impl_session", chain_id="C", task_id="T"), _response("ok")])
        checkpoint = CheckpointHandler(require_approval=True, approval_timeout_ms=5000, responder=_Reject())

        result = asyncio.run(
            run_session(self._config(role="control"), self._deps(provider, checkpoint_handler=checkpoint))
        )

        self.assertTrue(result.success)
        self.assertEqual("Action rejected by human operator", result.tool_calls[0].denial_reason)

    def test_resume_paused_session(self) -> None:
        session_id = self._pause_on_approval()
        provider = _ScriptedProvider([_response("Picking up where I left off.")])

        result = asyncio.run(run_session(self._config(role="control", resume_session_id=session_id), self._deps(provider)))

        self.assertTrue(result.success)
        self.assertEqual(session_id, result.session_id)
        self.assertEqual(30, result.tokens_used.total)
        self.assertEqual(30, result.cost_snapshot.tokens.total)

        resumed_messages = provider.seen_messages[0]
        self.assertEqual("system", resumed_messages[0]["role"])
        self.assertEqual(1, sum(1 for m in resumed_messages if m["role"] == "system"))
        self.assertEqual("tool", resumed_messages[-1]["role"])

        saved = self._saved(session_id)
        self.assertEqual("completed", saved["status"])
        self.assertEqual(2, saved["lastTurnIndex"])

    def test_pause_answers_remaining_tool_calls(self) -> None:
        provider = _ScriptedProvider([_response(
            calls=[
                ToolCall(id="toolu-1", name="spawn_impl_session", arguments={"chain_id": "C", "task_id": "T"}),
                ToolCall(id="toolu-2", name="list_files", arguments={}),
            ],
            stop="tool_use",
        )])
        checkpoint = CheckpointHandler(require_approval=True, approval_timeout_ms=10)

        paused = asyncio.run(
            run_session(self._config(role="control"), self._deps(provider, checkpoint_handler=checkpoint))
        )

        self.assertEqual("paused", paused.stop_reason)
        self.assertEqual(1, len(paused.tool_calls))
        tool_messages = [m for m in self._saved(paused.session_id)["messages"] if m["role"] == "tool"]
        self.assertEqual(["toolu-1", "toolu-2"], [m["tool_call_id"] for m in tool_messages])
        self.assertEqual("Not executed: session paused", json.loads(tool_messages[1]["content"])["error"])

        resumed_provider = _ScriptedProvider([_response("Continuing.")])
        result = asyncio.run(run_session(
            self._config(role="control", resume_session_id=paused.session_id),
            self._deps(resumed_provider),
        ))

        self.assertTrue(result.success)
        self.assertEqual(["toolu-1", "toolu-2"], _tool_result_ids(resumed_provider.seen_messages[0]))

    def test_resume_answers_interrupted_tool_calls(self) -> None:
        session = Session(role="impl", model="gpt-4o", store=self._store)
        session.add_message({"role": "system", "content": "sys"})
        session.add_message({"role": "user", "content": "go"})
        session.add_message({
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {"id": "toolu-a", "name": "read_file", "arguments": {"path": "a.py"}},
                {"id": "toolu-b", "name": "list_files", "arguments": {}},
            ],
        })
        provider = _ScriptedProvider([_response("Recovered.")])

        result = asyncio.run(run_session(self._config(resume_session_id=session.id), self._deps(provider)))

        self.assertTrue(result.success)
        self.assertEqual(["toolu-a", "toolu-b"], _tool_result_ids(provider.seen_messages[0]))
        last = provider.seen_messages[0][-1]
        self.assertEqual("Not executed: session interrupted", json.loads(last["content"])["error"])

    def test_resume_keeps_saved_role(self) -> None:
        session_id = self._pause_on_approval()
        provider = _ScriptedProvider([_response("ok")])

        result = asyncio.run(run_session(self._config(role="impl", resume_session_id=session_id), self._deps(provider)))

        self.assertTrue(result.success)
        self.assertIn("spawn_impl_session", [tool["name"] for tool in provider.seen_tools[0]])
        self.assertEqual("control", self._saved(session_id)["role"])

    def test_resume_missing_session(self) -> None:
        result = asyncio.run(
            run_session(self._config(resume_session_id="session-missing"), self._deps(_ScriptedProvider([])))
        )

        self.assertEqual("error", result.stop_reason)
        self.assertEqual("Session not found: session-missing", result.error)

    def test_completed_session_cannot_resume(self) -> None:
        first = asyncio.run(run_session(self._config(), self._deps(_ScriptedProvider([_response("done")]))))
        provider = _ScriptedProvider([])

        result = asyncio.run(run_session(self._config(resume_session_id=first.session_id), self._deps(provider)))

        self.assertEqual("error", result.stop_reason)
        self.assertIn("cannot be resumed", result.error)
        self.assertEqual(0, provider.calls)


class ShutdownDuringSessionTests(RunSessionTestCase):
    def test_signal_waits_for_turn_and_pauses(self) -> None:
        exits: list[int] = []
        provider = _GatedProvider()
        coordinator = ShutdownCoordinator(exit_fn=exits.append)

        async def scenario():
            run = asyncio.create_task(run_session(self._config(), self._deps(provider, shutdown=coordinator)))
            await provider.entered.wait()

            signal_task = asyncio.create_task(coordinator.handle_signal("SIGINT"))
            await asyncio.sleep(0)
            self.assertTrue(coordinator.is_shutting_down)
            self.assertEqual([], exits)

            provider.release.set()
            await signal_task
            return await run

        result = asyncio.run(scenario())

        self.assertEqual([0], exits)
        self.assertEqual("paused", result.stop_reason)
        self.assertEqual(1, result.iterations)
        saved = self._saved(result.session_id)
        self.assertEqual("paused", saved["status"])
        self.assertEqual("assistant", saved["messages"][-1]["role"])

    def test_second_signal_forces_exit(self) -> None:
        exits: list[int] = []
        provider = _GatedProvider()
        coordinator = ShutdownCoordinator(exit_fn=exits.append)

        async def scenario():
            run = asyncio.create_task(run_session(self._config(), self._deps(provider, shutdown=coordinator)))
            await provider.entered.wait()

            first = asyncio.create_task(coordinator.handle_signal("SIGINT"))
            await asyncio.sleep(0)
            await coordinator.handle_signal("SIGINT")
            self.assertEqual([1], exits)

            provider.release.set()
            await first
            return await run

        result = asyncio.run(scenario())

        self.assertEqual([1], exits)
        self.assertTrue(coordinator.force_exit)
        self.assertEqual("paused", self._saved(result.session_id)["status"])


if __name__ == "__main__":
    unittest.main()
