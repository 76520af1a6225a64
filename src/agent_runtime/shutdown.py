"""Signal-driven graceful shutdown.

First SIGINT/SIGTERM: stop taking new turns, wait for the in-flight turn,
run the shutdown callback, mark the session paused and exit 0.
Second signal: best-effort pause and exit 1 immediately.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any, Awaitable, Callable

from loguru import logger

from agent_runtime.persistence import Session

ShutdownCallback = Callable[[bool], Awaitable[None]]

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    def __init__(
        self,
        *,
        session: Session | None = None,
        on_shutdown: ShutdownCallback | None = None,
        exit_fn: Callable[[int], Any] = sys.exit,
    ):
        self.session = session
        self._on_shutdown = on_shutdown
        self._exit_fn = exit_fn
        self._shutting_down = False
        self._force_exit = False
        self._current_turn: Awaitable[Any] | None = None
        self._registered_loop: asyncio.AbstractEventLoop | None = None
        self._fallback_handlers: dict[int, Any] = {}
        self._handler_tasks: set[asyncio.Task] = set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def force_exit(self) -> bool:
        return self._force_exit

    def should_stop(self) -> bool:
        return self._shutting_down

    def register(self) -> None:
        """Attach SIGINT/SIGTERM handlers to the running loop. Repeated calls are no-ops."""
        if self._registered_loop is not None:
            return
        loop = asyncio.get_running_loop()
        for sig in _SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig.name)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler.
                self._fallback_handlers[sig] = signal.signal(
                    sig,
                    lambda signum, _frame: loop.call_soon_threadsafe(self._on_signal, signal.Signals(signum).name),
                )
        self._registered_loop = loop

    def unregister(self) -> None:
        loop = self._registered_loop
        if loop is None:
            return
        for sig in _SIGNALS:
            if sig in self._fallback_handlers:
                signal.signal(sig, self._fallback_handlers.pop(sig))
            elif not loop.is_closed():
                loop.remove_signal_handler(sig)
        self._registered_loop = None

    def set_current_turn(self, turn: Awaitable[Any]) -> None:
        self._current_turn = turn

    def clear_current_turn(self) -> None:
        self._current_turn = None

    def _on_signal(self, signame: str) -> None:
        task = asyncio.get_running_loop().create_task(self.handle_signal(signame))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def handle_signal(self, signame: str) -> None:
        if self._shutting_down:
            self._force_exit = True
            logger.warning(f"Forced exit ({signame}). Session state may be incomplete.")
            self._save_paused()
            self._exit_fn(1)
            return

        self._shutting_down = True
        logger.info(f"Graceful shutdown initiated ({signame})")

        turn = self._current_turn
        if turn is not None:
            logger.info("Waiting for current turn to complete...")
            # asyncio.wait never raises the turn's own exception.
            await asyncio.wait([asyncio.ensure_future(turn)])

        if self._force_exit:
            return

        if self._on_shutdown is not None:
            try:
                await self._on_shutdown(False)
            except Exception as ex:
                logger.error(f"Error in shutdown callback: {ex}")

        self._save_paused()
        if self.session is not None:
            logger.info(f"Session paused. Resume with ResumeSessionId={self.session.id}")
        self._exit_fn(0)

    def _save_paused(self) -> None:
        if self.session is None:
            return
        try:
            self.session.set_status("paused")
        except Exception as ex:
            logger.error(f"Failed to save session state: {ex}")
