# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .cancellation import CancellationToken
from .errors import SessionBusyError
from .loop import AgentLoop, LoopOutcome

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ActiveRun:
    session_id: str
    task: asyncio.Task
    token: CancellationToken


class SessionRunManager:
    """Starts background loop runs and keeps at most one run per session."""

    def __init__(self, loop: AgentLoop) -> None:
        self._loop = loop
        self._runs: dict[str, ActiveRun] = {}

    def is_running(self, session_id: str) -> bool:
        run = self._runs.get(session_id)
        return run is not None and not run.task.done()

    def active_sessions(self) -> list[str]:
        return [session_id for session_id in self._runs if self.is_running(session_id)]

    def start(
        self,
        session_id: str,
        content: str,
        *,
        tools: Optional[Sequence[str]] = None,
    ) -> asyncio.Task:
        if self.is_running(session_id):
            raise SessionBusyError(session_id)

        token = CancellationToken()
        task = asyncio.create_task(
            self._run(session_id, content, token, tools),
            name=f"agent-run-{session_id}",
        )
        self._runs[session_id] = ActiveRun(session_id=session_id, task=task, token=token)
        task.add_done_callback(lambda finished: self._forget(session_id, finished))
        logger.info("Started run for session %s", session_id)
        return task

    def cancel(self, session_id: str, reason: str = "Interrupted by user") -> bool:
        run = self._runs.get(session_id)
        if run is None or run.task.done() or run.token.cancelled:
            return False
        run.token.cancel(reason)
        logger.info("Cancellation requested for session %s", session_id)
        return True

    async def wait(self, session_id: str) -> Optional[LoopOutcome]:
        run = self._runs.get(session_id)
        if run is None:
            return None
        return await run.task

    async def shutdown(self) -> None:
        runs = list(self._runs.values())
        for run in runs:
            run.token.cancel("Server shutting down")
        if runs:
            await asyncio.gather(*(run.task for run in runs), return_exceptions=True)
        self._runs.clear()

    async def _run(
        self,
        session_id: str,
        content: str,
        token: CancellationToken,
        tools: Optional[Sequence[str]],
    ) -> LoopOutcome:
        try:
            outcome = await self._loop.run(session_id, content, tools=tools, cancel=token)
        except Exception:
            logger.exception("Run for session %s crashed", session_id)
            raise
        logger.info(
            "Run for session %s finished with status %s",
            session_id,
            outcome.status.value,
        )
        return outcome

    def _forget(self, session_id: str, task: asyncio.Task) -> None:
        run = self._runs.get(session_id)
        if run is not None and run.task is task:
            del self._runs[session_id]
