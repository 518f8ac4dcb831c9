# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Exception hierarchy for the agent core.

Tool-level failures are recovered inside the loop and shown to the model.
Gateway and persistence failures end the current run.
"""

from __future__ import annotations

from typing import Optional


class AgentError(Exception):
    """Base exception for all agent-core errors."""


class GatewayError(AgentError):
    """The model call failed."""

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ToolExecutionError(AgentError):
    """A tool ran but could not produce a result."""

    def __init__(self, message: str, *, metadata: Optional[dict] = None) -> None:
        super().__init__(message)
        self.metadata = metadata or {}


class DoomLoopRejection(AgentError):
    """A tool call was refused because the model keeps repeating it."""

    def __init__(self, tool_name: str, count: int) -> None:
        super().__init__(
            f'Doom loop detected: tool "{tool_name}" was called {count} times in a row '
            "with the same arguments. The call was not executed; try a different approach."
        )
        self.tool_name = tool_name
        self.count = count


class PersistenceError(AgentError):
    """A session store operation failed."""


class SessionNotFoundError(PersistenceError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class MessageNotFoundError(PersistenceError):
    def __init__(self, session_id: str, message_id: str) -> None:
        super().__init__(f"Message {message_id} not found in session {session_id}")
        self.session_id = session_id
        self.message_id = message_id


class PartNotFoundError(PersistenceError):
    def __init__(self, message_id: str, part_id: str) -> None:
        super().__init__(f"Part {part_id} not found in message {message_id}")
        self.message_id = message_id
        self.part_id = part_id


class PartReferenceError(PersistenceError):
    """A tool result points at a tool call that was never persisted."""


class InvalidPartMutation(PersistenceError):
    """Only pending tool-call parts may transition, and only to a terminal state."""


class SubscriberError(AgentError):
    """An event subscriber failed; logged and never propagated to the publisher."""


class SessionBusyError(AgentError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} already has an active run")
        self.session_id = session_id
