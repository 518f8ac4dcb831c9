import asyncio
from typing import Any, AsyncIterator, Optional, Sequence

from langchain_core.messages import BaseMessage

from src.agent.gateway import BaseGateway, Chunk, Completion, TextDelta, ToolRequest
from src.events.types import BaseEvent, TokenUsage


class Hang:
    """Scripted chunk that blocks the stream until the run is cancelled."""


class ScriptedGateway(BaseGateway):
    """Gateway that replays one scripted chunk list per model call."""

    model_name = "scripted-model"

    def __init__(self, *turns: Sequence[Any]) -> None:
        self.turns = [list(turn) for turn in turns]
        self.histories: list[list[BaseMessage]] = []
        self.tool_schemas: list[list[dict[str, Any]]] = []

    @property
    def calls(self) -> int:
        return len(self.histories)

    async def stream(
        self,
        history: Sequence[BaseMessage],
        tools: Sequence[dict[str, Any]],
    ) -> AsyncIterator[Chunk]:
        self.histories.append(list(history))
        self.tool_schemas.append(list(tools))
        if not self.turns:
            raise AssertionError("ScriptedGateway has no turns left")
        for chunk in self.turns.pop(0):
            if isinstance(chunk, Exception):
                raise chunk
            if isinstance(chunk, Hang):
                await asyncio.Event().wait()
            yield chunk


def usage(prompt: int = 10, completion: int = 5) -> TokenUsage:
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)


def text_turn(text: str, *, tokens: Optional[TokenUsage] = None) -> list[Chunk]:
    return [TextDelta(text), Completion(tokens or usage())]


def tool_turn(name: str, args: dict[str, Any], call_id: Optional[str] = None, **extra: Any) -> list[Chunk]:
    request = ToolRequest(name=name, args=args, **extra) if call_id is None else ToolRequest(
        name=name, args=args, call_id=call_id, **extra
    )
    return [request, Completion(usage())]


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[BaseEvent] = []

    def __call__(self, event: BaseEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def of_type(self, event_type: str) -> list[BaseEvent]:
        return [event for event in self.events if event.type == event_type]
