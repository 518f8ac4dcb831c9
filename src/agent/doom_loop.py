# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Detection of a model repeating the exact same tool call.

Arguments are compared by a fingerprint of their canonical JSON form, so key
order never matters. Only the trailing streak of identical calls counts: a
pattern that repeated earlier in the run and was then broken does not keep
the run poisoned.
"""

from __future__ import annotations

import hashlib
import json
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Mapping, Optional, Sequence

DEFAULT_THRESHOLD = 3
DEFAULT_WINDOW = 50


@dataclass(frozen=True, slots=True)
class ToolInvocationRecord:
    tool_name: str
    fingerprint: str
    index: int

    @property
    def key(self) -> str:
        return f"{self.tool_name}:{self.fingerprint}"


@dataclass(frozen=True, slots=True)
class DoomLoopVerdict:
    flagged: bool
    key: str
    streak: int
    threshold: int


def canonical_arguments(args: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(
        args or {},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def fingerprint_arguments(args: Optional[Mapping[str, Any]]) -> str:
    return hashlib.sha256(canonical_arguments(args).encode("utf-8")).hexdigest()


def invocation_key(tool_name: str, args: Optional[Mapping[str, Any]]) -> str:
    return f"{tool_name}:{fingerprint_arguments(args)}"


def detect_doom_loop(
    history: Sequence[ToolInvocationRecord],
    tool_name: str,
    args: Optional[Mapping[str, Any]],
    threshold: int = DEFAULT_THRESHOLD,
) -> DoomLoopVerdict:
    """Decide whether the candidate call extends an identical streak to ``threshold``.

    ``history`` is the ordered list of earlier calls in the active run; the
    candidate itself counts towards the streak.
    """
    if threshold < 1:
        raise ValueError("threshold must be at least 1")

    key = invocation_key(tool_name, args)
    streak = 1
    for record in reversed(history):
        if record.key != key:
            break
        streak += 1
    return DoomLoopVerdict(flagged=streak >= threshold, key=key, streak=streak, threshold=threshold)


class DoomLoopTracker:
    """Per-run memory of recent tool calls, bounded to ``window`` entries."""

    def __init__(self, threshold: int = DEFAULT_THRESHOLD, window: int = DEFAULT_WINDOW) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        if window < threshold:
            raise ValueError("window must not be smaller than threshold")
        self.threshold = threshold
        self._records: Deque[ToolInvocationRecord] = deque(maxlen=window)
        self._index = 0

    @property
    def records(self) -> tuple[ToolInvocationRecord, ...]:
        return tuple(self._records)

    def check(self, tool_name: str, args: Optional[Mapping[str, Any]]) -> DoomLoopVerdict:
        """Evaluate the candidate and remember it, whether or not it gets flagged."""
        verdict = detect_doom_loop(self._records, tool_name, args, self.threshold)
        self._records.append(
            ToolInvocationRecord(
                tool_name=tool_name,
                fingerprint=fingerprint_arguments(args),
                index=self._index,
            )
        )
        self._index += 1
        return verdict

    def reset(self) -> None:
        self._records.clear()
        self._index = 0
