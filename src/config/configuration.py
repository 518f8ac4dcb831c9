# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .loader import get_float_env, get_int_env, get_str_env

DEFAULT_DOOM_LOOP_THRESHOLD = 3
DEFAULT_HEARTBEAT_INTERVAL = 5.0


@dataclass(frozen=True)
class LoopConfig:
    """Per-loop tuning knobs for the agent execution loop."""

    doom_loop_threshold: int = DEFAULT_DOOM_LOOP_THRESHOLD
    doom_loop_window: int = 50
    # Retries apply only to GatewayError(retryable=True) raised before any chunk arrived.
    gateway_retries: int = 0
    retry_delay: float = 1.0
    retry_backoff: float = 2.0
    max_retry_delay: float = 30.0
    # None means no iteration ceiling; doom-loop rejection is the only guard.
    max_iterations: Optional[int] = None
    system_prompt: Optional[str] = None

    def __post_init__(self) -> None:
        if self.doom_loop_threshold < 1:
            raise ValueError("doom_loop_threshold must be at least 1")
        if self.doom_loop_window < self.doom_loop_threshold:
            raise ValueError("doom_loop_window must not be smaller than doom_loop_threshold")
        if self.gateway_retries < 0:
            raise ValueError("gateway_retries must not be negative")
        if self.max_iterations is not None and self.max_iterations < 1:
            raise ValueError("max_iterations must be positive when set")

    def retry_delay_for(self, attempt: int) -> float:
        delay = self.retry_delay * (self.retry_backoff ** max(attempt - 1, 0))
        return min(delay, self.max_retry_delay)


@dataclass(frozen=True)
class Settings:
    """Process configuration resolved from the environment.

    Construct via ``from_env()`` in the server, or directly in tests.
    """

    session_db_path: str = "agent_sessions.db"
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    event_queue_size: int = 1000
    working_directory: str = "."
    allowed_origins: tuple[str, ...] = ("http://localhost:3000",)
    model_name: str = ""
    model_base_url: str = ""
    model_api_key: str = ""
    log_level: str = "INFO"
    compaction_max_messages: int = 20
    compaction_max_tokens: int = 10000
    loop: LoopConfig = field(default_factory=LoopConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        origins = get_str_env("ALLOWED_ORIGINS", "http://localhost:3000")
        system_prompt = get_str_env("SYSTEM_PROMPT", "") or None
        max_iterations = get_int_env("MAX_ITERATIONS", 0) or None
        return cls(
            session_db_path=get_str_env("SESSION_DB_PATH", "agent_sessions.db"),
            heartbeat_interval=get_float_env("HEARTBEAT_INTERVAL", DEFAULT_HEARTBEAT_INTERVAL),
            event_queue_size=get_int_env("EVENT_QUEUE_SIZE", 1000),
            working_directory=get_str_env("AGENT_WORKDIR", "."),
            allowed_origins=tuple(origin.strip() for origin in origins.split(",") if origin.strip()),
            model_name=get_str_env("MODEL_NAME", ""),
            model_base_url=get_str_env("MODEL_BASE_URL", ""),
            model_api_key=get_str_env("MODEL_API_KEY", ""),
            log_level=get_str_env("LOG_LEVEL", "INFO").upper(),
            compaction_max_messages=get_int_env("COMPACTION_MAX_MESSAGES", 20),
            compaction_max_tokens=get_int_env("COMPACTION_MAX_TOKENS", 10000),
            loop=LoopConfig(
                doom_loop_threshold=get_int_env("DOOM_LOOP_THRESHOLD", DEFAULT_DOOM_LOOP_THRESHOLD),
                doom_loop_window=get_int_env("DOOM_LOOP_WINDOW", 50),
                gateway_retries=get_int_env("GATEWAY_RETRIES", 0),
                max_iterations=max_iterations,
                system_prompt=system_prompt,
            ),
        )
