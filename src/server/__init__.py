# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from typing import TYPE_CHECKING

__all__ = ["create_app"]

if TYPE_CHECKING:  # pragma: no cover
    from .app import create_app


def __getattr__(name: str):  # pragma: no cover - simple lazy import
    if name == "create_app":
        from .app import create_app as factory

        return factory
    raise AttributeError(name)
