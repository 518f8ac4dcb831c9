# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""
Server script for running the agent session API.
"""

import argparse
import logging

import uvicorn

from src.config.loader import get_str_env

logging.basicConfig(
    level=get_str_env("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the agent session API server")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload (default: False)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="localhost",
        help="Host to bind the server to (default: localhost)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=get_str_env("LOG_LEVEL", "info").lower(),
        choices=["debug", "info", "warning", "error", "critical"],
        help="Log level (default: info)",
    )
    args = parser.parse_args()

    if args.log_level == "debug":
        logging.getLogger("src").setLevel(logging.DEBUG)

    logger.info("Starting agent session API server on %s:%s", args.host, args.port)
    uvicorn.run(
        "src.server.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
