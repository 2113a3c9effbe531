#!/usr/bin/env python3
"""
ask-human - let an AI agent pause and ask a person a question.

Questions are appended to a markdown file with "Answer: PENDING". Edit the
file, replace PENDING with your answer, and the waiting agent picks it up.

The HTTP front-end exposes:
- POST /ask      {"question": "...", "context": "..."} -> {"answer": "..."}
- GET  /pending  questions still waiting for an answer
- GET  /stats    counters for this run
- GET  /health
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Iterable

from askhuman.config import RendezvousConfig, get_config, load_env
from askhuman.errors import WatchInitError
from askhuman.rendezvous import RendezvousCoordinator
from askhuman.server import start_http_server

log = logging.getLogger("ask-human")


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # watchdog is chatty at DEBUG.
    logging.getLogger("watchdog").setLevel(logging.INFO)


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Ask-human server: questions in a markdown file, answers from you"
    )
    parser.add_argument("--file", type=Path, help="Path to the ask file")
    parser.add_argument("--host", help="HTTP server host (default: localhost)")
    parser.add_argument("--port", type=int, help="HTTP server port (default: 3000)")
    parser.add_argument(
        "--timeout", type=float, help="Question timeout in seconds (default: 1800)"
    )
    parser.add_argument(
        "--max-pending", type=int, help="Maximum pending questions (default: 100)"
    )
    parser.add_argument(
        "--max-question-length",
        type=int,
        help="Maximum question length in bytes (default: 10240)",
    )
    parser.add_argument(
        "--max-context-length",
        type=int,
        help="Maximum context length in bytes (default: 51200)",
    )
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(list(argv))


def build_config(args: argparse.Namespace) -> RendezvousConfig:
    """Environment (and .env) first, command-line flags on top."""
    config = get_config()
    overrides = {
        "ask_file": args.file.expanduser() if args.file else None,
        "host": args.host,
        "port": args.port,
        "timeout_s": args.timeout,
        "max_pending": args.max_pending,
        "max_question_bytes": args.max_question_length,
        "max_context_bytes": args.max_context_length,
    }
    return dataclasses.replace(
        config, **{k: v for k, v in overrides.items() if v is not None}
    )


async def serve(config: RendezvousConfig) -> None:
    coordinator = RendezvousCoordinator(config)
    await coordinator.start()
    runner = None
    try:
        runner, host, port = await start_http_server(
            coordinator, host=config.host, port=config.port
        )
        log.info(f"Listening on http://{host}:{port}")
        log.info(f"Ask file: {config.ask_file}")
        while True:
            await asyncio.sleep(1)
    finally:
        await coordinator.close()
        if runner is not None:
            await runner.cleanup()


def main(argv: Iterable[str]) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)
    load_env()
    config = build_config(args)
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        log.info("Shutting down...")
    except WatchInitError as e:
        print(f"Failed to start: {e}", file=sys.stderr)
        return 1
    return 0


def cli() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
