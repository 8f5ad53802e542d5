#!/usr/bin/env python3
"""Loopback driver for the relay.

Reads chat lines from stdin and relays them to an OpenCode server as one
session. Messages typed while a request is running are queued; commands:

    /cancel   drop queued messages and stop the running one
    /reset    stop everything and start a fresh conversation
    /status   show processing state and queue depth
    /usage    show the last usage snapshot
    /quit     exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Iterable

from src.config import get_relay_config, load_env
from src.core.request_queue import QueueClearedError, RequestQueue
from src.providers.opencode import OpenCodeClient, OpenCodeProvider
from src.relay import AgentRelay
from src.session_keys import build_session_key
from src.sessions import SessionManager

log = logging.getLogger("relay")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Agent relay loopback")
    parser.add_argument("--chat-id", type=int, default=1)
    parser.add_argument("--thread-id", type=int, default=None)
    parser.add_argument("--model", default=None, help="provider/model override")
    parser.add_argument("--agent", default=None, help="OpenCode agent name")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(list(argv))


async def _relay_message(relay: AgentRelay, session_key: str, text: str) -> None:
    try:
        response = await relay.send(session_key, text)
    except QueueClearedError:
        print(f"[dropped] {text[:40]}")
        return
    except Exception as e:
        print(f"[error] {type(e).__name__}: {e}")
        return
    print(response.text)
    if response.tools_used:
        print(f"[tools: {', '.join(response.tools_used)}]")


async def _run(args: argparse.Namespace) -> int:
    cfg = get_relay_config()
    sessions = SessionManager()
    queue = RequestQueue(activity=sessions)
    client = OpenCodeClient(
        cfg.opencode_server_url,
        username=cfg.opencode_username,
        password=cfg.opencode_password,
    )
    provider = OpenCodeProvider(
        client,
        queue,
        sessions=sessions,
        model=args.model or cfg.opencode_model,
        agent=args.agent or cfg.opencode_agent,
        cache_size=cfg.cache_size,
        http_timeout_s=cfg.http_timeout_s,
    )
    relay = AgentRelay(queue, provider, sessions, working_dir=cfg.working_dir)
    session_key = build_session_key(args.chat_id, args.thread_id)
    log.info(f"Relaying session {session_key} to {cfg.opencode_server_url}")

    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task] = set()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            text = line.strip()
            if not text:
                continue

            command = text.lower()
            if command == "/quit":
                break
            if command == "/cancel":
                print((await relay.cancel(session_key)).describe())
            elif command == "/reset":
                print((await relay.reset(session_key)).describe())
            elif command == "/status":
                status = relay.status(session_key)
                state = "busy" if status.processing else "idle"
                print(f"{state}, {status.queued} queued")
            elif command == "/usage":
                usage = provider.get_cached_usage(session_key)
                if usage is None:
                    print("No usage yet.")
                else:
                    print(
                        f"{usage.model}: {usage.total_tokens} tok, "
                        f"${usage.total_cost_usd:.3f}, {usage.num_turns} turns"
                    )
            else:
                task = asyncio.create_task(_relay_message(relay, session_key, text))
                pending.add(task)
                task.add_done_callback(pending.discard)

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    finally:
        queue.shutdown()
    return 0


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    load_env()
    cfg_level = "DEBUG" if args.verbose else get_relay_config().log_level
    _configure_logging(cfg_level)
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
