from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .consumer import DEFAULT_BASE_URL, Baseline, StreamAborted, StreamConsumer, StreamError
from .scheduler import DEFAULT_DELAY_S, RevealScheduler


class TerminalRenderer:
    """Writes each newly revealed character of each file to ``out``."""

    def __init__(self, out=None) -> None:
        self.out = out or sys.stdout
        self._shown: Dict[str, int] = {}
        self._current: Optional[str] = None

    def update(self, name: str, shown: str) -> None:
        if name != self._current:
            if self._current is not None:
                self.out.write("\n")
            self.out.write(f"--- {name} ---\n")
            self._current = name
        start = self._shown.get(name, 0)
        self.out.write(shown[start:])
        self._shown[name] = len(shown)
        self.out.flush()

    def finish(self) -> None:
        if self._current is not None:
            self.out.write("\n")
            self.out.flush()


async def run_generate(args: argparse.Namespace, http_client: Optional[httpx.AsyncClient] = None) -> int:
    baseline = Baseline(Path(args.baseline) if args.baseline else None)
    if args.update and not baseline.files:
        print("No previous files to update; generating a new project.", file=sys.stderr)
    body = baseline.request_body(args.prompt, user_id=args.user_id, iterative=args.update and bool(baseline.files))
    action = "update code" if body.get("isIterativeUpdate") else "generate code"

    renderer = TerminalRenderer()
    scheduler = RevealScheduler(on_update=renderer.update, delay=args.speed)
    scheduler.load({}, sealed=False)
    consumer = StreamConsumer(args.url, http_client=http_client, baseline=baseline)

    def on_event(event: Dict[str, Any]) -> None:
        etype = event.get("type")
        if etype == "status":
            print(event.get("message", ""), file=sys.stderr)
        elif etype == "file":
            scheduler.extend(event["fileName"], event["content"])

    try:
        result = await consumer.consume(body, on_event=on_event, action=action)
    except StreamError as exc:
        scheduler.close()
        print(exc.guidance, file=sys.stderr)
        return 1
    except StreamAborted:
        scheduler.close()
        return 130
    finally:
        await consumer.aclose()

    scheduler.seal()
    try:
        if scheduler.names:
            await scheduler.wait_complete()
    finally:
        scheduler.close()
        renderer.finish()

    for change in result.changed_files:
        print(f"{change.get('status', '?'):>9}  {change.get('path')}", file=sys.stderr)
    if result.conversation_id:
        print(f"conversation: {result.conversation_id}", file=sys.stderr)
    return 0


async def run_history(args: argparse.Namespace, http_client: Optional[httpx.AsyncClient] = None) -> int:
    params = {"userId": args.user_id}
    if args.conversation_id:
        params["conversationId"] = args.conversation_id
    client = http_client or httpx.AsyncClient(timeout=30.0)
    try:
        resp = await client.get(f"{args.url.rstrip('/')}/api/anthropic", params=params)
    finally:
        if http_client is None:
            await client.aclose()
    if resp.status_code >= 400:
        try:
            error_body = resp.json()
        except ValueError:
            error_body = None
        message = error_body.get("error") if isinstance(error_body, dict) else None
        print(message or f"HTTP error! status: {resp.status_code}", file=sys.stderr)
        return 1
    payload = resp.json()
    if "conversation" in payload:
        conv = payload["conversation"]
        print(f"{conv['id']}  {conv.get('initialPrompt', '')}")
        for i, turn in enumerate(conv.get("conversationTurns", []), start=1):
            print(f"  {i}. {turn['prompt']}  ({len(turn.get('fileChanges', []))} files affected)")
        return 0
    conversations: List[Dict[str, Any]] = payload.get("conversations", [])
    for conv in conversations:
        print(f"{conv['id']}  {conv.get('updatedAt', '')}  {conv.get('initialPrompt', '')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="spin", description="Spin code generation client")
    parser.add_argument("--url", default=DEFAULT_BASE_URL, help="API base URL")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate or update a project from a prompt")
    gen.add_argument("prompt")
    gen.add_argument("--update", action="store_true", help="Apply the prompt to the files in --baseline")
    gen.add_argument("--baseline", default=".spin/baseline.json", help="File holding the last generated state")
    gen.add_argument("--speed", type=float, default=DEFAULT_DELAY_S, help="Seconds per revealed character")
    gen.add_argument("--user-id", default="anonymous")

    hist = sub.add_parser("history", help="List stored conversations")
    hist.add_argument("--user-id", required=True)
    hist.add_argument("--conversation-id")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    runner = run_generate if args.command == "generate" else run_history
    try:
        return asyncio.run(runner(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
