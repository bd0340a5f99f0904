"""Send one prompt to the chat server and print the streamed reply.

Run: start the server (`uvicorn main:app`), then
      `python chat_cli.py "Explain websockets in one paragraph"`.
Set `CHAT_SERVER_URL` or pass `--server` to target another host. Ctrl+C
cancels the generation.
"""
import argparse
import asyncio
import base64
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from models.lifecycle_models import HandlerSet
from services.transport.base import TransportError
from services.transport.chat_client import ChatClient


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream a chat reply from the server.")
    parser.add_argument("prompt", help="Message to send.")
    parser.add_argument("--server", default=None, help="Server base URL (default: CHAT_SERVER_URL).")
    parser.add_argument("--model", default=os.getenv("CHAT_DEFAULT_MODEL", "gpt-4o-mini"))
    parser.add_argument("--vision-model", default=None, help="Describe images with this model first.")
    parser.add_argument("--conversation", default=None, help="Continue an existing conversation id.")
    parser.add_argument("--image", action="append", default=[], help="Image file to attach (repeatable).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log delivery details to stderr.")
    return parser.parse_args(argv)


def _read_images(paths: List[str]) -> List[str]:
    return [base64.b64encode(Path(path).read_bytes()).decode("utf-8") for path in paths]


async def _run(args: argparse.Namespace) -> int:
    done = asyncio.Event()
    outcome = {"code": 0}

    def on_complete(payload) -> None:
        print()
        print(f"[conversation {payload.conversation_id} | {payload.metadata.get('tokens', 0)} tokens]", file=sys.stderr)
        done.set()

    def on_error(payload) -> None:
        print()
        print(f"error: {payload.error}", file=sys.stderr)
        outcome["code"] = 1
        done.set()

    handlers = HandlerSet(
        on_thinking=lambda _payload: print("thinking...", file=sys.stderr),
        on_token=lambda payload: print(payload.token, end="", flush=True),
        on_complete=on_complete,
        on_error=on_error,
        on_conversation_created=lambda payload: print(
            f"[new conversation {payload.conversation_id}]", file=sys.stderr
        ),
    )

    client = ChatClient(args.server)
    try:
        await client.connect()
        message_id = await client.send_message(
            args.prompt,
            args.model,
            handlers,
            vision_model=args.vision_model,
            conversation_id=args.conversation,
            images=_read_images(args.image) or None,
        )
        try:
            await done.wait()
        except asyncio.CancelledError:
            await client.cancel_message(message_id)
            raise
    except TransportError as exc:
        print(f"connection failed: {exc}", file=sys.stderr)
        return 2
    finally:
        await client.disconnect()
    return outcome["code"]


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("\ncancelled", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
