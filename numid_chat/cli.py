from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, TextIO

import httpx

from .client import ChatClient, ChatClientError, attachment_from_file
from .config import configure_logging, load_env, load_settings
from .models import Attachment, ChatMessage
from .session_store import FileStorage, SessionBook

logger = logging.getLogger("numid.cli")

HELP_TEXT = """Commands:
  /new             start a new chat
  /list            list saved chats
  /switch ID       switch to a saved chat
  /delete ID       delete a saved chat
  /attach PATH     attach an image to the next message
  /quit            exit"""


def main() -> int:
    load_env()
    return _main(sys.argv[1:])


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="numid-chat", description="Gemini chat server and terminal client")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--reload", action="store_true")

    for name, help_text in (
        ("chat", "Interactive chat against a running server"),
        ("describe", "Describe an image file"),
        ("svg", "Generate an SVG image from a prompt"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("--url", default=None, help="API base URL (default http://HOST:PORT)")
        command.add_argument("--model", default=None)

    sub.choices["chat"].add_argument("--sessions", type=Path, default=None, help="Session storage file")
    sub.choices["describe"].add_argument("image", type=Path)
    sub.choices["describe"].add_argument("--prompt", default=None)
    sub.choices["svg"].add_argument("prompt")
    sub.choices["svg"].add_argument("-o", "--output", type=Path, default=None)
    return parser


def _main(argv: List[str]) -> int:
    args = _build_parser().parse_args(argv)
    settings = load_settings(env_loaded=True)
    configure_logging(settings.log_level)

    if args.command == "serve":
        import uvicorn

        uvicorn.run(
            "numid_chat.app:app",
            host=args.host or settings.host,
            port=args.port or settings.port,
            reload=args.reload,
            log_level=settings.log_level.lower(),
        )
        return 0

    base_url = args.url or f"http://{settings.host}:{settings.port}"
    with ChatClient(base_url, model=args.model or settings.default_model) as client:
        try:
            if args.command == "describe":
                print(client.describe_image(attachment_from_file(args.image), prompt=args.prompt))
                return 0
            if args.command == "svg":
                svg = client.generate_svg(args.prompt)
                if args.output:
                    args.output.write_text(svg, encoding="utf-8")
                    print(f"Wrote {args.output}")
                else:
                    print(svg)
                return 0
        except (ChatClientError, httpx.HTTPError, OSError) as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1

        book = SessionBook(FileStorage(args.sessions or settings.sessions_path))
        return run_repl(client, book)


def run_repl(client: ChatClient, book: SessionBook, stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> int:
    """Purpose: Interactive chat loop over the active session.
    Inputs/Outputs: Reads lines from stdin, writes replies to stdout; returns an exit code.
    Side Effects / State: Every turn and session change is saved through the SessionBook.
    Failure Modes: Request errors are shown inline as the assistant message, like the web UI.
    """
    pending: Optional[Attachment] = None
    _show_session(book, stdout)
    for raw in stdin:
        line = raw.strip()
        if not line:
            continue
        if line.startswith("/"):
            command, _, argument = line.partition(" ")
            argument = argument.strip()
            if command in ("/quit", "/exit"):
                break
            if command == "/new":
                book.new_session()
                _show_session(book, stdout)
            elif command == "/list":
                for session in book.sessions:
                    marker = "*" if session.id == book.active_id else " "
                    print(f"{marker} {session.id}  {session.title}", file=stdout)
            elif command == "/switch":
                try:
                    book.select(argument)
                except KeyError:
                    print(f"No chat with id {argument!r}", file=stdout)
                    continue
                _show_session(book, stdout)
            elif command == "/delete":
                if not any(session.id == argument for session in book.sessions):
                    print(f"No chat with id {argument!r}", file=stdout)
                    continue
                book.delete(argument)
                if book.active_id is None:
                    book.new_session()
                print(f"Deleted {argument}", file=stdout)
            elif command == "/attach":
                try:
                    pending = attachment_from_file(Path(argument).expanduser())
                except OSError as exc:
                    print(f"Cannot attach: {exc}", file=stdout)
                    continue
                print(f"Attached {argument}", file=stdout)
            else:
                print(HELP_TEXT, file=stdout)
            continue

        book.append_message(ChatMessage(role="user", content=line, attachment=pending))
        pending = None
        messages = list(book.active.messages)
        book.append_message(ChatMessage(role="assistant", content=""))
        printed = 0

        def on_fragment(accumulated: str) -> None:
            nonlocal printed
            stdout.write(accumulated[printed:])
            stdout.flush()
            printed = len(accumulated)
            book.replace_last_assistant(accumulated)

        try:
            reply = client.send(messages, on_fragment=on_fragment)
            book.replace_last_assistant(reply)
            stdout.write("\n")
        except (ChatClientError, httpx.HTTPError, OSError) as exc:
            logger.debug("chat turn failed", exc_info=True)
            book.replace_last_assistant(f"Error: {exc}")
            print(f"\nError: {exc}", file=stdout)
    return 0


def _show_session(book: SessionBook, stdout: TextIO) -> None:
    session = book.active
    print(f"== {session.title} ({session.id})", file=stdout)
    for message in session.messages:
        print(f"{message.role}: {message.content}", file=stdout)
