import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

# Adds the project root to the path so the 'src' package resolves when run as a script.
ROOT_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, ROOT_DIR)

from src.paperchat.app.paperchat_app import PaperChatApp  # noqa: E402
from src.paperchat.models.event_types import (  # noqa: E402
    CHAT_ERROR,
    CHAT_MESSAGE_COMPLETE,
    CHAT_REASONING_UPDATE,
    CHAT_STREAMING_UPDATE,
    CHAT_TITLE_UPDATED,
)
from src.paperchat.models.chat import SendMessageOptions  # noqa: E402
from src.paperchat.models.events import Event  # noqa: E402
from src.paperchat.services.document_source import FileDocumentSource  # noqa: E402
from src.paperchat.services.logging_service import LoggingService  # noqa: E402

HELP_TEXT = """Commands:
  /new              start a new session for this item
  /sessions         list sessions of this item
  /switch <id>      switch to another session
  /regen            regenerate the last answer
  /version <n>      show version n of the last answer
  /attach           attach the document text to the next message
  /select <text>    quote <text> as a selection in the next message
  /quit             exit
Press Ctrl+C while an answer streams to stop it."""


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat with LLM providers about your documents.")
    parser.add_argument("--item", type=int, default=0, help="item id to chat about (0 = global chat)")
    parser.add_argument(
        "--document",
        action="append",
        default=[],
        metavar="PATH",
        help="text file to expose as a document; the n-th file gets item id n",
    )
    parser.add_argument("--provider", help="provider id to activate, e.g. openai or claude")
    parser.add_argument("--model", help="model id to select on the active provider")
    parser.add_argument("--api-key", help="store an API key for the active provider and enable it")
    parser.add_argument("--list-sessions", action="store_true", help="print stored sessions and exit")
    parser.add_argument("--verbose", action="store_true", help="log debug output to the console")
    return parser.parse_args(argv)


class TerminalChat:
    """Line-oriented front end that streams replies to stdout."""

    def __init__(self, app: PaperChatApp, item_id: int):
        self.app = app
        self.item_id = item_id
        self._attach_next = False
        self._selection: Optional[str] = None
        self._in_reasoning = False
        bus = app.event_bus
        bus.subscribe(CHAT_STREAMING_UPDATE, self._on_chunk)
        bus.subscribe(CHAT_REASONING_UPDATE, self._on_reasoning)
        bus.subscribe(CHAT_MESSAGE_COMPLETE, self._on_complete)
        bus.subscribe(CHAT_ERROR, self._on_error)
        bus.subscribe(CHAT_TITLE_UPDATED, self._on_title)
        self._reasoning_seen = 0

    def _on_chunk(self, event: Event) -> None:
        if self._in_reasoning:
            print("\n")
            self._in_reasoning = False
        print(event.payload.get("chunk", ""), end="", flush=True)

    def _on_reasoning(self, event: Event) -> None:
        text = event.payload.get("reasoning_content", "")
        if not self._in_reasoning:
            print("[thinking] ", end="")
            self._in_reasoning = True
        print(text[self._reasoning_seen:], end="", flush=True)
        self._reasoning_seen = len(text)

    def _on_complete(self, event: Event) -> None:
        print("\n[stopped]" if event.payload.get("aborted") else "")
        self._reasoning_seen = 0

    def _on_error(self, event: Event) -> None:
        print(f"\n[error] {event.payload.get('message')}")

    def _on_title(self, event: Event) -> None:
        print(f"[title] {event.payload.get('title')}")

    def run(self) -> None:
        chat = self.app.chat_manager
        session = chat.set_active_item(self.item_id)
        selection = self.app.provider_registry.get_selected_model()
        print(f"Session {session.id} ({selection.provider_id}/{selection.model_id or 'no model'})")
        print("Type /help for commands.")
        for message in session.messages:
            print(f"{message.role}> {message.content}")

        while True:
            try:
                line = input("you> ").strip()
            except (EOFError, KeyboardInterrupt):
                print()
                return
            if not line:
                continue
            if line.startswith("/"):
                if not self._handle_command(line):
                    return
                continue
            options = SendMessageOptions(
                attach_pdf=self._attach_next,
                selected_text=self._selection,
            )
            self._attach_next = False
            self._selection = None
            outcome = self.app.run_in_background(chat.send_message, line, self.item_id, options)
            self._report(outcome)

    def _report(self, outcome) -> None:
        if "error" in outcome:
            print(f"\n[error] {outcome['error']}")
            return
        message = outcome.get("result")
        # Configuration notices are added without streaming.
        if message is not None and message.role == "assistant" and message.is_complete is None:
            print(message.content)

    def _handle_command(self, line: str) -> bool:
        chat = self.app.chat_manager
        command, _, argument = line.partition(" ")
        argument = argument.strip()
        if command == "/quit":
            return False
        if command == "/help":
            print(HELP_TEXT)
        elif command == "/new":
            session = chat.create_new_session(self.item_id)
            print(f"New session {session.id}")
        elif command == "/sessions":
            print_sessions(self.app, self.item_id)
        elif command == "/switch":
            session = chat.switch_session(self.item_id, argument)
            print(f"Switched to {session.id}" if session else f"No session {argument}")
        elif command == "/attach":
            self._attach_next = True
            print("Document text will be attached to the next message.")
        elif command == "/select":
            self._selection = argument or None
        elif command == "/regen":
            target = self._last_answer()
            if target is None:
                print("Nothing to regenerate.")
            else:
                self._report(self.app.run_in_background(chat.regenerate_message, self.item_id, target.id))
        elif command == "/version":
            target = self._last_answer()
            try:
                index = int(argument) - 1
            except ValueError:
                index = -1
            if target is None or not chat.switch_message_version(self.item_id, target.id, index):
                print("No such version.")
            else:
                print(self._last_answer().content)
        else:
            print(f"Unknown command {command}. Type /help.")
        return True

    def _last_answer(self):
        session = self.app.chat_manager.get_active_session(self.item_id)
        if session is None:
            return None
        for message in reversed(session.messages):
            if message.role in ("assistant", "error"):
                return message
        return None


def print_sessions(app: PaperChatApp, item_id: Optional[int] = None) -> None:
    metas = app.session_store.list_sessions(item_id)
    if not metas:
        print("No stored sessions.")
    for meta in metas:
        title = meta.session_title or "(untitled)"
        print(f"{meta.session_id}  {meta.item_name}  {title}  {meta.message_count} msgs  {meta.last_message_preview}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    LoggingService.setup_logging(console_level=logging.DEBUG if args.verbose else logging.WARNING)

    documents = FileDocumentSource({index: Path(path) for index, path in enumerate(args.document, start=1)})
    app = PaperChatApp(document_source=documents)
    try:
        if args.list_sessions:
            print_sessions(app)
            return 0
        if args.provider:
            app.provider_registry.set_active_provider(args.provider)
        if args.api_key:
            registry = app.provider_registry
            registry.update_provider_config(
                registry.get_active_provider_id(), {"api_key": args.api_key, "enabled": True}
            )
        if args.model:
            app.provider_registry.select_model(args.model)
        TerminalChat(app, args.item).run()
        return 0
    except KeyError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    finally:
        app.destroy()


if __name__ == "__main__":
    sys.exit(main())
