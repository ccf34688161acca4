"""CLI entry point for the MadeToAutomate chat widget backend.

A terminal chat loop for trying prompts and the booking offer without the
widget.  For production, use the FastAPI server (mta_chat/server.py).

Usage:
    uv run python -m mta_chat.main                         # normal mode (quiet)
    uv run python -m mta_chat.main --name Ann --email ann@example.com
    uv run python -m mta_chat.main --debug                 # shows API calls
"""

from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from mta_chat import config
from mta_chat.engine import ConversationEngine, build_llm
from mta_chat.server import build_calendly_client, build_slot_service
from mta_chat.sessions import SessionStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
        force=True,
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("mta_chat").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="MadeToAutomate chat widget CLI")
    parser.add_argument("--name", help="Visitor name, as the widget form would send it")
    parser.add_argument("--email", help="Visitor email, as the widget form would send it")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  MadeToAutomate Chat - CLI")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    calendly = build_calendly_client()
    try:
        _chat_loop(ConversationEngine(build_llm(), build_slot_service(calendly)), args)
    finally:
        if calendly is not None:
            calendly.close()


def _chat_loop(engine: ConversationEngine, args: argparse.Namespace) -> None:
    store = SessionStore(config.SESSION_TIMEOUT_SECONDS)
    session_id, _ = store.resolve()
    logger.info("Started new session: %s", session_id)
    hints = {"name": args.name, "email": args.email}

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if user_input.lower() == "new":
            session_id, _ = store.resolve()
            print(f"\n>> New session started: {session_id[:8]}...\n")
            continue

        with store.checkout(session_id) as (session_id, session):
            result = engine.handle_turn(session, user_input, profile_hints=hints)

        print(f"\nBot: {result.reply}\n")
        for slot in result.booking_slots:
            line = f"  • {slot.start.strftime('%a %d %b %Y at %H:%M %Z')}"
            if slot.scheduling_url:
                line += f"  ({slot.scheduling_url})"
            print(line)
        if result.booking_slots:
            print()


if __name__ == "__main__":
    main()
