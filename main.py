#!/usr/bin/env python3
"""Coach memory CLI."""

import argparse
import logging
import sys

from config.settings import Settings
from coach_memory import (
    ChatMessage,
    ConversationMemoryManager,
    Role,
    StorageError,
    render_context,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Coach Memory - rolling conversation memory for AI coaches"
    )
    parser.add_argument(
        "--db-path",
        type=str,
        help="Path to the SQLite database (default: data/coach_memory.db)"
    )
    parser.add_argument(
        "--provider",
        type=str,
        choices=["openai", "anthropic"],
        default="openai",
        help="LLM provider used for summaries (default: openai)"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    append = commands.add_parser("append", help="Append a message to a conversation")
    append.add_argument("--user", "-u", required=True, help="User ID")
    append.add_argument("--coach", "-c", required=True, help="Coach ID")
    append.add_argument(
        "--role",
        "-r",
        choices=[r.value for r in Role],
        default=Role.USER.value,
        help="Message author (default: user)"
    )
    append.add_argument("content", help="Message text")

    context = commands.add_parser("context", help="Show the assembled context")
    context.add_argument("--user", "-u", required=True, help="User ID")
    context.add_argument("--coach", "-c", required=True, help="Coach ID")
    context.add_argument(
        "--packets",
        type=int,
        default=3,
        help="Number of packet summaries to include (default: 3)"
    )
    context.add_argument(
        "--json",
        action="store_true",
        help="Print the raw context as JSON instead of the prompt section"
    )

    clear = commands.add_parser("clear", help="Reset a conversation")
    clear.add_argument("--user", "-u", required=True, help="User ID")
    clear.add_argument("--coach", "-c", required=True, help="Coach ID")

    monitor = commands.add_parser("monitor", help="List conversations")
    monitor.add_argument("--search", "-s", type=str, help="Filter by user, coach or summary text")
    monitor.add_argument("--limit", type=int, default=50, help="Maximum rows (default: 50)")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    settings_kwargs = {"llm_provider": args.provider, "verbose": args.verbose}
    if args.db_path:
        settings_kwargs["db_path"] = args.db_path
    settings = Settings(**settings_kwargs)

    manager = None
    try:
        manager = ConversationMemoryManager.from_settings(settings)

        if args.command == "append":
            memory = manager.append_message(
                args.user,
                args.coach,
                ChatMessage(role=Role(args.role), content=args.content)
            )
            print(
                f"Saved. {memory.total_message_count} messages in total, "
                f"{len(memory.window)} live."
            )

        elif args.command == "context":
            context = manager.get_context(args.user, args.coach, packet_lookahead=args.packets)
            if args.json:
                print(context.model_dump_json(indent=2))
            else:
                print(render_context(context) or "(no conversation yet)")

        elif args.command == "clear":
            manager.clear(args.user, args.coach)
            print("Conversation cleared.")

        elif args.command == "monitor":
            overviews = manager.list_conversations(search=args.search, limit=args.limit)
            if not overviews:
                print("No conversations found.")
            for row in overviews:
                print("=" * 60)
                print(f"{row.user_id} <-> {row.coach_id}  [{row.conversation_id}]")
                print(
                    f"{row.total_message_count} messages, {row.window_size} live, "
                    f"updated {row.updated_at.isoformat()}"
                )
                if row.rolling_summary:
                    print(f"Summary: {row.rolling_summary}")

    except StorageError as e:
        print(f"Message store error, please retry: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)
    finally:
        if manager is not None:
            manager.close()


if __name__ == "__main__":
    main()
