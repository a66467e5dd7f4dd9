import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.progress import Progress, BarColumn, TaskProgressColumn, TextColumn

from .config import Config, load_config
from .database.models import MESSAGE_TYPES
from .database.repository import Repository, MessageRecord, SearchOptions
from .embedding.client import EmbeddingClient
from .embedding.backfill import BackfillResult, embed_messages, DEFAULT_BATCH_SIZE
from .telegram.client import TelegramClient
from .telegram.message_fetcher import MessageFetcher
from .ui.menu import MenuUI, console


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger("telethon").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tg-search",
        description="Archive Telegram chats and search them by meaning",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    embed = sub.add_parser("embed", help="Generate embeddings for messages that don't have them")
    embed.add_argument("-b", "--batch-size", type=positive_int, default=None,
                       help=f"Batch size for processing (default: BATCH_SIZE or {DEFAULT_BATCH_SIZE})")
    embed.add_argument("-c", "--chat-id", type=int, help="Only process messages from this chat")

    search = sub.add_parser("search", help="Find messages similar to a query")
    search.add_argument("query", help="Text to search for")
    search.add_argument("-c", "--chat-id", type=int, help="Only search this chat")
    search.add_argument("-t", "--type", choices=MESSAGE_TYPES, help="Only this message type")
    search.add_argument("--since", type=datetime.fromisoformat, help="Only messages after this time (ISO 8601)")
    search.add_argument("--until", type=datetime.fromisoformat, help="Only messages before this time (ISO 8601)")
    search.add_argument("-n", "--limit", type=positive_int, default=10, help="Number of results (default: 10)")
    search.add_argument("--offset", type=non_negative_int, default=0, help="Skip this many results")

    sync = sub.add_parser("sync", help="Archive folders, chats and message history")
    sync.add_argument("-c", "--chat-id", type=int, action="append",
                      help="Chat to archive; repeat for more (default: choose interactively)")
    sync.add_argument("--limit-dialogs", type=positive_int, default=100,
                      help="How many recent dialogs to list (default: 100)")
    sync.add_argument("--limit-messages", type=positive_int, default=None,
                      help="Stop after this many messages per chat")

    imp = sub.add_parser("import", help="Archive chat history from a Telegram Desktop JSON export")
    imp.add_argument("path", type=Path, help="result.json or the export directory")
    imp.add_argument("-c", "--chat-id", type=int, action="append",
                     help="Only import this chat; repeat for more (default: every chat in the export)")

    watch = sub.add_parser("watch", help="Store new messages as they arrive")
    watch.add_argument("-c", "--chat-id", type=int, action="append",
                       help="Chat to watch; repeat for more (default: choose interactively)")
    watch.add_argument("--all", action="store_true", help="Watch every chat")

    chats = sub.add_parser("chats", help="List archived chats")
    chats.add_argument("-f", "--folder-id", type=int, help="Only chats in this folder")

    return parser


def make_repository(config: Config) -> Repository:
    return Repository(config.db_path, dimensions=config.embedding_dimensions)


def make_embedder(config: Config) -> EmbeddingClient:
    return EmbeddingClient(
        api_key=config.openai_api_key,
        model=config.embedding_model,
        dimensions=config.embedding_dimensions,
        api_base=config.openai_api_base,
        timeout=config.embedding_timeout,
    )


def make_telegram(config: Config) -> TelegramClient:
    return TelegramClient(
        config.tg_api_id,
        config.tg_api_hash,
        config.session_path,
        bot_token=config.tg_bot_token,
    )


async def run_embed(args: argparse.Namespace, config: Config) -> int:
    batch_size = args.batch_size or config.batch_size

    async with make_repository(config) as repo, make_embedder(config) as embedder:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("[cyan]Embedding messages...", total=None)

            def on_progress(result: BackfillResult) -> None:
                progress.update(task, total=result.total, completed=result.processed)

            result = await embed_messages(
                repo,
                embedder,
                batch_size=batch_size,
                chat_id=args.chat_id,
                on_progress=on_progress,
            )

    MenuUI.show_backfill_result(result)
    if result.total:
        console.print(
            f"Processed {result.processed} messages, "
            f"{result.failed} failed or skipped"
        )
    return 0


async def run_search(args: argparse.Namespace, config: Config) -> int:
    options = SearchOptions(
        chat_id=args.chat_id,
        type=args.type,
        start_time=args.since,
        end_time=args.until,
        limit=args.limit,
        offset=args.offset,
    )

    async with make_repository(config) as repo, make_embedder(config) as embedder:
        query_embedding = await embedder.generate_embedding(args.query.strip())
        results = await repo.find_similar_messages(query_embedding, options)

    MenuUI.show_search_results(args.query, results)
    return 0


async def run_chats(args: argparse.Namespace, config: Config) -> int:
    async with make_repository(config) as repo:
        if args.folder_id is not None:
            chats = await repo.get_chats_in_folder(args.folder_id)
        else:
            chats = await repo.get_all_chats()
        folders = await repo.get_all_folders()

    if not chats:
        MenuUI.show_info("No chats archived yet. Run `tg-search sync` or `tg-search import` first.")
        return 0

    MenuUI.show_chats(chats, folders)
    return 0


async def run_sync(args: argparse.Namespace, config: Config) -> int:
    MenuUI.show_welcome()
    async with make_repository(config) as repo:
        async with make_telegram(config) as tg_client:
            fetcher = MessageFetcher(tg_client, repo)

            console.print("[dim]Loading folders and chats...[/dim]")
            chats = await fetcher.sync_dialogs(limit=args.limit_dialogs)

            if args.chat_id:
                wanted = set(args.chat_id)
                selected = [c for c in chats if c.id in wanted]
                missing = wanted - {c.id for c in selected}
                if missing:
                    MenuUI.show_error(f"Chats not found among recent dialogs: {sorted(missing)}")
                    return 1
            else:
                selected = await MenuUI.select_chats(chats)

            if not selected:
                console.print("[dim]Nothing selected.[/dim]")
                return 0

            total = 0
            for chat in selected:
                saved = await fetcher.sync_chat(chat, limit=args.limit_messages)
                MenuUI.show_success(f"{chat.name}: {saved} new messages")
                total += saved

    console.print(f"\n[green]✓ Archived {total} new messages from {len(selected)} chats[/green]")
    console.print("[dim]Run `tg-search embed` to make them searchable.[/dim]")
    return 0


async def run_import(args: argparse.Namespace, config: Config) -> int:
    if not args.path.exists():
        MenuUI.show_error(f"Export not found: {args.path}")
        return 1

    MenuUI.show_welcome()
    async with make_repository(config) as repo:
        fetcher = MessageFetcher(None, repo)
        results = await fetcher.import_export(args.path, chat_ids=args.chat_id)

    if args.chat_id:
        missing = sorted(set(args.chat_id) - set(results))
        if missing:
            MenuUI.show_error(f"Chats not found in the export: {missing}")
            return 1

    total = sum(results.values())
    console.print(f"\n[green]✓ Archived {total} new messages from {len(results)} chats[/green]")
    console.print("[dim]Run `tg-search embed` to make them searchable.[/dim]")
    return 0


async def run_watch(args: argparse.Namespace, config: Config) -> int:
    MenuUI.show_welcome()
    async with make_repository(config) as repo:
        async with make_telegram(config) as tg_client:
            fetcher = MessageFetcher(tg_client, repo)

            chat_ids: Optional[list[int]] = None
            if args.chat_id:
                chat_ids = args.chat_id
            elif not args.all:
                if tg_client.is_bot:
                    MenuUI.show_error("Bots must pass --chat-id or --all.")
                    return 1
                chats = await tg_client.get_dialogs(limit=100)
                selected = await MenuUI.select_chat(chats)
                if not selected:
                    console.print("[dim]Cancelled.[/dim]")
                    return 0
                chat_ids = [selected.id]

            saved = 0

            async def on_saved(message: MessageRecord) -> None:
                nonlocal saved
                saved += 1
                stamp = datetime.now().strftime("%H:%M:%S")
                console.print(f"[dim]{stamp}[/dim] saved message {message.id} from chat {message.chat_id} ({saved} total)")

            fetcher.watch(chat_ids, on_saved=on_saved)

            console.print("\n[bold green]🟢 Watching for new messages[/bold green]")
            console.print("[dim]Press Ctrl+C to stop[/dim]\n")

            try:
                await tg_client.run_until_disconnected()
            finally:
                console.print(f"\n[yellow]Stopped watching, saved {saved} new messages.[/yellow]")

    return 0


COMMANDS = {
    "embed": (run_embed, {"require_embedding": True}),
    "search": (run_search, {"require_embedding": True}),
    "chats": (run_chats, {}),
    "sync": (run_sync, {"require_telegram": True}),
    "import": (run_import, {}),
    "watch": (run_watch, {"require_telegram": True}),
}


async def async_main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    handler, requirements = COMMANDS[args.command]

    try:
        config = load_config(**requirements)
        logging.getLogger().setLevel(logging.DEBUG if args.verbose else config.log_level)
    except ValueError as e:
        MenuUI.show_error(str(e))
        console.print("\nPlease copy .env.example to .env and fill in your credentials.")
        return 1

    try:
        return await handler(args, config)
    except Exception as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        MenuUI.show_error(str(e))
        return 1


def main():
    try:
        exit_code = asyncio.run(async_main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    main()
