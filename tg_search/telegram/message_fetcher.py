import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Callable, Awaitable

from telethon import utils
from telethon.tl.types import Message as TelethonMessage
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn

from .client import TelegramClient, to_chat_record
from .export_reader import ExportedChat, read_export
from ..database.repository import (
    Repository,
    MessageRecord,
    ChatRecord,
    SyncState,
    to_utc_naive,
)


logger = logging.getLogger(__name__)


def message_type(msg: TelethonMessage) -> str:
    # Stickers and videos are documents too, so check them first
    if msg.sticker:
        return "sticker"
    if msg.video or msg.gif:
        return "video"
    if msg.photo:
        return "photo"
    if msg.document:
        return "document"
    if msg.media:
        return "other"
    return "text"


def to_message_record(msg: TelethonMessage, chat_id: int) -> Optional[MessageRecord]:
    """Convert a Telethon message; service messages yield None."""
    if not isinstance(msg, TelethonMessage):
        return None

    forward_chat_id = None
    forward_msg_id = None
    fwd = msg.fwd_from
    if fwd is not None:
        if fwd.from_id is not None:
            forward_chat_id = utils.get_peer_id(fwd.from_id)
        forward_msg_id = fwd.channel_post or fwd.saved_from_msg_id

    reply_to_id = None
    if msg.reply_to is not None:
        reply_to_id = getattr(msg.reply_to, "reply_to_msg_id", None)

    return MessageRecord(
        id=msg.id,
        chat_id=chat_id,
        type=message_type(msg),
        content=msg.message or None,
        from_id=msg.sender_id,
        reply_to_id=reply_to_id,
        forward_from_chat_id=forward_chat_id,
        forward_from_message_id=forward_msg_id,
        views=msg.views,
        forwards=msg.forwards,
        created_at=to_utc_naive(msg.date),
    )


class MessageFetcher:
    """Moves messages from Telegram (live, history or export) into the repository.

    Only `sync_chat` reads and advances the per-chat `SyncState`: it marks how
    far the contiguous history fetch has got. Live messages and export imports
    rely on insert-or-skip alone, so they can never hide older history from
    the next sync.
    """

    def __init__(self, tg_client: Optional[TelegramClient], repository: Repository, chunk_size: int = 100):
        self.tg_client = tg_client
        self.repo = repository
        self.chunk_size = chunk_size

    def _client(self) -> TelegramClient:
        if self.tg_client is None:
            raise RuntimeError("This operation requires a Telegram client.")
        return self.tg_client

    async def _refresh_chat(self, chat: ChatRecord, last: Optional[MessageRecord] = None) -> ChatRecord:
        stored = await self.repo.get_chat(chat.id)
        if stored:
            chat.folder_id = chat.folder_id or stored.folder_id
            chat.last_message = chat.last_message or stored.last_message
            chat.last_message_date = chat.last_message_date or stored.last_message_date

        if last is not None and (chat.last_message_date is None or last.created_at >= chat.last_message_date):
            chat.last_message = last.content
            chat.last_message_date = last.created_at

        chat.message_count = await self.repo.count_messages(chat.id)
        chat.last_sync_time = datetime.now(timezone.utc)
        return await self.repo.upsert_chat(chat)

    async def sync_dialogs(self, limit: Optional[int] = 100) -> list[ChatRecord]:
        """Store folders and dialogs; chats keep their stored message counts."""
        tg_client = self._client()
        folders, chat_folders = await tg_client.get_folders()
        for folder in folders:
            folder.last_sync_time = datetime.now(timezone.utc)
            await self.repo.upsert_folder(folder)

        chats = await tg_client.get_dialogs(limit=limit)
        stored = []
        for chat in chats:
            chat.folder_id = chat_folders.get(chat.id)
            chat.message_count = await self.repo.count_messages(chat.id)
            stored.append(await self.repo.upsert_chat(chat))

        logger.info("Synced %d folders and %d chats", len(folders), len(stored))
        return stored

    async def _flush(self, chat_id: int, buffer: list[MessageRecord]) -> int:
        inserted = await self.repo.create_messages(buffer)
        await self.repo.save_sync_state(SyncState(
            chat_id=chat_id,
            last_message_id=max(m.id for m in buffer),
        ))
        return len(inserted)

    async def sync_chat(self, chat: ChatRecord, limit: Optional[int] = None) -> int:
        """Fetch history newer than the last synced message and store it.

        Returns the number of newly inserted messages.
        """
        tg_client = self._client()
        state = await self.repo.get_sync_state(chat.id)
        min_id = state.last_message_id if state else 0

        buffer: list[MessageRecord] = []
        last: Optional[MessageRecord] = None
        fetched = 0
        saved = 0

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
        ) as progress:
            task = progress.add_task(f"[cyan]Fetching {chat.name}...", total=limit)

            async for msg in tg_client.iter_history(chat.id, min_id=min_id, limit=limit):
                record = to_message_record(msg, chat.id)
                if record is None:
                    continue

                buffer.append(record)
                last = record
                fetched += 1
                progress.update(task, advance=1, description=f"[cyan]{chat.name}: fetched {fetched} messages...")

                if len(buffer) >= self.chunk_size:
                    saved += await self._flush(chat.id, buffer)
                    buffer = []

            if buffer:
                saved += await self._flush(chat.id, buffer)

            progress.update(task, completed=fetched)

        await self._refresh_chat(chat, last)

        logger.info("Chat %s: fetched %d, saved %d new messages", chat.id, fetched, saved)
        return saved

    async def import_chat(self, exported: ExportedChat) -> int:
        """Store one exported chat's history; returns the number of new messages."""
        saved = 0

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
        ) as progress:
            task = progress.add_task(f"[cyan]Importing {exported.chat.name}...", total=len(exported.messages))

            for start in range(0, len(exported.messages), self.chunk_size):
                chunk = exported.messages[start:start + self.chunk_size]
                saved += len(await self.repo.create_messages(chunk))
                progress.update(task, advance=len(chunk))

        last = max(exported.messages, key=lambda m: m.id) if exported.messages else None
        await self._refresh_chat(exported.chat, last)

        logger.info(
            "Chat %s: %d exported, %d already archived, %d new",
            exported.chat.id, len(exported.messages), len(exported.messages) - saved, saved
        )
        return saved

    async def import_export(self, path: Path, chat_ids: Optional[list[int]] = None) -> dict[int, int]:
        """Import a Telegram Desktop JSON export; returns new message counts per chat."""
        results = {}
        for exported in read_export(path):
            if chat_ids and exported.chat.id not in chat_ids:
                continue
            results[exported.chat.id] = await self.import_chat(exported)
        return results

    async def handle_new_message(self, event) -> Optional[MessageRecord]:
        record = to_message_record(event.message, event.chat_id)
        if record is None:
            return None

        try:
            inserted = await self.repo.create_messages([record])
            if inserted:
                chat = await self.repo.get_chat(record.chat_id)
                if chat is None:
                    chat = to_chat_record(await event.get_chat())
                await self._refresh_chat(chat, record)
        except Exception:
            logger.exception("Failed to save message %s in chat %s", record.id, record.chat_id)
            return None

        return inserted[0] if inserted else None

    def watch(
        self,
        chat_ids: Optional[list[int]] = None,
        on_saved: Optional[Callable[[MessageRecord], Awaitable[None]]] = None,
    ) -> None:
        """Store every new message from `chat_ids` (all chats when None) as it arrives."""
        tg_client = self._client()

        async def on_message(event):
            record = await self.handle_new_message(event)
            if record and on_saved:
                await on_saved(record)

        tg_client.on_new_message(on_message, chats=chat_ids)
