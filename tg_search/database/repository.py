import struct
import logging
import aiosqlite
import sqlite_vec
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union
from dataclasses import dataclass, field

from .models import SCHEMA, MESSAGE_TYPES, CHAT_TYPES


logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = (
    "id, chat_id, type, content, embedding, from_id, reply_to_id, "
    "forward_from_chat_id, forward_from_message_id, views, forwards, created_at"
)

CHAT_COLUMNS = (
    "id, name, type, last_message, last_message_date, last_sync_time, message_count, folder_id"
)


@dataclass
class MessageRecord:
    id: int
    chat_id: int
    created_at: datetime
    type: str = "text"
    content: Optional[str] = None
    from_id: Optional[int] = None
    reply_to_id: Optional[int] = None
    forward_from_chat_id: Optional[int] = None
    forward_from_message_id: Optional[int] = None
    views: Optional[int] = None
    forwards: Optional[int] = None
    embedding: Optional[list[float]] = None


@dataclass
class PendingMessage:
    id: int
    chat_id: int
    content: Optional[str]

    @property
    def key(self) -> tuple[int, int]:
        return (self.chat_id, self.id)


@dataclass
class SimilarMessage:
    id: int
    chat_id: int
    type: str
    content: Optional[str]
    created_at: datetime
    from_id: Optional[int]
    similarity: float


@dataclass
class SearchOptions:
    chat_id: Optional[int] = None
    type: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: int = 10
    offset: int = 0


@dataclass
class ChatRecord:
    id: int
    name: str
    type: str
    last_message: Optional[str] = None
    last_message_date: Optional[datetime] = None
    last_sync_time: Optional[datetime] = None
    message_count: int = 0
    folder_id: Optional[int] = None


@dataclass
class FolderRecord:
    id: int
    title: str
    emoji: Optional[str] = None
    last_sync_time: Optional[datetime] = None


@dataclass
class SyncState:
    chat_id: int
    last_message_id: int = 0
    last_sync_time: Optional[datetime] = None


@dataclass
class ChatStats:
    total: int
    by_type: dict[str, int] = field(default_factory=dict)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _ts(value: Optional[datetime]) -> Optional[str]:
    value = to_utc_naive(value)
    return value.isoformat(sep=" ") if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def deserialize_embedding(blob: Optional[bytes]) -> Optional[list[float]]:
    if blob is None:
        return None
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


class Repository:

    def __init__(self, db_path: Union[Path, str], dimensions: int = 1536):
        self.db_path = db_path
        self.dimensions = dimensions
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Repository not connected.")
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.enable_load_extension(True)
        await self._conn.load_extension(sqlite_vec.loadable_path())
        await self._conn.enable_load_extension(False)
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()
        logger.debug("Opened database %s", self.db_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Repository":
        await self.connect()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    def _check_embedding(self, embedding: list[float]) -> bytes:
        if len(embedding) != self.dimensions:
            raise ValueError(
                f"Embedding has {len(embedding)} dimensions, expected {self.dimensions}"
            )
        return sqlite_vec.serialize_float32(embedding)

    def _message_params(self, message: MessageRecord) -> tuple:
        if message.type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown message type: {message.type!r}")
        if message.created_at is None:
            raise ValueError(f"Message {message.chat_id}/{message.id} has no created_at")
        embedding = None
        if message.embedding is not None:
            embedding = self._check_embedding(message.embedding)
        return (
            message.id,
            message.chat_id,
            message.type,
            message.content,
            embedding,
            message.from_id,
            message.reply_to_id,
            message.forward_from_chat_id,
            message.forward_from_message_id,
            message.views,
            message.forwards,
            _ts(message.created_at),
        )

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            chat_id=row["chat_id"],
            type=row["type"],
            content=row["content"],
            embedding=deserialize_embedding(row["embedding"]),
            from_id=row["from_id"],
            reply_to_id=row["reply_to_id"],
            forward_from_chat_id=row["forward_from_chat_id"],
            forward_from_message_id=row["forward_from_message_id"],
            views=row["views"],
            forwards=row["forwards"],
            created_at=_parse_ts(row["created_at"]),
        )

    @staticmethod
    def _row_to_chat(row: aiosqlite.Row) -> ChatRecord:
        return ChatRecord(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            last_message=row["last_message"],
            last_message_date=_parse_ts(row["last_message_date"]),
            last_sync_time=_parse_ts(row["last_sync_time"]),
            message_count=row["message_count"],
            folder_id=row["folder_id"],
        )

    @staticmethod
    def _row_to_folder(row: aiosqlite.Row) -> FolderRecord:
        return FolderRecord(
            id=row["id"],
            title=row["title"],
            emoji=row["emoji"],
            last_sync_time=_parse_ts(row["last_sync_time"]),
        )

    async def create_messages(self, messages: list[MessageRecord]) -> list[MessageRecord]:
        """Insert messages, skipping any (chat_id, id) already stored.

        Returns only the rows that were actually inserted.
        """
        if not messages:
            return []

        params = [self._message_params(m) for m in messages]
        inserted: list[MessageRecord] = []

        for values in params:
            cursor = await self.conn.execute(
                f"""
                INSERT INTO messages ({MESSAGE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(chat_id, id) DO NOTHING
                RETURNING {MESSAGE_COLUMNS}
                """,
                values
            )
            rows = await cursor.fetchall()
            await cursor.close()
            inserted.extend(self._row_to_message(row) for row in rows)

        await self.conn.commit()

        if inserted:
            logger.debug("Saved %d of %d messages", len(inserted), len(messages))
        return inserted

    async def find_message_by_id(self, chat_id: int, message_id: int) -> Optional[MessageRecord]:
        cursor = await self.conn.execute(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE chat_id = ? AND id = ?",
            (chat_id, message_id)
        )
        row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    async def find_messages_by_chat_id(self, chat_id: int) -> list[MessageRecord]:
        cursor = await self.conn.execute(
            f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE chat_id = ? ORDER BY id ASC",
            (chat_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def count_messages(self, chat_id: Optional[int] = None) -> int:
        query = "SELECT COUNT(*) AS cnt FROM messages"
        params: list = []
        if chat_id is not None:
            query += " WHERE chat_id = ?"
            params.append(chat_id)

        cursor = await self.conn.execute(query, params)
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    async def get_chat_stats(self, chat_id: int) -> ChatStats:
        cursor = await self.conn.execute(
            "SELECT type, COUNT(*) AS cnt FROM messages WHERE chat_id = ? GROUP BY type",
            (chat_id,)
        )
        rows = await cursor.fetchall()
        by_type = {row["type"]: row["cnt"] for row in rows}
        return ChatStats(total=sum(by_type.values()), by_type=by_type)

    @staticmethod
    def _pending_filter(chat_id: Optional[int]) -> tuple[str, list]:
        where = "embedding IS NULL"
        params: list = []
        if chat_id is not None:
            where += " AND chat_id = ?"
            params.append(chat_id)
        return where, params

    async def count_pending_embeddings(self, chat_id: Optional[int] = None) -> int:
        where, params = self._pending_filter(chat_id)
        cursor = await self.conn.execute(
            f"SELECT COUNT(*) AS cnt FROM messages WHERE {where}",
            params
        )
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    async def fetch_pending_embeddings(
        self,
        limit: int,
        chat_id: Optional[int] = None,
        after: Optional[tuple[int, int]] = None,
    ) -> list[PendingMessage]:
        """Return up to `limit` messages without an embedding.

        Rows come back ordered by (chat_id, id); pass the key of the last row
        seen as `after` to continue strictly past it.
        """
        where, params = self._pending_filter(chat_id)
        if after is not None:
            where += " AND (chat_id, id) > (?, ?)"
            params.extend(after)
        params.append(limit)

        cursor = await self.conn.execute(
            f"""
            SELECT id, chat_id, content FROM messages
            WHERE {where}
            ORDER BY chat_id ASC, id ASC
            LIMIT ?
            """,
            params
        )
        rows = await cursor.fetchall()
        return [
            PendingMessage(id=row["id"], chat_id=row["chat_id"], content=row["content"])
            for row in rows
        ]

    async def update_embedding(self, chat_id: int, message_id: int, embedding: list[float]) -> None:
        blob = self._check_embedding(embedding)
        await self.conn.execute(
            "UPDATE messages SET embedding = ? WHERE chat_id = ? AND id = ?",
            (blob, chat_id, message_id)
        )
        await self.conn.commit()

    async def find_similar_messages(
        self,
        embedding: list[float],
        options: Optional[SearchOptions] = None,
    ) -> list[SimilarMessage]:
        options = options or SearchOptions()
        query_vector = self._check_embedding(embedding)

        conditions = ["embedding IS NOT NULL"]
        params: list = [query_vector]

        if options.chat_id is not None:
            conditions.append("chat_id = ?")
            params.append(options.chat_id)
        if options.type:
            conditions.append("type = ?")
            params.append(options.type)
        if options.start_time:
            conditions.append("created_at > ?")
            params.append(_ts(options.start_time))
        if options.end_time:
            conditions.append("created_at < ?")
            params.append(_ts(options.end_time))

        params.extend([options.limit, options.offset])

        cursor = await self.conn.execute(
            f"""
            SELECT id, chat_id, type, content, created_at, from_id,
                   1 - vec_distance_cosine(embedding, ?) AS similarity
            FROM messages
            WHERE {" AND ".join(conditions)}
            ORDER BY similarity DESC
            LIMIT ? OFFSET ?
            """,
            params
        )
        rows = await cursor.fetchall()

        return [
            SimilarMessage(
                id=row["id"],
                chat_id=row["chat_id"],
                type=row["type"],
                content=row["content"],
                created_at=_parse_ts(row["created_at"]),
                from_id=row["from_id"],
                similarity=row["similarity"],
            )
            for row in rows
        ]

    async def upsert_chat(self, chat: ChatRecord) -> ChatRecord:
        if chat.type not in CHAT_TYPES:
            raise ValueError(f"Unknown chat type: {chat.type!r}")

        cursor = await self.conn.execute(
            f"""
            INSERT INTO chats ({CHAT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                type = excluded.type,
                last_message = excluded.last_message,
                last_message_date = excluded.last_message_date,
                last_sync_time = excluded.last_sync_time,
                message_count = excluded.message_count,
                folder_id = excluded.folder_id
            RETURNING {CHAT_COLUMNS}
            """,
            (
                chat.id,
                chat.name,
                chat.type,
                chat.last_message,
                _ts(chat.last_message_date),
                _ts(chat.last_sync_time or _now()),
                chat.message_count,
                chat.folder_id,
            )
        )
        row = await cursor.fetchone()
        await cursor.close()
        await self.conn.commit()
        return self._row_to_chat(row)

    async def get_chat(self, chat_id: int) -> Optional[ChatRecord]:
        cursor = await self.conn.execute(
            f"SELECT {CHAT_COLUMNS} FROM chats WHERE id = ?",
            (chat_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_chat(row) if row else None

    async def get_all_chats(self) -> list[ChatRecord]:
        cursor = await self.conn.execute(
            f"SELECT {CHAT_COLUMNS} FROM chats ORDER BY last_message_date DESC"
        )
        rows = await cursor.fetchall()
        return [self._row_to_chat(row) for row in rows]

    async def get_chats_in_folder(self, folder_id: int) -> list[ChatRecord]:
        cursor = await self.conn.execute(
            f"SELECT {CHAT_COLUMNS} FROM chats WHERE folder_id = ? ORDER BY last_message_date DESC",
            (folder_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_chat(row) for row in rows]

    async def upsert_folder(self, folder: FolderRecord) -> FolderRecord:
        cursor = await self.conn.execute(
            """
            INSERT INTO folders (id, title, emoji, last_sync_time)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                emoji = excluded.emoji,
                last_sync_time = excluded.last_sync_time
            RETURNING id, title, emoji, last_sync_time
            """,
            (folder.id, folder.title, folder.emoji, _ts(folder.last_sync_time or _now()))
        )
        row = await cursor.fetchone()
        await cursor.close()
        await self.conn.commit()
        return self._row_to_folder(row)

    async def get_all_folders(self) -> list[FolderRecord]:
        cursor = await self.conn.execute(
            "SELECT id, title, emoji, last_sync_time FROM folders ORDER BY id ASC"
        )
        rows = await cursor.fetchall()
        return [self._row_to_folder(row) for row in rows]

    async def get_sync_state(self, chat_id: int) -> Optional[SyncState]:
        cursor = await self.conn.execute(
            "SELECT chat_id, last_message_id, last_sync_time FROM sync_state WHERE chat_id = ?",
            (chat_id,)
        )
        row = await cursor.fetchone()
        if row:
            return SyncState(
                chat_id=row["chat_id"],
                last_message_id=row["last_message_id"],
                last_sync_time=_parse_ts(row["last_sync_time"]),
            )
        return None

    async def save_sync_state(self, state: SyncState) -> None:
        await self.conn.execute(
            """
            INSERT INTO sync_state (chat_id, last_message_id, last_sync_time)
            VALUES (?, ?, ?)
            ON CONFLICT(chat_id) DO UPDATE SET
                last_message_id = MAX(sync_state.last_message_id, excluded.last_message_id),
                last_sync_time = excluded.last_sync_time
            """,
            (state.chat_id, state.last_message_id, _ts(state.last_sync_time or _now()))
        )
        await self.conn.commit()
