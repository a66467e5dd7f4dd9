"""
Tests for converting Telethon messages and storing them in the archive.
"""

import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from telethon.tl.types import (
    Channel,
    ChatPhotoEmpty,
    Message as TelethonMessage,
    MessageFwdHeader,
    MessageReplyHeader,
    MessageService,
    PeerChannel,
    User,
)

from tg_search.database.repository import ChatRecord, FolderRecord, SyncState
from tg_search.telegram.export_reader import read_export
from tg_search.telegram.message_fetcher import MessageFetcher, message_type, to_message_record
from tests.conftest import make_message


GROUP_ID = -1000000001234
GROUP = Channel(
    id=1234,
    title="Friends",
    photo=ChatPhotoEmpty(),
    date=datetime(2020, 1, 1, tzinfo=timezone.utc),
    megagroup=True,
)


def tg_message(message_id: int, text="hello", **kwargs) -> Mock:
    """A Telethon message with every attribute the converter reads set explicitly."""
    msg = Mock(spec=TelethonMessage)
    attrs = dict(
        id=message_id,
        message=text,
        media=None,
        sticker=None,
        video=None,
        gif=None,
        photo=None,
        document=None,
        fwd_from=None,
        reply_to=None,
        sender_id=42,
        views=None,
        forwards=None,
        date=datetime(2024, 5, 1, 10, message_id % 60, tzinfo=timezone.utc),
    )
    attrs.update(kwargs)
    msg.configure_mock(**attrs)
    return msg


def new_message_event(msg, chat_id: int = GROUP_ID, entity=GROUP):
    return SimpleNamespace(message=msg, chat_id=chat_id, get_chat=AsyncMock(return_value=entity))


def export_message(message_id: int, text="hello", **extra) -> dict:
    raw = {
        "id": message_id,
        "type": "message",
        "date": "2024-05-01T10:00:00",
        "date_unixtime": str(1714557600 + message_id * 60),
        "from": "Alice",
        "from_id": "user42",
        "text": text,
    }
    raw.update(extra)
    return raw


def write_export(path, messages, raw_id=1234, export_type="private_supergroup", name="Friends"):
    path.write_text(json.dumps({
        "name": name,
        "type": export_type,
        "id": raw_id,
        "messages": messages,
    }), encoding="utf-8")
    return path


class FakeTelegram:
    """Minimal stand-in for TelegramClient."""

    def __init__(self, history=(), dialogs=(), folders=None):
        self.history = list(history)
        self.dialogs = list(dialogs)
        self.folders = folders or ([], {})
        self.history_calls = []
        self.handlers = []

    async def get_folders(self):
        return self.folders

    async def get_dialogs(self, limit=100):
        return [ChatRecord(id=c.id, name=c.name, type=c.type) for c in self.dialogs]

    async def iter_history(self, chat_id, min_id=0, limit=None):
        self.history_calls.append((chat_id, min_id, limit))
        newer = [m for m in self.history if m.id > min_id]
        for msg in newer[:limit]:
            yield msg

    def on_new_message(self, callback, chats=None):
        self.handlers.append((callback, chats))


class TestMessageConversion:
    """Telethon message to MessageRecord."""

    def test_text_message(self):
        record = to_message_record(tg_message(7, "hi there"), GROUP_ID)

        assert record.id == 7
        assert record.chat_id == GROUP_ID
        assert record.type == "text"
        assert record.content == "hi there"
        assert record.from_id == 42
        assert record.created_at == datetime(2024, 5, 1, 10, 7)
        assert record.created_at.tzinfo is None

    def test_empty_text_becomes_none(self):
        assert to_message_record(tg_message(1, ""), GROUP_ID).content is None

    def test_service_message_skipped(self):
        assert to_message_record(Mock(spec=MessageService), GROUP_ID) is None

    @pytest.mark.parametrize("attachment,expected", [
        ({"sticker": object(), "document": object()}, "sticker"),
        ({"video": object(), "document": object()}, "video"),
        ({"gif": object(), "document": object()}, "video"),
        ({"photo": object()}, "photo"),
        ({"document": object()}, "document"),
        ({"media": object()}, "other"),
        ({}, "text"),
    ])
    def test_media_types(self, attachment, expected):
        attachment.setdefault("media", object() if attachment else None)
        msg = tg_message(1, text="" if attachment else "plain", **attachment)

        assert message_type(msg) == expected

    def test_caption_kept_with_media(self):
        record = to_message_record(tg_message(1, "look at this", media=object(), photo=object()), GROUP_ID)

        assert record.type == "photo"
        assert record.content == "look at this"

    def test_reply_and_forward_linkage(self):
        msg = tg_message(
            3,
            reply_to=MessageReplyHeader(reply_to_msg_id=2),
            fwd_from=MessageFwdHeader(
                date=datetime(2024, 1, 1, tzinfo=timezone.utc),
                from_id=PeerChannel(5555),
                channel_post=55,
            ),
            views=120,
            forwards=4,
        )

        record = to_message_record(msg, GROUP_ID)

        assert record.reply_to_id == 2
        assert record.forward_from_chat_id == -1000000005555
        assert record.forward_from_message_id == 55
        assert (record.views, record.forwards) == (120, 4)

    def test_forward_from_hidden_sender(self):
        msg = tg_message(3, fwd_from=MessageFwdHeader(date=datetime(2024, 1, 1, tzinfo=timezone.utc)))

        record = to_message_record(msg, GROUP_ID)

        assert record.forward_from_chat_id is None
        assert record.forward_from_message_id is None


class TestSync:
    """Archiving folders, dialogs and history through the user client."""

    @pytest.mark.asyncio
    async def test_sync_dialogs_stores_folders_and_chats(self, repo):
        await repo.create_messages([make_message(i, chat_id=GROUP_ID) for i in range(1, 4)])
        tg = FakeTelegram(
            dialogs=[
                ChatRecord(id=GROUP_ID, name="Friends", type="group"),
                ChatRecord(id=42, name="Alice", type="user"),
            ],
            folders=([FolderRecord(id=3, title="Work", emoji="💼")], {GROUP_ID: 3}),
        )

        chats = await MessageFetcher(tg, repo).sync_dialogs()

        assert [c.id for c in chats] == [GROUP_ID, 42]
        folders = await repo.get_all_folders()
        assert [(f.id, f.title, f.emoji) for f in folders] == [(3, "Work", "💼")]
        assert folders[0].last_sync_time is not None
        assert [c.name for c in await repo.get_chats_in_folder(3)] == ["Friends"]
        assert (await repo.get_chat(GROUP_ID)).message_count == 3
        assert (await repo.get_chat(42)).folder_id is None

    @pytest.mark.asyncio
    async def test_sync_chat_stores_history_in_chunks(self, repo):
        tg = FakeTelegram(history=[tg_message(i, f"text {i}") for i in range(1, 8)])
        fetcher = MessageFetcher(tg, repo, chunk_size=3)
        chat = ChatRecord(id=GROUP_ID, name="Friends", type="group")

        saved = await fetcher.sync_chat(chat)

        assert saved == 7
        assert tg.history_calls == [(GROUP_ID, 0, None)]
        assert (await repo.get_sync_state(GROUP_ID)).last_message_id == 7
        stored = await repo.get_chat(GROUP_ID)
        assert stored.message_count == 7
        assert stored.last_message == "text 7"
        assert stored.last_sync_time is not None

    @pytest.mark.asyncio
    async def test_sync_chat_resumes_after_last_synced_message(self, repo):
        chat = ChatRecord(id=GROUP_ID, name="Friends", type="group")
        await MessageFetcher(FakeTelegram(history=[tg_message(i) for i in range(1, 8)]), repo).sync_chat(chat)

        tg = FakeTelegram(history=[tg_message(i) for i in range(1, 10)])
        saved = await MessageFetcher(tg, repo).sync_chat(chat)

        assert saved == 2
        assert tg.history_calls == [(GROUP_ID, 7, None)]
        assert (await repo.get_sync_state(GROUP_ID)).last_message_id == 9

    @pytest.mark.asyncio
    async def test_sync_chat_skips_service_messages(self, repo):
        tg = FakeTelegram(history=[tg_message(1), Mock(spec=MessageService, id=2), tg_message(3)])

        saved = await MessageFetcher(tg, repo).sync_chat(ChatRecord(id=GROUP_ID, name="Friends", type="group"))

        assert saved == 2
        assert [m.id for m in await repo.find_messages_by_chat_id(GROUP_ID)] == [1, 3]

    @pytest.mark.asyncio
    async def test_sync_requires_client(self, repo):
        with pytest.raises(RuntimeError):
            await MessageFetcher(None, repo).sync_dialogs()


class TestImport:
    """Archiving history from a Telegram Desktop export."""

    @pytest.mark.asyncio
    async def test_import_chat_stores_history_in_chunks(self, repo, tmp_path):
        path = write_export(tmp_path / "result.json", [export_message(i, f"text {i}") for i in range(1, 8)])
        exported = next(read_export(path))
        fetcher = MessageFetcher(None, repo, chunk_size=3)

        saved = await fetcher.import_chat(exported)

        assert saved == 7
        assert await repo.count_messages(GROUP_ID) == 7
        chat = await repo.get_chat(GROUP_ID)
        assert chat.name == "Friends"
        assert chat.type == "group"
        assert chat.message_count == 7
        assert chat.last_message == "text 7"
        assert chat.last_sync_time is not None

    @pytest.mark.asyncio
    async def test_import_leaves_sync_state_alone(self, repo, tmp_path):
        await repo.save_sync_state(SyncState(chat_id=GROUP_ID, last_message_id=4))
        path = write_export(tmp_path / "result.json", [export_message(i) for i in range(1, 7)])

        results = await MessageFetcher(None, repo).import_export(path)

        assert results == {GROUP_ID: 6}
        assert (await repo.get_sync_state(GROUP_ID)).last_message_id == 4

    @pytest.mark.asyncio
    async def test_reimport_is_a_no_op(self, repo, tmp_path):
        path = write_export(tmp_path / "result.json", [export_message(i) for i in range(1, 4)])
        fetcher = MessageFetcher(None, repo)

        first = await fetcher.import_export(path)
        second = await fetcher.import_export(path)

        assert first == {GROUP_ID: 3}
        assert second == {GROUP_ID: 0}
        assert await repo.count_messages() == 3

    @pytest.mark.asyncio
    async def test_service_messages_not_stored(self, repo, tmp_path):
        path = write_export(tmp_path / "result.json", [
            export_message(1),
            {"id": 2, "type": "service", "date": "2024-05-01T10:02:00", "action": "pin_message"},
            export_message(3),
        ])

        results = await MessageFetcher(None, repo).import_export(path)

        assert results == {GROUP_ID: 2}

    @pytest.mark.asyncio
    async def test_import_keeps_folder_assignment(self, repo, tmp_path):
        path = write_export(tmp_path / "result.json", [export_message(1)])
        fetcher = MessageFetcher(None, repo)
        await fetcher.import_export(path)
        chat = await repo.get_chat(GROUP_ID)
        chat.folder_id = 3
        await repo.upsert_chat(chat)

        write_export(path, [export_message(1), export_message(2, "newer")])
        await fetcher.import_export(path)

        chat = await repo.get_chat(GROUP_ID)
        assert chat.folder_id == 3
        assert chat.message_count == 2
        assert chat.last_message == "newer"

    @pytest.mark.asyncio
    async def test_import_filters_chats(self, repo, tmp_path):
        path = write_export(tmp_path / "result.json", [export_message(1)])

        results = await MessageFetcher(None, repo).import_export(path, chat_ids=[777])

        assert results == {}
        assert await repo.count_messages() == 0

    @pytest.mark.asyncio
    async def test_exported_and_synced_rows_coincide(self, repo, tmp_path):
        path = write_export(tmp_path / "result.json", [export_message(i) for i in range(1, 4)])
        await MessageFetcher(None, repo).import_export(path)

        tg = FakeTelegram(history=[tg_message(i) for i in range(1, 6)])
        saved = await MessageFetcher(tg, repo).sync_chat(ChatRecord(id=GROUP_ID, name="Friends", type="group"))

        assert saved == 2
        assert await repo.count_messages(GROUP_ID) == 5


class TestWatchThenImport:
    """Live messages must not hide older history from later imports or syncs."""

    @pytest.mark.asyncio
    async def test_import_after_watch_keeps_older_history(self, repo, tmp_path):
        fetcher = MessageFetcher(FakeTelegram(), repo)
        await fetcher.handle_new_message(new_message_event(tg_message(50, "live")))

        path = write_export(tmp_path / "result.json", [export_message(i) for i in range(1, 51)])
        results = await fetcher.import_export(path)

        assert results == {GROUP_ID: 49}
        assert await repo.count_messages(GROUP_ID) == 50
        assert await repo.get_sync_state(GROUP_ID) is None

    @pytest.mark.asyncio
    async def test_sync_after_watch_fetches_from_the_start(self, repo):
        await MessageFetcher(FakeTelegram(), repo).handle_new_message(new_message_event(tg_message(50, "live")))

        tg = FakeTelegram(history=[tg_message(i) for i in range(1, 51)])
        saved = await MessageFetcher(tg, repo).sync_chat(ChatRecord(id=GROUP_ID, name="Friends", type="group"))

        assert tg.history_calls == [(GROUP_ID, 0, None)]
        assert saved == 49
        assert await repo.count_messages(GROUP_ID) == 50


class TestLiveMessages:
    """Watch mode: storing messages as they arrive."""

    @pytest.mark.asyncio
    async def test_new_message_saved_once(self, repo):
        fetcher = MessageFetcher(FakeTelegram(), repo)
        event = new_message_event(tg_message(9, "live"))

        first = await fetcher.handle_new_message(event)
        second = await fetcher.handle_new_message(event)

        assert first.id == 9
        assert first.content == "live"
        assert second is None
        assert await repo.count_messages(GROUP_ID) == 1

    @pytest.mark.asyncio
    async def test_new_message_from_unknown_chat_creates_it(self, repo):
        fetcher = MessageFetcher(FakeTelegram(), repo)
        alice = User(id=42, first_name="Alice")

        await fetcher.handle_new_message(new_message_event(tg_message(9, "live"), chat_id=42, entity=alice))

        chat = await repo.get_chat(42)
        assert chat.name == "Alice"
        assert chat.type == "user"
        assert chat.message_count == 1
        assert chat.last_message == "live"

    @pytest.mark.asyncio
    async def test_new_message_keeps_known_chat(self, repo):
        await repo.upsert_chat(ChatRecord(id=GROUP_ID, name="Old Friends", type="group", folder_id=3))
        fetcher = MessageFetcher(FakeTelegram(), repo)
        event = new_message_event(tg_message(9, "live"))

        await fetcher.handle_new_message(event)

        event.get_chat.assert_not_awaited()
        chat = await repo.get_chat(GROUP_ID)
        assert chat.name == "Old Friends"
        assert chat.folder_id == 3
        assert chat.message_count == 1

    @pytest.mark.asyncio
    async def test_service_event_ignored(self, repo):
        fetcher = MessageFetcher(FakeTelegram(), repo)

        assert await fetcher.handle_new_message(new_message_event(Mock(spec=MessageService))) is None
        assert await repo.count_messages() == 0

    @pytest.mark.asyncio
    async def test_new_message_failure_is_logged_not_raised(self, repo, caplog):
        fetcher = MessageFetcher(FakeTelegram(), repo)

        await repo.close()
        result = await fetcher.handle_new_message(new_message_event(tg_message(1)))

        assert result is None
        assert "Failed to save message 1" in caplog.text

    @pytest.mark.asyncio
    async def test_watch_registers_handler(self, repo):
        tg = FakeTelegram()
        saved = []

        async def on_saved(record):
            saved.append(record)

        MessageFetcher(tg, repo).watch([GROUP_ID], on_saved=on_saved)

        callback, chats = tg.handlers[0]
        assert chats == [GROUP_ID]

        await callback(new_message_event(tg_message(1)))
        await callback(new_message_event(tg_message(1)))

        assert [r.id for r in saved] == [1]

    @pytest.mark.asyncio
    async def test_watch_requires_client(self, repo):
        with pytest.raises(RuntimeError):
            MessageFetcher(None, repo).watch()
