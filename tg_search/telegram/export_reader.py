"""Reader for Telegram Desktop "Export chat history" JSON files.

Both export shapes are accepted: a single chat (``result.json`` with
``messages`` at the top level) and a full account export (chats under
``chats.list`` and ``left_chats.list``). Chat ids are converted to
Telethon's marked peer ids so exported and synced messages land on the same
rows.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from telethon import utils
from telethon.tl.types import PeerChannel, PeerChat, PeerUser

from ..database.repository import ChatRecord, MessageRecord


logger = logging.getLogger(__name__)


CHAT_TYPES = {
    "personal_chat": "user",
    "bot_chat": "user",
    "saved_messages": "saved",
    "private_group": "group",
    "private_supergroup": "group",
    "public_supergroup": "group",
    "private_channel": "channel",
    "public_channel": "channel",
}

VIDEO_MEDIA = {"video_file", "animation", "video_message"}

PEER_TYPES = {
    "user": PeerUser,
    "chat": PeerChat,
    "channel": PeerChannel,
}


@dataclass
class ExportedChat:
    chat: ChatRecord
    messages: list[MessageRecord] = field(default_factory=list)


def marked_chat_id(raw_id: int, export_type: str) -> int:
    if export_type == "private_group":
        return utils.get_peer_id(PeerChat(raw_id))
    if export_type in ("private_supergroup", "public_supergroup", "private_channel", "public_channel"):
        return utils.get_peer_id(PeerChannel(raw_id))
    return utils.get_peer_id(PeerUser(raw_id))


def peer_id(value: Optional[str]) -> Optional[int]:
    """Convert export peer references like ``user123`` or ``channel456``."""
    if not value:
        return None
    for prefix, peer_type in PEER_TYPES.items():
        if value.startswith(prefix) and value[len(prefix):].isdigit():
            return utils.get_peer_id(peer_type(int(value[len(prefix):])))
    return None


def flatten_text(text: Union[str, list, None]) -> str:
    if text is None:
        return ""
    if isinstance(text, str):
        return text
    return "".join(part if isinstance(part, str) else part.get("text", "") for part in text)


def exported_type(raw: dict) -> str:
    media = raw.get("media_type")
    if media == "sticker":
        return "sticker"
    if media in VIDEO_MEDIA:
        return "video"
    if "photo" in raw:
        return "photo"
    if media:
        return "other"
    if "file" in raw:
        return "document"
    if any(key in raw for key in ("poll", "location_information", "contact_information", "game_title")):
        return "other"
    return "text"


def exported_date(raw: dict) -> datetime:
    if raw.get("date_unixtime"):
        stamp = datetime.fromtimestamp(int(raw["date_unixtime"]), tz=timezone.utc)
        return stamp.replace(tzinfo=None)
    # Older exports only carry local time without an offset
    return datetime.fromisoformat(raw["date"])


def parse_message(raw: dict, chat_id: int) -> Optional[MessageRecord]:
    if raw.get("type") != "message":
        return None

    content = flatten_text(raw.get("text"))

    return MessageRecord(
        id=int(raw["id"]),
        chat_id=chat_id,
        type=exported_type(raw),
        content=content or None,
        from_id=peer_id(raw.get("from_id")),
        reply_to_id=raw.get("reply_to_message_id"),
        forward_from_chat_id=peer_id(raw.get("forwarded_from_id")),
        created_at=exported_date(raw),
    )


def parse_chat(raw: dict) -> ExportedChat:
    export_type = raw.get("type", "personal_chat")
    chat_id = marked_chat_id(int(raw["id"]), export_type)

    messages = []
    for item in raw.get("messages", []):
        record = parse_message(item, chat_id)
        if record is not None:
            messages.append(record)

    chat = ChatRecord(
        id=chat_id,
        name=raw.get("name") or ("Saved Messages" if export_type == "saved_messages" else str(chat_id)),
        type=CHAT_TYPES.get(export_type, "group"),
    )
    return ExportedChat(chat=chat, messages=messages)


def read_export(path: Union[Path, str]) -> Iterator[ExportedChat]:
    path = Path(path)
    if path.is_dir():
        path = path / "result.json"

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if "messages" in data:
        yield parse_chat(data)
        return

    sections = [data.get("chats", {}), data.get("left_chats", {})]
    raw_chats = [chat for section in sections for chat in section.get("list", [])]
    if not raw_chats:
        raise ValueError(f"{path} does not look like a Telegram chat export")

    for raw in raw_chats:
        exported = parse_chat(raw)
        logger.debug("Read %d messages from %s", len(exported.messages), exported.chat.name)
        yield exported
