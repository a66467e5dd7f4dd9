import asyncio
import re
import base64
import logging
import qrcode
from pathlib import Path
from typing import Optional, Callable, AsyncIterator, Union, Any

from telethon import TelegramClient as TelethonClient
from telethon import utils
from telethon.tl.types import User, Channel, Message as TelethonMessage
from telethon.tl.functions.auth import ExportLoginTokenRequest, ImportLoginTokenRequest
from telethon.tl.functions.messages import GetDialogFiltersRequest
from telethon.tl.types.auth import LoginToken, LoginTokenMigrateTo, LoginTokenSuccess
from telethon.events import NewMessage
from telethon.errors import SessionPasswordNeededError
from rich.console import Console

from ..database.repository import ChatRecord, FolderRecord, to_utc_naive


logger = logging.getLogger(__name__)

console = Console()


def generate_qr_code(data: str) -> str:
    try:
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=1,
            border=2,
        )
        qr.add_data(data)
        qr.make(fit=True)

        lines = []
        for row in qr.get_matrix():
            lines.append("".join("██" if cell else "  " for cell in row))
        return "\n".join(lines)
    except Exception:
        return f"[QR Error] URL: {data}"


def entity_type(entity: Any) -> str:
    if isinstance(entity, User):
        return "saved" if entity.is_self else "user"
    if isinstance(entity, Channel) and not entity.megagroup:
        return "channel"
    return "group"


def to_chat_record(entity: Any) -> ChatRecord:
    chat_id = utils.get_peer_id(entity)
    if isinstance(entity, User) and entity.is_self:
        name = "Saved Messages"
    else:
        name = utils.get_display_name(entity) or str(chat_id)
    return ChatRecord(id=chat_id, name=name, type=entity_type(entity))


def _text(value: Union[str, object, None]) -> str:
    # Newer layers wrap folder titles in TextWithEntities
    if value is None:
        return ""
    return value if isinstance(value, str) else getattr(value, "text", str(value))


class TelegramClient:

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        session_path: Path,
        bot_token: Optional[str] = None,
    ):
        self.api_id = api_id
        self.api_hash = api_hash
        self.session_path = session_path
        self.bot_token = bot_token
        self._client: Optional[TelethonClient] = None
        self._me: Optional[User] = None

    @property
    def client(self) -> TelethonClient:
        if not self._client:
            raise RuntimeError("Client not connected.")
        return self._client

    @property
    def me(self) -> User:
        if not self._me:
            raise RuntimeError("Client not connected.")
        return self._me

    @property
    def is_bot(self) -> bool:
        return bool(self._me and self._me.bot)

    async def connect(self) -> None:
        self._client = TelethonClient(
            str(self.session_path),
            self.api_id,
            self.api_hash,
            system_version="Windows 10"
        )

        await self._client.connect()

        if not await self._client.is_user_authorized():
            if self.bot_token:
                await self._client.sign_in(bot_token=self.bot_token)
            else:
                console.print("\n[bold blue]📱 Telegram Authentication Required[/bold blue]")
                console.print("\n[bold]Choose authentication method:[/bold]")
                console.print("  [green]1[/green] - 📷 QR Code (recommended - scan with phone)")
                console.print("  [yellow]2[/yellow] - 📱 Phone number + code")
                console.print("")

                choice = console.input("[cyan]Enter choice (1 or 2): [/cyan]").strip()

                if choice == "1":
                    await self._auth_with_qr_code()
                else:
                    await self._auth_with_phone()

        self._me = await self._client.get_me()
        name = self._me.username or self._me.first_name
        console.print(f"\n[green]✓ Logged in as {name}{' (bot)' if self._me.bot else ''}[/green]")

    async def _auth_with_qr_code(self) -> None:
        console.print("\n[bold blue]📷 QR Code Authentication[/bold blue]")
        console.print("[dim]Open Telegram on your phone → Settings → Devices → Link Desktop Device[/dim]\n")

        while True:
            try:
                result = await self._client(ExportLoginTokenRequest(
                    api_id=self.api_id,
                    api_hash=self.api_hash,
                    except_ids=[]
                ))

                if isinstance(result, LoginTokenSuccess):
                    console.print("[green]✓ Authentication successful![/green]")
                    return

                if isinstance(result, LoginTokenMigrateTo):
                    await self._client._switch_dc(result.dc_id)
                    result = await self._client(ImportLoginTokenRequest(result.token))
                    if isinstance(result, LoginTokenSuccess):
                        console.print("[green]✓ Authentication successful![/green]")
                        return

                if isinstance(result, LoginToken):
                    token_base64 = base64.urlsafe_b64encode(result.token).decode('utf-8').rstrip('=')
                    qr_url = f"tg://login?token={token_base64}"

                    console.print("\n" + generate_qr_code(qr_url))
                    console.print("\n[dim]Token expires in 30 seconds. Waiting for scan...[/dim]")

                    try:
                        await asyncio.wait_for(self._wait_for_qr_login(), timeout=30.0)
                        if await self._client.is_user_authorized():
                            return
                    except asyncio.TimeoutError:
                        console.print("[yellow]↻ Token expired, generating new QR code...[/yellow]")
                        continue

            except SessionPasswordNeededError:
                console.print("\n[yellow]⚠️ Two-factor authentication (2FA) is enabled[/yellow]")
                password = console.input("[cyan]Enter your 2FA password: [/cyan]", password=True)
                await self._client.sign_in(password=password)
                return
            except Exception as e:
                logger.warning("QR login failed: %s", e)
                console.print("[yellow]Falling back to phone authentication...[/yellow]")
                await self._auth_with_phone()
                return

    async def _wait_for_qr_login(self) -> None:
        while not await self._client.is_user_authorized():
            await asyncio.sleep(1)

    async def _auth_with_phone(self) -> None:
        console.print("\n[bold blue]📱 Phone Authentication[/bold blue]")

        phone = console.input("[cyan]Enter your phone number (with country code): [/cyan]")

        phone = re.sub(r'[^0-9+]', '', phone)
        if not phone.startswith("+"):
            phone = "+" + phone

        console.print(f"\n[dim]Sending code request to {phone}...[/dim]")
        sent_code = await self._client.send_code_request(phone)
        console.print("[green]✓ Code request sent[/green]")

        code = console.input("[bold cyan]Enter the verification code: [/bold cyan]")
        code = re.sub(r'[^0-9]', '', code)

        if not code:
            raise ValueError("Verification code is required")

        try:
            await self._client.sign_in(phone, code, phone_code_hash=sent_code.phone_code_hash)
        except SessionPasswordNeededError:
            console.print("\n[yellow]⚠️ Two-factor authentication (2FA) is enabled[/yellow]")
            password = console.input("[cyan]Enter your 2FA password: [/cyan]", password=True)
            await self._client.sign_in(password=password)

    async def disconnect(self) -> None:
        if self._client:
            await self._client.disconnect()
            self._client = None
            self._me = None

    async def __aenter__(self) -> "TelegramClient":
        await self.connect()
        return self

    async def __aexit__(self, *args) -> None:
        await self.disconnect()

    def _require_user(self, action: str) -> None:
        if self.is_bot:
            raise RuntimeError(f"Bots cannot {action}; log in with a user account.")

    async def get_dialogs(self, limit: Optional[int] = 100) -> list[ChatRecord]:
        self._require_user("list dialogs")
        dialogs = await self.client.get_dialogs(limit=limit)
        chats = []

        for dialog in dialogs:
            chat = to_chat_record(dialog.entity)
            if dialog.message is not None:
                chat.last_message = getattr(dialog.message, "message", None) or None
            chat.last_message_date = to_utc_naive(dialog.date)
            chats.append(chat)

        return chats

    async def get_chat(self, chat_id: int) -> ChatRecord:
        return to_chat_record(await self.client.get_entity(chat_id))

    async def get_folders(self) -> tuple[list[FolderRecord], dict[int, int]]:
        """Return dialog folders and a map of chat id to the first folder holding it."""
        self._require_user("list folders")
        result = await self.client(GetDialogFiltersRequest())
        filters = getattr(result, "filters", result)

        folders: list[FolderRecord] = []
        chat_folders: dict[int, int] = {}

        for item in filters:
            # DialogFilterDefault ("All chats") has no id or title
            if not hasattr(item, "title"):
                continue

            folders.append(FolderRecord(
                id=item.id,
                title=_text(item.title),
                emoji=getattr(item, "emoticon", None),
            ))

            peers = list(getattr(item, "pinned_peers", None) or [])
            peers += list(getattr(item, "include_peers", None) or [])
            for peer in peers:
                try:
                    chat_folders.setdefault(utils.get_peer_id(peer), item.id)
                except TypeError:
                    logger.debug("Cannot resolve folder peer %r", peer)

        return folders, chat_folders

    async def iter_history(
        self,
        chat_id: int,
        min_id: int = 0,
        limit: Optional[int] = None,
    ) -> AsyncIterator[TelethonMessage]:
        """Yield messages newer than `min_id`, oldest first."""
        async for msg in self.client.iter_messages(chat_id, min_id=min_id, limit=limit, reverse=True):
            yield msg

    def on_new_message(self, callback: Callable, chats: Optional[list[int]] = None) -> None:
        @self.client.on(NewMessage(chats=chats))
        async def handler(event):
            await callback(event)

    async def run_until_disconnected(self) -> None:
        await self.client.run_until_disconnected()
