from typing import Optional

from InquirerPy import inquirer
from InquirerPy.base.control import Choice

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..database.repository import ChatRecord, FolderRecord, SimilarMessage
from ..embedding.backfill import BackfillResult


console = Console()


def _preview(text: Optional[str], width: int = 80) -> str:
    if not text:
        return "[dim]—[/dim]"
    text = " ".join(text.split())
    text = text if len(text) <= width else text[:width - 1] + "…"
    return escape(text)


class MenuUI:

    @staticmethod
    def show_welcome() -> None:
        console.print()
        console.print(Panel.fit(
            "[bold cyan]Telegram Search[/bold cyan]\n"
            "[dim]Archive chats and search them by meaning[/dim]",
            border_style="cyan"
        ))
        console.print()

    @staticmethod
    async def select_chats(chats: list[ChatRecord]) -> list[ChatRecord]:
        if not chats:
            console.print("[red]No chats found![/red]")
            return []

        choices = [
            Choice(value=c, name=f"[{c.type}] {c.name}")
            for c in chats
        ]

        result = await inquirer.checkbox(
            message="Select chats to archive (space to toggle):",
            choices=choices,
            pointer="→",
            enabled_symbol="✓",
            disabled_symbol=" ",
        ).execute_async()

        return result or []

    @staticmethod
    async def select_chat(chats: list[ChatRecord]) -> Optional[ChatRecord]:
        if not chats:
            console.print("[red]No chats found![/red]")
            return None

        choices = [Choice(value=c, name=f"[{c.type}] {c.name}") for c in chats]
        choices.append(Choice(value=None, name="← Cancel"))

        return await inquirer.select(
            message="Select chat to watch:",
            choices=choices,
            pointer="→",
            amark="✓",
        ).execute_async()

    @staticmethod
    def show_chats(chats: list[ChatRecord], folders: Optional[list[FolderRecord]] = None) -> None:
        folder_names = {
            f.id: f"{f.emoji} {f.title}" if f.emoji else f.title
            for f in folders or []
        }

        table = Table(title="Chats", header_style="bold cyan")
        table.add_column("ID", justify="right", style="dim")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Folder")
        table.add_column("Messages", justify="right")
        table.add_column("Last message", style="dim")

        for chat in chats:
            table.add_row(
                str(chat.id),
                escape(chat.name),
                chat.type,
                folder_names.get(chat.folder_id, ""),
                str(chat.message_count),
                chat.last_message_date.strftime("%Y-%m-%d %H:%M") if chat.last_message_date else "",
            )

        console.print(table)

    @staticmethod
    def show_search_results(query: str, results: list[SimilarMessage]) -> None:
        if not results:
            console.print(f"[yellow]No messages match[/yellow] [bold]{escape(query)}[/bold]")
            return

        table = Table(title=f"Results for “{escape(query)}”", header_style="bold cyan")
        table.add_column("Score", justify="right", style="green")
        table.add_column("Chat", justify="right", style="dim")
        table.add_column("Message", justify="right", style="dim")
        table.add_column("Date")
        table.add_column("Type")
        table.add_column("Content")

        for result in results:
            table.add_row(
                f"{result.similarity:.3f}",
                str(result.chat_id),
                str(result.id),
                result.created_at.strftime("%Y-%m-%d %H:%M"),
                result.type,
                _preview(result.content),
            )

        console.print(table)

    @staticmethod
    def show_backfill_result(result: BackfillResult) -> None:
        if result.total == 0:
            console.print("[dim]No messages need embeddings.[/dim]")
            return

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Property", style="cyan")
        table.add_column("Value", justify="right")

        table.add_row("Eligible", str(result.total))
        table.add_row("Processed", str(result.processed))
        table.add_row("Embedded", f"[green]{result.succeeded}[/green]")
        table.add_row("Failed or skipped", f"[red]{result.failed}[/red]" if result.errors else str(result.failed))
        table.add_row("  of which empty", str(result.skipped))

        console.print(table)

    @staticmethod
    def show_error(message: str) -> None:
        console.print(f"[bold red]Error:[/bold red] {escape(message)}")

    @staticmethod
    def show_info(message: str) -> None:
        console.print(f"[cyan]ℹ[/cyan] {escape(message)}")

    @staticmethod
    def show_success(message: str) -> None:
        console.print(f"[green]✓[/green] {escape(message)}")
