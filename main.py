"""Interactive CLI for the voice inventory pipeline.

Each line typed is treated as one transcription fragment, exactly as a
speech-to-text stream would deliver it.
"""

import argparse
import logging
import os
import sys
import uuid

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from stockvoice.config import DEFAULT_MODELS, load_settings
from stockvoice.errors import StockVoiceError
from stockvoice.models import StructuredCommand
from stockvoice.pipeline import CommandOutcome, VoicePipeline, VoiceSession

_STYLES = {
    "applied": "green",
    "undone": "green",
    "pending": "yellow",
    "cancelled": "dim",
    "ignored": "dim",
}


def main():
    parser = argparse.ArgumentParser(description="Run the voice inventory CLI")
    parser.add_argument("--provider", choices=sorted(DEFAULT_MODELS), help="LLM provider")
    parser.add_argument("--local", action="store_true", help="Run with local Ollama server (shorthand for --provider ollama)")
    parser.add_argument("--base-url", help="Base URL for the LLM API (e.g. http://localhost:11434/v1 for Ollama)")
    parser.add_argument("--model", help="Model name to use")
    parser.add_argument("--db", help="Path to database file")
    parser.add_argument("--user", default="cli-user", help="User id recorded on undo records")
    parser.add_argument("--role", default="staff", help="User role consulted by the confirmation policy")
    parser.add_argument("--log-level", default=None, help="Logging level (default WARNING)")
    args = parser.parse_args()

    # Handle local shorthand
    if args.local:
        args.provider = "ollama"
        if not args.base_url:
            args.base_url = "http://localhost:11434/v1"

    # Command-line flags win over .env
    overrides = {
        "STOCKVOICE_PROVIDER": args.provider,
        "STOCKVOICE_BASE_URL": args.base_url,
        "STOCKVOICE_MODEL": args.model,
        "STOCKVOICE_DB_PATH": args.db,
        "STOCKVOICE_LOG_LEVEL": args.log_level,
    }
    for name, value in overrides.items():
        if value:
            os.environ[name] = value
    settings = load_settings()

    logging.basicConfig(
        level=os.getenv("STOCKVOICE_LOG_LEVEL", "WARNING").upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )

    # Check API key only if using Groq default
    if settings.provider == "groq" and not settings.base_url:
        if not settings.api_key or settings.api_key == "gsk_your_key_here":
            print("Error: Set GROQ_API_KEY in .env file to use Groq, or specify another --provider")
            sys.exit(1)

    console = Console()

    console.print(Panel(
        "[bold cyan]Voice Inventory[/bold cyan]\n"
        "Type what you would say, e.g. \"add 5 pounds of coffee\". Fragments are joined until they form a command.\n"
        "Commands: [dim]/items[/dim]  |  [dim]/add <name> <qty> <unit> [category][/dim]  |  "
        "[dim]/undo[/dim]  |  [dim]/history[/dim]  |  [dim]/flush[/dim]  |  [dim]/quit[/dim]",
        box=box.DOUBLE,
    ))

    pipeline = VoicePipeline.from_settings(settings)
    session = pipeline.open_session(f"cli-{uuid.uuid4().hex[:8]}", args.user, role=args.role)
    session.on_outcome(lambda outcome: _show_outcome(console, outcome))

    console.print(f"[dim]{pipeline.store.item_count()} items in {settings.db_path}[/dim]")

    try:
        _loop(console, pipeline, session)
    finally:
        pipeline.close_session(session.session_id)
        pipeline.store.close()


def _loop(console: Console, pipeline: VoicePipeline, session: VoiceSession):
    while True:
        try:
            user_input = console.input("\n[bold green]You:[/bold green] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/dim]")
            break

        if not user_input:
            continue

        pipeline.sweep()
        command = user_input.lower()

        if command == "/quit":
            console.print("[dim]Goodbye.[/dim]")
            break

        if command == "/items":
            _show_items(console, pipeline)
            continue

        if command.startswith("/add"):
            _add_item(console, pipeline, session, user_input.split()[1:])
            continue

        if command == "/undo":
            session.handle_command(StructuredCommand("undo", "", None, "", 1.0, True))
            continue

        if command == "/history":
            _show_history(console, pipeline, session)
            continue

        if command == "/flush":
            session.flush()
            continue

        # Replies go to the oldest pending confirmation first
        if session.has_pending():
            session.respond(user_input)
        else:
            session.add_fragment(user_input)
            buffered = session.buffer.get_current_buffer()
            if buffered:
                console.print(f"[dim]… {buffered}[/dim]")


def _show_outcome(console: Console, outcome: CommandOutcome):
    style = _STYLES.get(outcome.status, "red")
    subtitle = outcome.status
    if outcome.decision is not None:
        subtitle += f" │ {outcome.decision.type}/{outcome.decision.risk_level}"
    console.print(Panel(
        f"[{style}]{outcome.message}[/{style}]",
        title="[bold blue]Inventory[/bold blue]",
        subtitle=f"[dim]{subtitle}[/dim]",
        box=box.ROUNDED,
        padding=(0, 1),
    ))


def _show_items(console: Console, pipeline: VoicePipeline):
    """Display the catalog in a table."""
    items = pipeline.store.list_items()

    if not items:
        console.print("[dim]No items yet. Use /add to create one.[/dim]")
        return

    table = Table(title="Inventory", box=box.SIMPLE_HEAVY)
    table.add_column("ID", style="dim", width=14)
    table.add_column("Name", style="green", width=28)
    table.add_column("Qty", justify="right", width=10)
    table.add_column("Unit", style="cyan", width=10)
    table.add_column("Category", width=12)
    table.add_column("Min", justify="right", width=6)

    for item in items:
        table.add_row(
            item.id,
            item.name,
            f"{item.quantity:g}",
            item.unit,
            item.category,
            "" if item.threshold is None else f"{item.threshold:g}",
        )

    console.print(table)


def _add_item(console: Console, pipeline: VoicePipeline, session: VoiceSession, parts: list[str]):
    """/add <name words...> <qty> <unit> [category]: the quantity is the last number given."""
    numeric = [i for i, p in enumerate(parts) if _is_number(p)]
    if not numeric or numeric[-1] == 0 or numeric[-1] + 1 >= len(parts):
        console.print("[yellow]Usage: /add <name> <qty> <unit> [category][/yellow]")
        return

    at = numeric[-1]
    name = " ".join(parts[:at])
    unit = parts[at + 1]
    category = parts[at + 2] if at + 2 < len(parts) else "general"

    try:
        item = pipeline.coordinator.create_item(name, float(parts[at]), unit, session.actor, category=category)
    except StockVoiceError as e:
        console.print(f"[red]{e.message}[/red]")
        return
    console.print(f"[green]✓ Created {item.name}: {item.quantity:g} {item.unit}[/green]")


def _show_history(console: Console, pipeline: VoicePipeline, session: VoiceSession):
    """Display the live undo records for this user."""
    records = pipeline.coordinator.list_undo(session.actor)

    if not records:
        console.print("[dim]Nothing to undo.[/dim]")
        return

    table = Table(title="Undo history", box=box.SIMPLE_HEAVY)
    table.add_column("ID", style="dim", width=16)
    table.add_column("Type", style="cyan", width=16)
    table.add_column("Item", style="green", width=24)
    table.add_column("Change", width=36)

    for record in records:
        table.add_row(record.id, record.action_type, record.item_name, record.description)

    console.print(table)


def _is_number(text: str) -> bool:
    try:
        float(text)
    except ValueError:
        return False
    return True


if __name__ == "__main__":
    main()
