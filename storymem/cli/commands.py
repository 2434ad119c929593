"""CLI commands for storymem."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from storymem import __logo__, __version__

app = typer.Typer(
    name="storymem",
    help=f"{__logo__} storymem - Semantic memory for roleplay chats",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} storymem v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """storymem - Semantic memory for roleplay chats."""
    pass


# ============================================================================
# Shared helpers
# ============================================================================


def _make_service():
    """Build a MemoryService from the user's config file."""
    from storymem.config.loader import load_config
    from storymem.logging_config import setup_logging
    from storymem.memory.service import create_service

    config = load_config()
    setup_logging(config.log_level)
    return create_service(config)


def _run(coro_factory):
    """Run ``coro_factory(service)`` on a fresh service and close it afterwards."""
    async def runner():
        service = _make_service()
        try:
            return await coro_factory(service)
        finally:
            await service.close()

    return asyncio.run(runner())


def _preview(text: str, width: int = 80) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 3] + "..."


# ============================================================================
# Setup
# ============================================================================


@app.command()
def init():
    """Write a default configuration file."""
    from storymem.config.loader import get_config_path, save_config
    from storymem.config.schema import Config

    config_path = get_config_path()
    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")
    console.print("\nNext: set embedding.apiKey (or embedding.apiBase for a local server) in that file.")


# ============================================================================
# Collections
# ============================================================================


@app.command("collections")
def list_collections():
    """List collections with stored data."""
    names = _run(lambda service: service.list_collections())
    if not names:
        console.print("No collections.")
        return
    for name in names:
        console.print(name)


@app.command()
def stats(collection: str = typer.Argument(..., help="Collection name")):
    """Show memory and vector counts for a collection."""
    info = _run(lambda service: service.collection_stats(collection))

    table = Table(title=f"Collection {collection}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Memories", str(info.memories))
    table.add_row("Vectors", str(info.vectors))
    table.add_row("Live", str(info.live))
    table.add_row("Dead", str(info.dead))
    table.add_row("Dimensions", str(info.dimensions) if info.dimensions else "[dim]unset[/dim]")
    console.print(table)


@app.command("list")
def list_memories(
    collection: str = typer.Argument(..., help="Collection name"),
    limit: int = typer.Option(50, "--limit", "-n", help="Show at most this many memories (newest last)"),
):
    """List memories in chronological order."""
    memories = _run(lambda service: service.get_all_memories(collection))
    if not memories:
        console.print(f"No memories in {collection}.")
        return

    table = Table(title=f"Memories in {collection} ({len(memories)})")
    table.add_column("ID", style="cyan")
    table.add_column("Imp.")
    table.add_column("Mood")
    table.add_column("Text")
    for memory in memories[-limit:]:
        table.add_row(memory.id, str(memory.effective_importance), memory.mood or "", _preview(memory.full_text))
    console.print(table)


@app.command()
def search(
    collection: str = typer.Argument(..., help="Collection name"),
    query: str = typer.Argument(..., help="Query text"),
    k: int = typer.Option(None, "-k", help="Maximum memories to return"),
    budget: int = typer.Option(None, "--budget", "-b", help="Token budget"),
    facts: bool = typer.Option(False, "--facts", help="Print injectable facts instead of memories"),
):
    """Retrieve the memories most relevant to a query."""
    from storymem.memory.sanitize import compact_facts

    results = _run(lambda service: service.search_relevant_memories(collection, query, k=k, token_budget=budget))
    if not results:
        console.print("No relevant memories.")
        return

    if facts:
        for fact in compact_facts(results):
            console.print(f"- {fact}")
        return

    table = Table(title=f"Results for {query!r}")
    table.add_column("Score", style="green")
    table.add_column("ID", style="cyan")
    table.add_column("Text")
    for memory in results:
        table.add_row(f"{memory.score:.3f}", memory.id, _preview(memory.full_text))
    console.print(table)


@app.command()
def add(
    collection: str = typer.Argument(..., help="Collection name"),
    text: str = typer.Argument(..., help="Memory text"),
):
    """Add a single memory by hand."""
    memory = _run(lambda service: service.add_memory(collection, text))
    if memory is None:
        console.print("[yellow]Nothing to store after sanitization.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Added memory {memory.id}")


@app.command()
def forget(
    collection: str = typer.Argument(..., help="Collection name"),
    memory_ids: list[str] = typer.Argument(..., help="Memory IDs to delete"),
):
    """Delete memories and re-link the chain around them."""
    _run(lambda service: service.delete_memories(collection, memory_ids))
    console.print(f"[green]✓[/green] Removed {len(memory_ids)} memories from {collection}")


@app.command()
def drop(
    collection: str = typer.Argument(..., help="Collection name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a whole collection."""
    if not yes and not typer.confirm(f"Delete all memories in {collection}?"):
        raise typer.Exit()
    _run(lambda service: service.delete_collection(collection))
    console.print(f"[green]✓[/green] Deleted collection {collection}")


if __name__ == "__main__":
    app()
