"""Command-line interface for the Hippo memory service."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="hippo",
    help="Hippo memory service CLI",
    no_args_is_help=True,
)
console = Console()


def get_config():
    from hippo.config import HippoConfig

    return HippoConfig()


def get_service():
    """Get a configured MemoryService."""
    from hippo.observability import configure_logging
    from hippo.service import MemoryService

    config = get_config()
    configure_logging(config.debug, config.log_level)
    return MemoryService(config)


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


def memory_table(title: str, memories) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Tier", style="magenta")
    table.add_column("Priority", style="cyan")
    table.add_column("Thread", style="dim")
    table.add_column("Content", style="white")
    for m in memories:
        table.add_row(
            str(m.id)[:12],
            m.tier.value,
            f"{m.priority:.2f}",
            m.thread_id,
            m.content[:80] + ("..." if len(m.content) > 80 else ""),
        )
    return table


# ==================== HEALTH COMMANDS ====================


@app.command()
def health():
    """Check health of all Hippo components."""

    async def _health():
        service = get_service()
        try:
            await service.initialize(start_background=False)
            result = await service.health_check()

            table = Table(title="Hippo Health Check")
            table.add_column("Component", style="cyan")
            table.add_column("Status", style="green")

            for component, status in result.items():
                status_str = "[green]OK[/green]" if status else "[yellow]OFF[/yellow]"
                table.add_row(component, status_str)

            console.print(table)
        finally:
            await service.close()

    run_async(_health())


@app.command()
def stats(user_id: Optional[str] = typer.Option(None, help="User ID to get stats for")):
    """Show statistics about stored memories."""

    async def _stats():
        service = get_service()
        try:
            await service.initialize(start_background=False)
            result = await service.get_stats(user_id)

            table = Table(title="Hippo Statistics")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", style="green")

            for key, value in result.items():
                table.add_row(key, str(value))

            console.print(table)
        finally:
            await service.close()

    run_async(_stats())


# ==================== MEMORY COMMANDS ====================


@app.command()
def recall(
    user_id: str,
    thread_id: Optional[str] = typer.Option(None, help="Current thread"),
    max_items: int = typer.Option(5, help="Max memories (1-20)"),
    deadline_ms: int = typer.Option(30, help="Deadline in milliseconds"),
):
    """Recall ranked memories for a user."""

    async def _recall():
        service = get_service()
        try:
            await service.initialize(start_background=False)
            result = await service.recall(
                user_id, thread_id=thread_id, max_items=max_items, deadline_ms=deadline_ms
            )

            console.print(memory_table(f"Recall: {user_id}", result.memories))
            timed_out = "[yellow]yes[/yellow]" if result.timed_out else "no"
            console.print(
                f"[dim]{result.count} memories in {result.elapsed_ms:.1f}ms, timed out: {timed_out}[/dim]"
            )
        finally:
            await service.close()

    run_async(_recall())


@app.command()
def memories(
    user_id: str,
    thread_id: Optional[str] = typer.Option(None, help="Filter by thread"),
    limit: int = typer.Option(20, help="Page size"),
    offset: int = typer.Option(0, help="Page offset"),
    min_priority: Optional[float] = typer.Option(None, help="Minimum priority"),
    include_deleted: bool = typer.Option(False, help="Include soft-deleted memories"),
):
    """List stored memories for a user."""

    async def _list():
        service = get_service()
        try:
            await service.initialize(start_background=False)
            page = await service.list_memories(
                user_id,
                thread_id=thread_id,
                min_priority=min_priority,
                include_deleted=include_deleted,
                limit=limit,
                offset=offset,
            )

            if not page.memories:
                console.print(f"[yellow]No memories found for {user_id}[/yellow]")
                return

            console.print(memory_table(f"Memories: {user_id}", page.memories))
            console.print(f"[dim]{page.offset + len(page.memories)} of {page.total}[/dim]")
        finally:
            await service.close()

    run_async(_list())


@app.command()
def save(
    user_id: str,
    thread_id: str,
    content: str,
    priority: Optional[float] = typer.Option(None, help="Priority (0-1)"),
    tier: Optional[str] = typer.Option(None, help="TIER1, TIER2 or TIER3"),
):
    """Explicitly save a memory."""
    from hippo.models import MemoryTier

    async def _save():
        service = get_service()
        try:
            await service.initialize(start_background=False)
            result = await service.save_memory(
                user_id,
                thread_id,
                content,
                priority=priority,
                tier=MemoryTier(tier) if tier else None,
            )
            if result.success and result.memory:
                verb = "Superseded" if result.superseded else "Saved"
                console.print(f"[green]{verb} memory: {result.memory.id}[/green]")
                console.print(f"  Tier: {result.memory.tier.value}  Priority: {result.memory.priority:.2f}")
            else:
                console.print(f"[red]Failed: {result.error}[/red]")
                raise typer.Exit(1)
        finally:
            await service.close()

    run_async(_save())


@app.command()
def delete(user_id: str, memory_id: str):
    """Soft-delete a memory."""
    from hippo.service import MemoryServiceError

    async def _delete():
        service = get_service()
        try:
            await service.initialize(start_background=False)
            await service.delete_memory(memory_id, user_id)
            console.print(f"[green]Deleted {memory_id}[/green]")
        except MemoryServiceError as e:
            console.print(f"[red]{type(e).__name__}: {e}[/red]")
            raise typer.Exit(1)
        finally:
            await service.close()

    run_async(_delete())


@app.command()
def audits(
    user_id: str,
    thread_id: Optional[str] = typer.Option(None, help="Filter by thread"),
    limit: int = typer.Option(20, help="Max records"),
):
    """Show recent audit records."""

    async def _audits():
        service = get_service()
        try:
            await service.initialize(start_background=False)
            records = await service.store.list_audits(user_id, thread_id=thread_id, limit=limit)

            table = Table(title=f"Audits: {user_id}")
            table.add_column("When", style="dim")
            table.add_column("Thread", style="cyan")
            table.add_column("Window", style="dim")
            table.add_column("Tokens")
            table.add_column("Avg score", style="magenta")
            table.add_column("Saved", style="green")

            for r in records:
                table.add_row(
                    r.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                    r.thread_id,
                    f"{r.start_msg_id or '-'} .. {r.end_msg_id or '-'}",
                    str(r.token_count),
                    f"{r.score:.3f}",
                    str(r.saved),
                )

            console.print(table)
        finally:
            await service.close()

    run_async(_audits())


# ==================== JOB COMMANDS ====================


@app.command()
def retention():
    """Run one retention pass now."""

    async def _retention():
        service = get_service()
        try:
            await service.initialize(start_background=False)
            console.print("[cyan]Running retention...[/cyan]")
            result = await service.retention.run_once()

            table = Table(title="Retention Results")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", style="green")
            for key, value in result.to_dict().items():
                table.add_row(key, str(value))

            console.print(table)
        finally:
            await service.close()

    run_async(_retention())


# ==================== DIAGNOSTICS ====================


@app.command()
def score(
    content: str,
    role: str = typer.Option("user", help="Message role"),
):
    """Show the quality score breakdown for a message."""
    from hippo.models import MessageEvent
    from hippo.scorer import get_detailed_score
    from hippo.tiers import classify_tier

    config = get_config()
    breakdown = get_detailed_score(
        MessageEvent(user_id="cli", thread_id="cli", msg_id="cli", role=role, content=content),
        config=config.scoring,
    )

    table = Table(title="Quality Score")
    table.add_column("Factor", style="cyan")
    table.add_column("Value", style="green")
    for factor, value in breakdown.to_dict().items():
        table.add_row(factor, f"{value:.3f}")
    console.print(table)

    verdict = breakdown.total >= config.scoring.quality_threshold
    console.print(
        f"Save: {'[green]yes[/green]' if verdict else '[red]no[/red]'}  "
        f"Tier: {classify_tier(content).value}"
    )


@app.command()
def redact(text: str):
    """Redact PII from text and print the placeholder map."""
    from hippo.redaction import redact as redact_text

    result = redact_text(text)
    console.print(result.redacted)
    if result.map:
        console.print(json.dumps(result.map, indent=2))


# ==================== SETUP ====================


@app.command()
def init_db():
    """Initialize database schema."""

    async def _init():
        from hippo.stores.postgres_store import PostgresStore

        config = get_config()
        console.print("[cyan]Initializing Postgres schema...[/cyan]")
        store = PostgresStore(config.postgres)
        try:
            await store.connect()
            await store.initialize_schema()
            console.print("[green]Postgres schema initialized[/green]")
        finally:
            await store.close()

    run_async(_init())


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Port"),
):
    """Run the HTTP API."""
    import uvicorn

    from hippo.api import create_app

    config = get_config()
    started = time.strftime("%Y-%m-%d %H:%M:%S")
    console.print(f"[cyan]Starting Hippo API at {started}[/cyan]")
    uvicorn.run(
        create_app(config=config),
        host=host or config.api.host,
        port=port or config.api.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    app()
