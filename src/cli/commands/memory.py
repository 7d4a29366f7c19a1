"""Memory CLI commands: ingest, search, slice, remember, snapshot, status."""

import asyncio
import json

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from cli.utils import get_components

console = Console()


def _facts_table(title: str, facts) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim", width=6)
    table.add_column("Subject", width=14)
    table.add_column("Type", width=12)
    table.add_column("Fact")
    table.add_column("Score", width=8)
    table.add_column("Lex", width=6)
    table.add_column("Sem", width=6)
    for f in facts:
        table.add_row(
            str(f.id),
            f.subject[:14],
            f.fact_type,
            f.fact[:100],
            f"{f.score:.3f}",
            f"{f.lexical_score:.2f}",
            f"{f.semantic_score:.2f}",
        )
    return table


@click.group()
def memory():
    """Durable memory: grounded facts distilled from chat messages."""
    pass


@memory.command("ingest")
@click.argument("content")
@click.option("--message-id", "-m", required=True, help="Unique message id (dedup key)")
@click.option("--author-id", "-a", required=True, help="Author user id")
@click.option("--author-name", default="unknown", help="Author display name")
@click.option("--guild", "-g", "guild_id", default=None, help="Guild (scope) id")
@click.option("--channel", "-c", "channel_id", default=None, help="Channel id")
def memory_ingest(content, message_id, author_id, author_name, guild_id, channel_id):
    """Ingest one message: journal it and extract grounded facts."""
    from memory.models import TraceContext

    c = get_components()
    engine = c["engine"]

    async def _run():
        future = engine.ingest_message(
            message_id,
            author_id,
            author_name,
            content,
            c["config_model"],
            TraceContext(guild_id=guild_id, channel_id=channel_id, user_id=author_id, source="cli"),
        )
        processed = await future
        await engine.close()
        return processed

    processed = asyncio.run(_run())
    counters = engine.metrics.summary()["counters"]
    if processed:
        console.print(
            f"[green]Processed[/] {message_id}: "
            f"{counters.get('facts.inserted', 0)} fact(s) stored, "
            f"{counters.get('facts.rejected', 0)} rejected"
        )
    else:
        console.print(f"[yellow]Not processed:[/] {message_id}")


@memory.command("search")
@click.argument("query")
@click.option("--guild", "-g", "guild_id", required=True, help="Guild (scope) id")
@click.option("--channel", "-c", "channel_id", default=None, help="Channel id for locality boost")
@click.option("--limit", "-n", default=10, help="Max results (1-24)")
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def memory_search(query, guild_id, channel_id, limit, as_json):
    """Hybrid search over all facts in a guild."""
    c = get_components()
    engine = c["engine"]
    facts = asyncio.run(
        engine.search_durable_facts(guild_id, channel_id, query, c["config_model"], limit=limit)
    )

    if as_json:
        click.echo(json.dumps([f.to_dict() for f in facts], indent=2))
        return
    if not facts:
        console.print("No matching facts.")
        return
    console.print(_facts_table(f"Facts matching '{query}'", facts))


@memory.command("slice")
@click.argument("query", default="")
@click.option("--user", "-u", "user_id", default=None, help="User id the prompt is for")
@click.option("--guild", "-g", "guild_id", required=True, help="Guild (scope) id")
@click.option("--channel", "-c", "channel_id", default=None, help="Channel id")
def memory_slice(query, user_id, guild_id, channel_id):
    """Show the memory slice a prompt for this user/query would receive."""
    from memory.engine import load_prompt_memory_slice

    c = get_components()
    errors = []
    mem_slice = asyncio.run(
        load_prompt_memory_slice(
            c["engine"],
            c["config_model"],
            user_id,
            guild_id,
            channel_id,
            query,
            source="cli_slice",
            on_error=lambda error, context: errors.append(error),
        )
    )
    for error in errors:
        console.print(f"[red]Error:[/] {error}")

    console.print(_facts_table("User facts", mem_slice.user_facts))
    console.print(_facts_table("Relevant facts", mem_slice.relevant_facts))
    console.print(f"Relevant messages: {len(mem_slice.relevant_messages)}")
    for msg in mem_slice.relevant_messages:
        console.print(f"  [dim]{msg['created_at'][:19]}[/] {msg['author_name']}: {msg['content'][:100]}")


@memory.command("remember")
@click.argument("line")
@click.option("--guild", "-g", "guild_id", required=True, help="Guild (scope) id")
@click.option("--user", "-u", "user_id", default=None, help="User issuing the directive")
@click.option("--channel", "-c", "channel_id", default=None, help="Channel id")
@click.option("--scope", type=click.Choice(["lore", "self"]), default="lore")
@click.option("--source-text", default=None, help="Original message text (defaults to LINE)")
@click.option("--message-id", "-m", default=None, help="Source message id")
def memory_remember(line, guild_id, user_id, channel_id, scope, source_text, message_id):
    """Store a "remember this" line as lore or bot self-memory."""
    c = get_components()
    engine = c["engine"]

    async def _run():
        stored = await engine.remember_directive_line(
            line,
            message_id,
            user_id,
            guild_id,
            channel_id=channel_id,
            source_text=source_text if source_text is not None else line,
            scope=scope,
            settings=c["config_model"],
        )
        await engine.close()
        return stored

    if asyncio.run(_run()):
        console.print(f"[green]Remembered[/] ({scope}): {line}")
    else:
        console.print("[yellow]Rejected:[/] line is empty, ungrounded, or instruction-like")


@memory.command("snapshot")
@click.option("--no-refresh", is_flag=True, help="Print the existing MEMORY.md without rebuilding")
def memory_snapshot(no_refresh):
    """Rebuild and print the operator MEMORY.md snapshot."""
    c = get_components()
    engine = c["engine"]

    async def _run():
        if not no_refresh:
            await engine.refresh_memory_markdown()
        return await engine.read_memory_markdown()

    console.print(Markdown(asyncio.run(_run())))


@memory.command("status")
def memory_status():
    """Show fact counts by type, vectors, and embedding readiness."""
    c = get_components()
    stats = c["store"].get_stats()

    console.print(f"Active facts: {stats['total_active']}")
    console.print(f"Archived: {stats['total_archived']}")
    console.print(f"Vectors: {stats['vectors']}")
    console.print(f"Embeddings ready: {c['llm'].is_embedding_ready()}")
    if stats["by_type"]:
        console.print("\nBy type:")
        for fact_type, cnt in sorted(stats["by_type"].items()):
            console.print(f"  {fact_type}: {cnt}")
