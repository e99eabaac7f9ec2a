"""
Operator commands for the chain event indexer.

Run with:
    python -m chain_indexer.manage --help
"""

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from alembic.config import Config
from alembic import command
from chain_indexer.core.config import settings
from chain_indexer.core.database import init_database, close_database, DatabaseManager
from chain_indexer.core.logging import setup_logging
from chain_indexer.indexer.core.supervisor import IndexerSupervisor
from chain_indexer.indexer.handlers.escrow_handler import EscrowEventHandler
from chain_indexer.models.indexed_event import EventStatus
from chain_indexer.services.chain_reader import Web3ChainReader
from chain_indexer.services.cursor_store import CursorStore
from chain_indexer.services.event_store import EventFilters, EventStore

console = Console()
app = typer.Typer(help="Chain event indexer management commands")


async def _supervisor() -> IndexerSupervisor:
    session_factory = await init_database()
    return IndexerSupervisor(
        chain_reader=Web3ChainReader(),
        handler=EscrowEventHandler(session_factory),
        cursor_store=CursorStore(session_factory),
        event_store=EventStore(session_factory)
    )


@app.command("init-db")
def init_db():
    """Create all tables."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("Database initialized")

    asyncio.run(_init())


@app.command("reset-db")
def reset_db():
    """Drop all tables."""
    confirm = typer.confirm("Are you sure you want to drop all tables?")
    if not confirm:
        console.print("Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("All tables dropped")

    asyncio.run(_reset())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    command.upgrade(Config("alembic.ini"), revision)
    console.print(f"Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to a specific revision."""
    command.downgrade(Config("alembic.ini"), revision)
    console.print(f"Database downgraded to: {revision}")


@app.command()
def run():
    """Run the indexer service in the foreground."""
    from chain_indexer.indexer.main import main

    asyncio.run(main())


@app.command()
def status():
    """Show the cursor of every source."""
    table = Table(title="Indexer Cursors")
    table.add_column("Source", style="cyan")
    table.add_column("Active")
    table.add_column("Last height", justify="right")
    table.add_column("Last sync")
    table.add_column("Errors", justify="right")
    table.add_column("Last error", style="red")

    async def _status():
        setup_logging()
        session_factory = await init_database()
        cursors = await CursorStore(session_factory).list_all()
        for cursor in cursors:
            table.add_row(
                cursor.source_key,
                "yes" if cursor.is_active else "no",
                str(cursor.last_processed_height),
                cursor.last_sync_at.isoformat() if cursor.last_sync_at else "never",
                str(cursor.error_count),
                cursor.last_error or ""
            )
        console.print(table)
        await close_database()

    asyncio.run(_status())


@app.command()
def health():
    """Check database connectivity and source health."""
    async def _health():
        setup_logging()
        supervisor = await _supervisor()

        db_ok = await DatabaseManager.health_check()
        report = await supervisor.health()

        table = Table(title="Indexer Health")
        table.add_column("Source", style="cyan")
        table.add_column("Healthy")
        table.add_column("Issues")
        for source in report.sources:
            table.add_row(
                source.source,
                "yes" if source.healthy else "no",
                ", ".join(source.issues)
            )
        console.print(table)
        console.print(f"Database: {'connected' if db_ok else 'unreachable'}")
        console.print(f"Events needing intervention: {report.events_needing_intervention}")
        console.print(f"Events stuck in pending: {report.events_stuck_pending}")

        await supervisor.chain_reader.close()
        await close_database()
        return (
            db_ok
            and not report.unhealthy_sources
            and not report.events_needing_intervention
            and not report.events_stuck_pending
        )

    # Sources are checked from the database only; the service itself runs elsewhere
    if not asyncio.run(_health()):
        raise typer.Exit(code=1)


@app.command("retry-failed")
def retry_failed(limit: int = typer.Option(settings.indexer_retry_batch_size, help="Max events to retry")):
    """Re-apply failed events."""
    async def _retry():
        setup_logging()
        supervisor = await _supervisor()
        result = await supervisor.retry_failed_events(limit)
        console.print(f"Processed: {result.processed}  Failed: {result.failed}")
        await supervisor.chain_reader.close()
        await close_database()

    asyncio.run(_retry())


@app.command()
def events(
    network_id: Optional[int] = typer.Option(None),
    contract: Optional[str] = typer.Option(None),
    name: Optional[str] = typer.Option(None),
    status: Optional[EventStatus] = typer.Option(None),
    limit: int = typer.Option(50),
    offset: int = typer.Option(0),
):
    """List indexed events, newest block first."""
    async def _events():
        setup_logging()
        session_factory = await init_database()
        page = await EventStore(session_factory).list_events(EventFilters(
            network_id=network_id,
            contract_address=contract,
            event_name=name,
            status=status,
            limit=limit,
            offset=offset
        ))

        table = Table(title=f"Indexed Events ({page.total} total)")
        table.add_column("ID", justify="right")
        table.add_column("Block", justify="right")
        table.add_column("Event", style="cyan")
        table.add_column("Tx")
        table.add_column("Status")
        table.add_column("Retries", justify="right")
        table.add_column("Error", style="red")
        for event in page.events:
            table.add_row(
                str(event.id),
                str(event.block_number),
                event.event_name,
                f"{event.tx_hash[:10]}...:{event.log_index}",
                event.status.value,
                str(event.retry_count),
                event.processing_error or ""
            )
        console.print(table)
        await close_database()

    asyncio.run(_events())


if __name__ == "__main__":
    app()
