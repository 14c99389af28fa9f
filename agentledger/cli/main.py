# agentledger/cli/main.py
"""
CLI for inspecting, verifying and exporting agent ledgers.
"""

import os
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from agentledger.chain.store import LedgerStore
from agentledger.checkpoint.service import CheckpointService
from agentledger.config import LedgerSettings
from agentledger.core.canon import canonical_json_str
from agentledger.core.errors import CheckpointAborted, LedgerError, UnknownChain
from agentledger.core.types import MintStatus
from agentledger.events.log import EventLog
from agentledger.identity.resolver import AgentIdentity
from agentledger.mint.receipts import MintReceiptTracker
from agentledger.storage import SQLiteStorage
from agentledger.verify.verifier import ChainVerifier

app = typer.Typer(
    name="agent-ledger",
    help="Inspect, verify and export per-agent hash-chained ledgers",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

DB_OPTION_HELP = "Path to SQLite database (overrides LEDGER_DB_PATH env var)"


def get_db_path(db_flag: Optional[Path] = None) -> Path:
    """Resolve DB path in this order:
    1. --db flag
    2. LEDGER_DB_PATH environment variable
    3. Default: ~/.agentledger/ledger.db
    """
    if db_flag:
        path = db_flag.resolve()
    else:
        env_path = os.environ.get("LEDGER_DB_PATH")
        if env_path:
            path = Path(env_path).resolve()
        else:
            path = Path.home() / ".agentledger" / "ledger.db"

    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def open_storage(db: Optional[Path]) -> SQLiteStorage:
    db_path = get_db_path(db)

    if not db_path.exists():
        console.print(f"[red]Database file not found: {db_path}[/]")
        console.print("[yellow]To get started:[/]")
        console.print("  • Append some agent blocks first (creates/populates DB)")
        console.print("  • Set env var: export LEDGER_DB_PATH=/path/to/your.db")
        console.print("  • Or use --db: agent-ledger agents --db /custom/path.db")
        raise typer.Exit(1)

    try:
        return SQLiteStorage(db_path)
    except Exception as e:
        console.print(f"[red]Failed to open database: {str(e)}[/]")
        console.print("[yellow]The file may be corrupted or not a valid SQLite DB.[/]")
        raise typer.Exit(1)


def format_ts(ms: Optional[int]) -> str:
    if ms is None:
        return "—"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="milliseconds")


def short(h: Optional[str], n: int = 12) -> str:
    if not h:
        return "—"
    return h if len(h) <= n + 2 else f"{h[:n + 2]}…"


@app.callback()
def main():
    """Manage per-agent hash-chained ledgers."""
    load_dotenv()
    settings = LedgerSettings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


@app.command()
def agents(
    db: Optional[Path] = typer.Option(None, "--db", help=DB_OPTION_HELP),
):
    """List all agents with block counts and last activity."""
    storage = open_storage(db)
    store = LedgerStore(storage)

    agent_list = store.list_agents()
    if not agent_list:
        console.print("[yellow]No agents found in database.[/]")
        console.print("  (DB exists but no blocks appended yet)")
        return

    table = Table(title="Agents")
    table.add_column("Agent ID")
    table.add_column("Blocks")
    table.add_column("Last Activity")
    table.add_column("Unchecked")

    for agent_id in agent_list:
        stats = store.get_chain_stats(agent_id)
        table.add_row(agent_id, str(stats.length), format_ts(stats.last_timestamp), str(stats.pending_checkpoint))

    console.print(table)


@app.command()
def blocks(
    agent_id: str = typer.Argument(..., help="Agent ID to display"),
    db: Optional[Path] = typer.Option(None, "--db", help=DB_OPTION_HELP),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent blocks to show"),
):
    """Show the most recent blocks of an agent's chain."""
    storage = open_storage(db)
    store = LedgerStore(storage)

    latest = store.get_latest_block(agent_id)
    if latest is None:
        console.print(f"[yellow]No blocks found for agent '{agent_id}'[/]")
        return

    start = max(0, latest.index - limit + 1)
    for block in store.get_blocks(agent_id, from_index=start):
        epoch = f"epoch {block.checkpoint_epoch}" if block.checkpoint_epoch else "unchecked"
        console.print(
            f"[bold cyan]{block.index:4d} | {format_ts(block.timestamp)} | "
            f"{block.action:14} | {block.actor} | {short(block.block_hash)} | {epoch}[/]"
        )
        if block.params:
            text = json.dumps(block.params, ensure_ascii=False)
            console.print(f"  {text[:160]}{'...' if len(text) > 160 else ''}")
        console.print("  " + "─" * 90)


@app.command()
def verify(
    agent_id: Optional[str] = typer.Argument(None, help="Agent ID to verify (default: every agent)"),
    db: Optional[Path] = typer.Option(None, "--db", help=DB_OPTION_HELP),
):
    """Verify the integrity of agent chains (block hashes + parent links)."""
    storage = open_storage(db)
    store = LedgerStore(storage)
    verifier = ChainVerifier()

    targets = [agent_id] if agent_id else store.list_agents()
    if not targets:
        console.print("[yellow]No agents found in database.[/]")
        return

    failed = 0
    for target in targets:
        result = verifier.verify_from_store(target, store)
        if result.is_valid:
            console.print(f"[green]✓ Agent '{target}' is valid[/]")
            console.print(f"  {result.message}")
        else:
            failed += 1
            console.print(f"[red]✗ Verification failed for agent '{target}'[/]")
            for failure in result.failures:
                console.print(f"  • [{failure.index}] {failure.category}: {failure.message}")

    if failed:
        raise typer.Exit(1)


@app.command()
def export(
    agent_id: str = typer.Argument(..., help="Agent ID to export"),
    db: Optional[Path] = typer.Option(None, "--db", help=DB_OPTION_HELP),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (default: <agent_id>.jsonl)"),
):
    """Export an agent's chain as JSONL (one block per line)."""
    storage = open_storage(db)
    store = LedgerStore(storage)

    try:
        chain = store.get_blocks(agent_id)
    except Exception as e:
        console.print(f"[red]Failed to load agent '{agent_id}': {str(e)}[/]")
        raise typer.Exit(1)

    if not chain:
        console.print(f"[yellow]No blocks found for agent '{agent_id}'[/]")
        raise typer.Exit(0)

    out_path = output or Path(f"{agent_id}.jsonl")
    with open(out_path, "w", encoding="utf-8") as f:
        for block in chain:
            f.write(canonical_json_str(block.to_dict()) + "\n")

    console.print(f"[green]Exported {len(chain)} blocks to {out_path}[/]")
    console.print("Format: JSONL, one canonical (RFC 8785) block per line")


@app.command()
def events(
    agent_id: str = typer.Argument(..., help="Agent ID whose events to show"),
    db: Optional[Path] = typer.Option(None, "--db", help=DB_OPTION_HELP),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent events to show"),
    event_type: Optional[str] = typer.Option(None, "--type", "-t", help="Only events of this type"),
):
    """Show an agent's recent activity events, newest first."""
    storage = open_storage(db)
    log = EventLog(storage)

    recent = log.list(agent_id, limit=limit, type=event_type)
    if not recent:
        console.print(f"[yellow]No events found for agent '{agent_id}'[/]")
        return

    stats = log.stats(agent_id)
    table = Table(title=f"Events for {agent_id} ({stats.count} total)")
    table.add_column("Time")
    table.add_column("Type")
    table.add_column("Actor")
    table.add_column("Hash")

    for event in recent:
        table.add_row(format_ts(event.ts), event.type, event.actor, short(event.content_hash))

    console.print(table)


@app.command("backfill-events")
def backfill_events(
    agent_id: Optional[str] = typer.Argument(None, help="Agent ID to backfill (default: every agent)"),
    db: Optional[Path] = typer.Option(None, "--db", help=DB_OPTION_HELP),
    page_size: int = typer.Option(500, "--page-size", help="Blocks read per page"),
):
    """Seed the event stream from existing chain blocks. Safe to re-run."""
    storage = open_storage(db)
    store = LedgerStore(storage)
    log = EventLog(storage)

    total_inserted = total_skipped = 0
    for target in [agent_id] if agent_id else store.list_agents():
        inserted, skipped = log.backfill_from_blocks(store, target, page_size=page_size)
        total_inserted += inserted
        total_skipped += skipped

    console.print(f"[green]Backfill complete: {total_inserted} inserted, {total_skipped} already present[/]")


@app.command()
def checkpoint(
    db: Optional[Path] = typer.Option(None, "--db", help=DB_OPTION_HELP),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Abort the scan after this many seconds"),
):
    """Commit the next checkpoint epoch over every chain that advanced."""
    storage = open_storage(db)
    service = CheckpointService(LedgerStore(storage))

    try:
        committed = service.run_epoch(timeout=timeout)
    except CheckpointAborted as e:
        console.print(f"[yellow]Checkpoint aborted, nothing written: {e}[/]")
        raise typer.Exit(1)
    except LedgerError as e:
        console.print(f"[red]Checkpoint failed: {e}[/]")
        raise typer.Exit(1)

    if committed is None:
        console.print("[yellow]No chain advanced since the last epoch; nothing to commit.[/]")
        return

    console.print(f"[green]Committed epoch {committed.epoch} over {len(committed.committed_tips)} chains[/]")
    console.print(f"  root {committed.root_commitment}")


@app.command()
def checkpoints(
    db: Optional[Path] = typer.Option(None, "--db", help=DB_OPTION_HELP),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent epochs to show"),
    check: bool = typer.Option(False, "--verify", help="Also verify the whole checkpoint chain"),
):
    """List recent checkpoint epochs."""
    storage = open_storage(db)
    service = CheckpointService(LedgerStore(storage))

    recent = service.list_checkpoints(limit)
    if not recent:
        console.print("[yellow]No checkpoints committed yet.[/]")
    else:
        table = Table(title="Checkpoints")
        table.add_column("Epoch")
        table.add_column("Chains")
        table.add_column("Root")
        table.add_column("Submitted")
        for cp in recent:
            table.add_row(str(cp.epoch), str(len(cp.committed_tips)), short(cp.root_commitment, 18), format_ts(cp.submitted_at))
        console.print(table)

    if check:
        outcome = service.verify_checkpoints()
        if outcome.is_valid:
            console.print("[green]✓ Checkpoint chain is valid[/]")
        else:
            console.print("[red]✗ Checkpoint chain verification failed[/]")
            for problem in outcome.problems:
                console.print(f"  • {problem}")
            raise typer.Exit(1)


@app.command()
def identity(
    token_id: str = typer.Argument(..., help="NFT token id (decimal, 0x-hex or any string)"),
    chain: Optional[str] = typer.Option("ethereum", "--chain", "-c", help="Chain name, e.g. ethereum, base, solana"),
    contract: Optional[str] = typer.Option(None, "--contract", help="Origin contract or collection address"),
    chain_id: Optional[int] = typer.Option(None, "--chain-id", help="Explicit chain id (overrides --chain)"),
):
    """Derive the agent id for an NFT origin."""
    try:
        ident = AgentIdentity.from_nft(chain, contract, token_id, chain_id=chain_id)
    except UnknownChain as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Invalid origin: {e}[/]")
        raise typer.Exit(1)

    console.print(f"[bold]agent id[/]  {ident.agent_id}")
    console.print(f"  chain id  {ident.chain_id}")
    console.print(f"  contract  {ident.origin_contract or '—'}")
    console.print(f"  token id  {ident.token_id}")


@app.command()
def receipts(
    db: Optional[Path] = typer.Option(None, "--db", help=DB_OPTION_HELP),
    status: Optional[MintStatus] = typer.Option(None, "--status", "-s", help="Only receipts in this status"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum receipts to show"),
    stalled: bool = typer.Option(False, "--stalled", help="Only pending receipts with no job id"),
):
    """List mint receipts."""
    storage = open_storage(db)
    tracker = MintReceiptTracker(storage, LedgerStore(storage))

    rows = tracker.stalled(limit) if stalled else tracker.list_by_status(status, limit)
    if not rows:
        console.print("[yellow]No mint receipts found.[/]")
        return

    table = Table(title="Mint Receipts")
    table.add_column("Agent ID")
    table.add_column("Block")
    table.add_column("Status")
    table.add_column("Job")
    table.add_column("Created")

    for r in rows:
        table.add_row(short(r.agent_id), str(r.block_index), r.status.value, r.external_ref or "—", format_ts(r.created_at))

    console.print(table)


if __name__ == "__main__":
    app()
