# tests/test_cli.py
import json
import sqlite3
from pathlib import Path
from typing import Generator

import pytest
from typer.testing import CliRunner

from agentledger.cli.main import app
from agentledger.chain.agent import AgentChain
from agentledger.chain.store import LedgerStore
from agentledger.core.canon import canonical_json_str
from agentledger.core.types import MintStatus
from agentledger.identity.resolver import compute_agent_id
from agentledger.mint.receipts import MintReceiptTracker
from agentledger.storage import SQLiteStorage

runner = CliRunner()

AGENT = "agent-cli-01"


@pytest.fixture
def temp_db(tmp_path: Path) -> Generator[Path, None, None]:
    """Temporary DB file + auto-cleanup."""
    db_path = tmp_path / "test-cli.db"
    yield db_path
    if db_path.exists():
        db_path.unlink()


@pytest.fixture
def populated_db(temp_db: Path) -> Path:
    """DB with one agent: genesis sequence plus one chat block."""
    with SQLiteStorage(temp_db) as storage:
        chain = AgentChain(AGENT, LedgerStore(storage))
        chain.create_genesis_blocks()
        chain.append("chat", actor="user", params={"text": "Hello world"})
    return temp_db


def test_agents_no_db(tmp_path: Path):
    result = runner.invoke(app, ["agents", "--db", str(tmp_path / "missing.db")])
    assert result.exit_code == 1
    assert "not found" in result.stdout.lower()
    assert "to get started" in result.stdout.lower()


def test_agents_empty_db(temp_db: Path):
    SQLiteStorage(temp_db).close()
    result = runner.invoke(app, ["agents", "--db", str(temp_db)])
    assert result.exit_code == 0
    assert "no agents found" in result.stdout.lower()


def test_agents_with_data(populated_db: Path):
    result = runner.invoke(app, ["agents", "--db", str(populated_db)])
    assert result.exit_code == 0
    assert AGENT in result.stdout
    assert "Blocks" in result.stdout
    assert "4" in result.stdout


def test_agents_reads_env_db(populated_db: Path, monkeypatch):
    monkeypatch.setenv("LEDGER_DB_PATH", str(populated_db))
    result = runner.invoke(app, ["agents"])
    assert result.exit_code == 0
    assert AGENT in result.stdout


def test_blocks_shows_content(populated_db: Path):
    result = runner.invoke(app, ["blocks", AGENT, "--db", str(populated_db), "--limit", "5"])
    assert result.exit_code == 0
    assert "genesis" in result.stdout
    assert "Hello world" in result.stdout


def test_verify_valid_chain(populated_db: Path):
    result = runner.invoke(app, ["verify", AGENT, "--db", str(populated_db)])
    assert result.exit_code == 0
    assert "is valid" in result.stdout


def test_verify_detects_tampering(populated_db: Path):
    conn = sqlite3.connect(populated_db)
    conn.execute("UPDATE agent_blocks SET actor = 'mallory' WHERE idx = 3")
    conn.commit()
    conn.close()

    result = runner.invoke(app, ["verify", "--db", str(populated_db)])
    assert result.exit_code == 1
    assert "Verification failed" in result.stdout
    assert "block_hash" in result.stdout


def test_verify_missing_agent(populated_db: Path):
    result = runner.invoke(app, ["verify", "non-existent-agent", "--db", str(populated_db)])
    assert result.exit_code == 1
    assert "failed" in result.stdout.lower()


def test_export_creates_jsonl(populated_db: Path, tmp_path: Path):
    output_file = tmp_path / "export-test.jsonl"

    result = runner.invoke(
        app,
        ["export", AGENT, "--db", str(populated_db), "--output", str(output_file)],
    )

    assert result.exit_code == 0
    assert "Exported 4 blocks" in result.stdout
    with open(output_file, "r", encoding="utf-8") as f:
        raw = f.read().splitlines()
    lines = [json.loads(line) for line in raw]
    assert raw == [canonical_json_str(b) for b in lines]
    assert [b["index"] for b in lines] == [0, 1, 2, 3]
    assert lines[1]["parent_hash"] == lines[0]["block_hash"]


def test_backfill_then_events(populated_db: Path):
    result = runner.invoke(app, ["backfill-events", "--db", str(populated_db)])
    assert result.exit_code == 0
    assert "4 inserted" in result.stdout

    again = runner.invoke(app, ["backfill-events", AGENT, "--db", str(populated_db)])
    assert "0 inserted" in again.stdout

    events = runner.invoke(app, ["events", AGENT, "--db", str(populated_db), "--type", "chat"])
    assert events.exit_code == 0
    assert "chat" in events.stdout


def test_checkpoint_commands(populated_db: Path):
    result = runner.invoke(app, ["checkpoint", "--db", str(populated_db)])
    assert result.exit_code == 0
    assert "Committed epoch 1" in result.stdout

    idle = runner.invoke(app, ["checkpoint", "--db", str(populated_db)])
    assert idle.exit_code == 0
    assert "nothing to commit" in idle.stdout

    listing = runner.invoke(app, ["checkpoints", "--db", str(populated_db), "--verify"])
    assert listing.exit_code == 0
    assert "Checkpoint chain is valid" in listing.stdout


def test_identity_command():
    result = runner.invoke(app, ["identity", "42", "--chain", "ethereum"])
    assert result.exit_code == 0
    assert compute_agent_id(1, None, 42) in result.stdout


def test_identity_unknown_chain():
    result = runner.invoke(app, ["identity", "42", "--chain", "atlantis"])
    assert result.exit_code == 1
    assert "Unknown chain" in result.stdout


def test_receipts_listing(populated_db: Path):
    with SQLiteStorage(populated_db) as storage:
        tracker = MintReceiptTracker(storage, LedgerStore(storage))
        tracker.create_receipt(AGENT, 3, external_ref="job-9")
        tracker.create_receipt(AGENT, 2)
        tracker.update_status(AGENT, 3, MintStatus.CONFIRMED)

    result = runner.invoke(app, ["receipts", "--db", str(populated_db), "--status", "confirmed"])
    assert result.exit_code == 0
    assert "job-9" in result.stdout

    stalled = runner.invoke(app, ["receipts", "--db", str(populated_db), "--stalled"])
    assert stalled.exit_code == 0
    assert "pending" in stalled.stdout
    assert "job-9" not in stalled.stdout
