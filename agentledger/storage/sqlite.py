# agentledger/storage/sqlite.py
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, List, Optional, Sequence

from agentledger.config import LedgerSettings
from agentledger.core.types import (
    Block,
    ChainStats,
    Checkpoint,
    Event,
    EventStats,
    MintReceipt,
    MintStatus,
)
from . import StorageBackend, UniqueViolation

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_BLOCK_COLUMNS = """agent_id, idx, parent_hash, block_hash, timestamp, actor, action,
                    protocol_version, payload_json, checkpoint_epoch"""

_EVENT_COLUMNS = "agent_id, ts, type, actor, data_json, attachments_json, v, content_hash"

_RECEIPT_COLUMNS = "agent_id, block_index, status, created_at, external_ref, updated_at"


def _dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _is_unique_error(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE constraint failed" in str(exc)


class SQLiteStorage(StorageBackend):
    """
    SQLite persistent storage for agent chains, checkpoints, events and mint receipts.
    One connection per instance; other threads/processes open their own instance
    on the same file and coordinate through the unique constraints.
    """

    def __init__(self, db_path: str | Path | None = None, busy_timeout: Optional[float] = None):
        settings = LedgerSettings.from_env()
        self.db_path = Path(db_path) if db_path is not None else settings.resolved_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = self.db_path.resolve()
        self.busy_timeout = busy_timeout if busy_timeout is not None else settings.busy_timeout

        self._conn: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self):
        self._conn = sqlite3.connect(str(self.db_path), isolation_level=None, timeout=self.busy_timeout)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_schema()
        logger.debug("Opened ledger database %s", self.db_path)

    def _create_schema(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS agent_blocks (
                agent_id          TEXT    NOT NULL,
                idx               INTEGER NOT NULL,
                parent_hash       TEXT    NOT NULL,
                block_hash        TEXT    NOT NULL UNIQUE,
                timestamp         INTEGER NOT NULL,
                actor             TEXT    NOT NULL,
                action            TEXT    NOT NULL,
                protocol_version  TEXT    NOT NULL,
                payload_json      TEXT    NOT NULL,
                checkpoint_epoch  INTEGER,
                PRIMARY KEY (agent_id, idx)
            );
            CREATE INDEX IF NOT EXISTS idx_blocks_agent_ts ON agent_blocks(agent_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_blocks_pending  ON agent_blocks(agent_id)
                WHERE checkpoint_epoch IS NULL;

            CREATE TABLE IF NOT EXISTS checkpoints (
                epoch            INTEGER PRIMARY KEY,
                root_commitment  TEXT    NOT NULL,
                previous_root    TEXT    NOT NULL,
                submitted_at     INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_checkpoints_submitted ON checkpoints(submitted_at);

            CREATE TABLE IF NOT EXISTS checkpoint_tips (
                epoch        INTEGER NOT NULL REFERENCES checkpoints(epoch),
                agent_id     TEXT    NOT NULL,
                block_index  INTEGER NOT NULL,
                block_hash   TEXT    NOT NULL,
                PRIMARY KEY (epoch, agent_id)
            );
            CREATE INDEX IF NOT EXISTS idx_tips_agent ON checkpoint_tips(agent_id, epoch);

            CREATE TABLE IF NOT EXISTS mint_receipts (
                agent_id      TEXT    NOT NULL,
                block_index   INTEGER NOT NULL,
                status        TEXT    NOT NULL,
                created_at    INTEGER NOT NULL,
                external_ref  TEXT,
                updated_at    INTEGER,
                PRIMARY KEY (agent_id, block_index)
            );
            CREATE INDEX IF NOT EXISTS idx_receipts_status  ON mint_receipts(status);
            CREATE INDEX IF NOT EXISTS idx_receipts_created ON mint_receipts(created_at);

            CREATE TABLE IF NOT EXISTS agent_events (
                content_hash      TEXT    PRIMARY KEY,
                agent_id          TEXT    NOT NULL,
                ts                INTEGER NOT NULL,
                type              TEXT    NOT NULL,
                actor             TEXT    NOT NULL,
                data_json         TEXT    NOT NULL,
                attachments_json  TEXT    NOT NULL,
                v                 TEXT    NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_events_agent_ts ON agent_events(agent_id, ts DESC);
            CREATE INDEX IF NOT EXISTS idx_events_type_ts  ON agent_events(type, ts DESC);
        """)
        self.conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Storage connection is closed")
        return self._conn

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ── agent_blocks ───────────────────────────────────────────────────────

    @staticmethod
    def _row_to_block(row: sqlite3.Row) -> Block:
        payload = json.loads(row["payload_json"])
        return Block(
            agent_id=row["agent_id"],
            index=row["idx"],
            parent_hash=row["parent_hash"],
            timestamp=row["timestamp"],
            actor=row["actor"],
            action=row["action"],
            params=payload["params"],
            resources=payload["resources"],
            attachments=payload["attachments"],
            protocol_version=row["protocol_version"],
            origin=payload["origin"],
            block_hash=row["block_hash"],
            checkpoint_epoch=row["checkpoint_epoch"],
        )

    def insert_block(self, block: Block) -> None:
        payload = _dumps({
            "params": block.params,
            "resources": block.resources,
            "attachments": block.attachments,
            "origin": block.origin,
        })
        try:
            self.conn.execute(f"""
                INSERT INTO agent_blocks ({_BLOCK_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
            """, (
                block.agent_id, block.index, block.parent_hash, block.block_hash,
                block.timestamp, block.actor, block.action, block.protocol_version, payload,
            ))
        except sqlite3.IntegrityError as e:
            if _is_unique_error(e):
                raise UniqueViolation("agent_blocks", str(e)) from e
            raise

    def latest_block(self, agent_id: str) -> Optional[Block]:
        row = self.conn.execute(f"""
            SELECT {_BLOCK_COLUMNS} FROM agent_blocks
            WHERE agent_id = ? ORDER BY idx DESC LIMIT 1
        """, (agent_id,)).fetchone()
        return self._row_to_block(row) if row else None

    def get_block(self, agent_id: str, index: int) -> Optional[Block]:
        row = self.conn.execute(
            f"SELECT {_BLOCK_COLUMNS} FROM agent_blocks WHERE agent_id = ? AND idx = ?",
            (agent_id, index),
        ).fetchone()
        return self._row_to_block(row) if row else None

    def get_block_by_hash(self, block_hash: str) -> Optional[Block]:
        row = self.conn.execute(
            f"SELECT {_BLOCK_COLUMNS} FROM agent_blocks WHERE block_hash = ?",
            (block_hash,),
        ).fetchone()
        return self._row_to_block(row) if row else None

    def load_blocks(self, agent_id: str, from_index: int = 0, limit: Optional[int] = None) -> List[Block]:
        cursor = self.conn.execute(f"""
            SELECT {_BLOCK_COLUMNS} FROM agent_blocks
            WHERE agent_id = ? AND idx >= ?
            ORDER BY idx ASC
            LIMIT ?
        """, (agent_id, from_index, -1 if limit is None else limit))
        return [self._row_to_block(row) for row in cursor]

    def chain_stats(self, agent_id: str) -> ChainStats:
        row = self.conn.execute("""
            SELECT COUNT(*)                AS length,
                   MIN(timestamp)          AS first_ts,
                   MAX(timestamp)          AS last_ts,
                   MAX(idx)                AS latest_index,
                   SUM(checkpoint_epoch IS NULL) AS pending
            FROM agent_blocks WHERE agent_id = ?
        """, (agent_id,)).fetchone()
        latest = self.latest_block(agent_id)
        return ChainStats(
            agent_id=agent_id,
            length=row["length"],
            first_timestamp=row["first_ts"],
            last_timestamp=row["last_ts"],
            latest_index=row["latest_index"] if row["latest_index"] is not None else -1,
            latest_hash=latest.block_hash if latest else None,
            pending_checkpoint=row["pending"] or 0,
        )

    def list_agents(self) -> List[str]:
        """All agent ids, most recently active first."""
        cursor = self.conn.execute("""
            SELECT agent_id FROM agent_blocks
            GROUP BY agent_id
            ORDER BY MAX(timestamp) DESC, agent_id ASC
        """)
        return [row[0] for row in cursor.fetchall()]

    def uncheckpointed_tips(self, after_agent: Optional[str], limit: int) -> List[Block]:
        cursor = self.conn.execute(f"""
            SELECT {_BLOCK_COLUMNS} FROM agent_blocks AS b
            WHERE b.agent_id IN (
                SELECT DISTINCT agent_id FROM agent_blocks
                WHERE checkpoint_epoch IS NULL AND agent_id > ?
                ORDER BY agent_id LIMIT ?
            )
            AND b.idx = (SELECT MAX(idx) FROM agent_blocks WHERE agent_id = b.agent_id)
            ORDER BY b.agent_id ASC
        """, (after_agent or "", limit))
        return [self._row_to_block(row) for row in cursor]

    # ── checkpoints ────────────────────────────────────────────────────────

    def commit_checkpoint(self, checkpoint: Checkpoint, tips: Sequence[Block]) -> None:
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            # Tips scanned before the lock may have been covered by a rival epoch since.
            for b in tips:
                row = conn.execute(
                    "SELECT checkpoint_epoch FROM agent_blocks WHERE agent_id = ? AND idx = ?",
                    (b.agent_id, b.index),
                ).fetchone()
                if row is not None and row["checkpoint_epoch"] is not None:
                    raise UniqueViolation(
                        "agent_blocks",
                        f"tip {b.agent_id}#{b.index} already covered by epoch {row['checkpoint_epoch']}",
                    )
            conn.execute("""
                INSERT INTO checkpoints (epoch, root_commitment, previous_root, submitted_at)
                VALUES (?, ?, ?, ?)
            """, (checkpoint.epoch, checkpoint.root_commitment, checkpoint.previous_root, checkpoint.submitted_at))
            conn.executemany("""
                INSERT INTO checkpoint_tips (epoch, agent_id, block_index, block_hash)
                VALUES (?, ?, ?, ?)
            """, [(checkpoint.epoch, b.agent_id, b.index, b.block_hash) for b in tips])
            conn.executemany("""
                UPDATE agent_blocks SET checkpoint_epoch = ?
                WHERE agent_id = ? AND idx <= ? AND checkpoint_epoch IS NULL
            """, [(checkpoint.epoch, b.agent_id, b.index) for b in tips])
        except sqlite3.IntegrityError as e:
            conn.execute("ROLLBACK")
            if _is_unique_error(e):
                raise UniqueViolation("checkpoints", str(e)) from e
            raise
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _load_checkpoint(self, row: sqlite3.Row) -> Checkpoint:
        tips = self.conn.execute(
            "SELECT agent_id, block_hash FROM checkpoint_tips WHERE epoch = ? ORDER BY agent_id",
            (row["epoch"],),
        ).fetchall()
        return Checkpoint(
            epoch=row["epoch"],
            committed_tips={t["agent_id"]: t["block_hash"] for t in tips},
            root_commitment=row["root_commitment"],
            previous_root=row["previous_root"],
            submitted_at=row["submitted_at"],
        )

    def latest_checkpoint(self) -> Optional[Checkpoint]:
        row = self.conn.execute(
            "SELECT * FROM checkpoints ORDER BY epoch DESC LIMIT 1"
        ).fetchone()
        return self._load_checkpoint(row) if row else None

    def get_checkpoint(self, epoch: int) -> Optional[Checkpoint]:
        row = self.conn.execute("SELECT * FROM checkpoints WHERE epoch = ?", (epoch,)).fetchone()
        return self._load_checkpoint(row) if row else None

    def list_checkpoints(self, limit: Optional[int] = None) -> List[Checkpoint]:
        """Ascending by epoch; with a limit, the most recent `limit` epochs."""
        rows = self.conn.execute(
            "SELECT * FROM checkpoints ORDER BY epoch DESC LIMIT ?",
            (-1 if limit is None else limit,),
        ).fetchall()
        return [self._load_checkpoint(row) for row in reversed(rows)]

    # ── agent_events ───────────────────────────────────────────────────────

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            agent_id=row["agent_id"],
            ts=row["ts"],
            type=row["type"],
            actor=row["actor"],
            data=json.loads(row["data_json"]),
            attachments=json.loads(row["attachments_json"]),
            v=row["v"],
            content_hash=row["content_hash"],
        )

    def insert_event_if_absent(self, event: Event) -> bool:
        cursor = self.conn.execute(f"""
            INSERT OR IGNORE INTO agent_events ({_EVENT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.agent_id, event.ts, event.type, event.actor,
            _dumps(event.data), _dumps(event.attachments), event.v, event.content_hash,
        ))
        return cursor.rowcount == 1

    def get_event(self, content_hash: str) -> Optional[Event]:
        row = self.conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM agent_events WHERE content_hash = ?",
            (content_hash,),
        ).fetchone()
        return self._row_to_event(row) if row else None

    def list_events(
        self,
        agent_id: str,
        limit: int = 50,
        before_ts: Optional[int] = None,
        event_type: Optional[str] = None,
    ) -> List[Event]:
        query = f"SELECT {_EVENT_COLUMNS} FROM agent_events WHERE agent_id = ?"
        args: list = [agent_id]
        if before_ts is not None:
            query += " AND ts < ?"
            args.append(before_ts)
        if event_type is not None:
            query += " AND type = ?"
            args.append(event_type)
        query += " ORDER BY ts DESC, content_hash ASC LIMIT ?"
        args.append(limit)
        return [self._row_to_event(row) for row in self.conn.execute(query, args)]

    def list_events_by_type(self, event_type: str, limit: int = 50) -> List[Event]:
        cursor = self.conn.execute(f"""
            SELECT {_EVENT_COLUMNS} FROM agent_events
            WHERE type = ? ORDER BY ts DESC, content_hash ASC LIMIT ?
        """, (event_type, limit))
        return [self._row_to_event(row) for row in cursor]

    def event_stats(self, agent_id: str) -> EventStats:
        row = self.conn.execute("""
            SELECT COUNT(*) AS n, MIN(ts) AS first_ts, MAX(ts) AS last_ts
            FROM agent_events WHERE agent_id = ?
        """, (agent_id,)).fetchone()
        last = self.conn.execute("""
            SELECT type FROM agent_events WHERE agent_id = ?
            ORDER BY ts DESC, content_hash ASC LIMIT 1
        """, (agent_id,)).fetchone()
        return EventStats(
            agent_id=agent_id,
            count=row["n"],
            first_ts=row["first_ts"],
            last_ts=row["last_ts"],
            last_type=last["type"] if last else None,
        )

    # ── mint_receipts ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_receipt(row: sqlite3.Row) -> MintReceipt:
        return MintReceipt(
            agent_id=row["agent_id"],
            block_index=row["block_index"],
            status=MintStatus(row["status"]),
            created_at=row["created_at"],
            external_ref=row["external_ref"],
            updated_at=row["updated_at"],
        )

    def insert_receipt(self, receipt: MintReceipt) -> None:
        try:
            self.conn.execute(f"""
                INSERT INTO mint_receipts ({_RECEIPT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                receipt.agent_id, receipt.block_index, receipt.status.value,
                receipt.created_at, receipt.external_ref, receipt.updated_at,
            ))
        except sqlite3.IntegrityError as e:
            if _is_unique_error(e):
                raise UniqueViolation("mint_receipts", str(e)) from e
            raise

    def get_receipt(self, agent_id: str, block_index: int) -> Optional[MintReceipt]:
        row = self.conn.execute(
            f"SELECT {_RECEIPT_COLUMNS} FROM mint_receipts WHERE agent_id = ? AND block_index = ?",
            (agent_id, block_index),
        ).fetchone()
        return self._row_to_receipt(row) if row else None

    def transition_receipt(self, agent_id: str, block_index: int, status: MintStatus, updated_at: int) -> bool:
        cursor = self.conn.execute("""
            UPDATE mint_receipts SET status = ?, updated_at = ?
            WHERE agent_id = ? AND block_index = ? AND status = ?
        """, (status.value, updated_at, agent_id, block_index, MintStatus.PENDING.value))
        return cursor.rowcount == 1

    def set_receipt_ref(self, agent_id: str, block_index: int, external_ref: str, updated_at: int) -> bool:
        cursor = self.conn.execute("""
            UPDATE mint_receipts SET external_ref = ?, updated_at = ?
            WHERE agent_id = ? AND block_index = ? AND status = ? AND external_ref IS NULL
        """, (external_ref, updated_at, agent_id, block_index, MintStatus.PENDING.value))
        return cursor.rowcount == 1

    def list_receipts(self, status: Optional[MintStatus] = None, limit: Optional[int] = None) -> List[MintReceipt]:
        query = f"SELECT {_RECEIPT_COLUMNS} FROM mint_receipts"
        args: list = []
        if status is not None:
            query += " WHERE status = ?"
            args.append(status.value)
        query += " ORDER BY created_at ASC, agent_id ASC, block_index ASC LIMIT ?"
        args.append(-1 if limit is None else limit)
        return [self._row_to_receipt(row) for row in self.conn.execute(query, args)]
