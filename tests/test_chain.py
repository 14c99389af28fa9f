# tests/test_chain.py
import itertools
import sqlite3
import threading
from pathlib import Path

import pytest

from agentledger.chain.agent import GENESIS_ACTIONS, AgentChain
from agentledger.chain.codec import GENESIS_SENTINEL
from agentledger.chain.store import LedgerStore
from agentledger.core.errors import ChainConflict, HashMismatch
from agentledger.core.types import BlockCore
from agentledger.events.log import EventLog
from agentledger.identity.resolver import AgentIdentity
from agentledger.storage import SQLiteStorage

AGENT = AgentIdentity.from_nft("ethereum", "0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D", 42).agent_id


def counting_clock(start: int = 1_700_000_000_000):
    counter = itertools.count(start, 1000)
    return lambda: next(counter)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "chain.db"


@pytest.fixture
def storage(db_path: Path):
    s = SQLiteStorage(db_path)
    yield s
    s.close()


@pytest.fixture
def store(storage) -> LedgerStore:
    return LedgerStore(storage, clock=counting_clock())


@pytest.fixture
def chain(store, storage) -> AgentChain:
    return AgentChain(AGENT, store, events=EventLog(storage))


def test_chain_starts_empty(chain):
    assert chain.length == 0
    assert chain.last_hash is None
    assert chain.get_chain() == []


def test_genesis_then_chat(chain):
    genesis = chain.create_genesis_blocks()
    assert [b.action for b in genesis] == list(GENESIS_ACTIONS)
    assert all(b.params == {"auto_generated": True} and b.actor == "system" for b in genesis)

    chat = chain.append("chat", actor="user", params={"text": "hi"})
    blocks = chain.get_chain()

    assert [b.index for b in blocks] == [0, 1, 2, 3]
    assert blocks[0].parent_hash == GENESIS_SENTINEL
    for prev, cur in zip(blocks, blocks[1:]):
        assert cur.parent_hash == prev.block_hash
    assert chat.params == {"text": "hi"}
    assert chain.length == 4
    assert chain.last_hash == chat.block_hash


def test_genesis_refuses_non_empty_chain(chain):
    chain.append("chat")
    with pytest.raises(ValueError, match="already has"):
        chain.create_genesis_blocks()


def test_append_mirrors_into_event_log(chain, storage):
    block = chain.append("chat", actor="user", params={"text": "hello"})
    event = storage.get_event(block.block_hash)
    assert event is not None
    assert event.type == "chat"
    assert event.data == {"params": {"text": "hello"}, "resources": {}}


def test_mirror_failure_does_not_fail_append(chain, monkeypatch, caplog):
    def broken(block):
        raise RuntimeError("event store down")

    monkeypatch.setattr(chain.events, "record_block", broken)
    block = chain.append("chat")

    assert chain.length == 1
    assert block.index == 0
    assert "Failed to mirror" in caplog.text


def test_for_identity_embeds_origin(store):
    ident = AgentIdentity.from_nft("base", None, "7")
    bound = AgentChain.for_identity(ident, store, chain="base")
    block = bound.append("genesis")
    assert block.agent_id == ident.agent_id
    assert block.origin == {"chain": "base", "chain_id": 8453, "contract": None, "token_id": 7}


def test_timestamps_never_go_backwards(storage):
    clock_values = iter([5_000, 1_000])
    store = LedgerStore(storage, clock=lambda: next(clock_values))
    first = store.append(AGENT, BlockCore(action="a"))
    second = store.append(AGENT, BlockCore(action="b"))
    assert second.timestamp == first.timestamp == 5_000


def test_explicit_timestamp_is_kept_or_rejected(store):
    first = store.append(AGENT, BlockCore(action="a", timestamp=5_000))
    same = store.append(AGENT, BlockCore(action="b", timestamp=5_000))
    assert first.timestamp == same.timestamp == 5_000

    with pytest.raises(ValueError, match="precedes"):
        store.append(AGENT, BlockCore(action="c", timestamp=4_999))
    assert store.get_chain_stats(AGENT).length == 2


def test_append_rejects_mismatched_core(store):
    with pytest.raises(ValueError):
        store.append(AGENT, BlockCore(action="x", agent_id="0xsomeoneelse"))
    with pytest.raises(ValueError):
        store.append("", BlockCore(action="x"))


def test_get_blocks_paging(store):
    for i in range(5):
        store.append(AGENT, BlockCore(action=f"a{i}"))
    assert [b.index for b in store.get_blocks(AGENT, from_index=2)] == [2, 3, 4]
    assert [b.index for b in store.get_blocks(AGENT, from_index=1, limit=2)] == [1, 2]
    with pytest.raises(ValueError):
        store.get_blocks(AGENT, from_index=-1)


def test_chain_stats(store):
    store.append(AGENT, BlockCore(action="genesis"))
    last = store.append(AGENT, BlockCore(action="chat"))
    stats = store.get_chain_stats(AGENT)
    assert stats.length == 2
    assert stats.latest_index == 1
    assert stats.latest_hash == last.block_hash
    assert stats.pending_checkpoint == 2
    assert store.get_chain_stats("0xnobody").latest_index == -1


def test_append_retries_after_losing_race(db_path, storage, store):
    """A second writer takes the next index between our read and our insert."""
    rival = LedgerStore(SQLiteStorage(db_path), clock=counting_clock(2_000_000_000_000))
    store.append(AGENT, BlockCore(action="genesis"))

    real_latest = storage.latest_block
    calls = {"n": 0}

    def stale_latest(agent_id):
        tip = real_latest(agent_id)
        calls["n"] += 1
        if calls["n"] == 1:
            rival.append(AGENT, BlockCore(action="rival"))
        return tip

    storage.latest_block = stale_latest
    ours = store.append(AGENT, BlockCore(action="ours"))

    assert calls["n"] == 2
    assert ours.index == 2
    actions = [b.action for b in store.get_blocks(AGENT)]
    assert actions == ["genesis", "rival", "ours"]
    rival.storage.close()


def test_append_gives_up_with_chain_conflict(storage):
    store = LedgerStore(storage, max_attempts=3, clock=counting_clock())
    genesis = store.append(AGENT, BlockCore(action="genesis"))

    # Always hand back the genesis block as the tip after index 1 exists.
    store.append(AGENT, BlockCore(action="taken"))
    storage.latest_block = lambda agent_id: genesis

    with pytest.raises(ChainConflict) as exc:
        store.append(AGENT, BlockCore(action="never"))
    assert exc.value.attempts == 3


def test_concurrent_appends_from_threads(db_path, storage):
    """Many writers, one file: no gaps, no forks."""
    LedgerStore(storage).append(AGENT, BlockCore(action="genesis"))
    errors = []

    def worker(n: int):
        s = SQLiteStorage(db_path)
        try:
            w = LedgerStore(s, max_attempts=50)
            for i in range(5):
                w.append(AGENT, BlockCore(action="chat", actor=f"worker-{n}", params={"i": i}))
        except Exception as e:  # collected and asserted below
            errors.append(e)
        finally:
            s.close()

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    blocks = LedgerStore(storage).get_blocks(AGENT)
    assert [b.index for b in blocks] == list(range(21))
    for prev, cur in zip(blocks, blocks[1:]):
        assert cur.parent_hash == prev.block_hash


def test_tampered_tip_blocks_append(db_path, store):
    store.append(AGENT, BlockCore(action="genesis", params={"name": "Nova"}))

    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE agent_blocks SET actor = 'mallory' WHERE idx = 0")
    conn.commit()
    conn.close()

    with pytest.raises(HashMismatch) as exc:
        store.append(AGENT, BlockCore(action="chat"))
    assert exc.value.index == 0
    assert store.get_chain_stats(AGENT).length == 1


def test_verify_returns_true_for_clean_block(store):
    block = store.append(AGENT, BlockCore(action="genesis"))
    assert store.verify(block) is True
    assert store.get_block_by_hash(block.block_hash) == block
