# tests/test_mint.py
import itertools
from pathlib import Path
from typing import Dict

import pytest

from agentledger.chain.store import LedgerStore
from agentledger.core.errors import (
    BlockNotFound,
    DuplicateReceipt,
    InvalidTransition,
    ReceiptNotFound,
)
from agentledger.core.types import BlockCore, MintStatus
from agentledger.mint.receipts import MintReceiptTracker
from agentledger.storage import SQLiteStorage

AGENT = "0x" + "77" * 32


class FakeMintBackend:
    """In-memory stand-in for the external minting service."""

    def __init__(self):
        self.submitted = []
        self.remote: Dict[str, str] = {}

    def submit(self, payload):
        job_id = f"job-{len(self.submitted) + 1}"
        self.submitted.append(payload)
        self.remote[job_id] = "pending"
        return job_id

    def poll(self, job_id):
        return self.remote[job_id]


@pytest.fixture
def storage(tmp_path: Path):
    s =SQLiteStorage(tmp_path / "mint.db")
    yield s
    s.close()


@pytest.fixture
def store(storage) -> LedgerStore:
    store = LedgerStore(storage)
    for action in ("genesis", "welcome", "mint-request"):
        store.append(AGENT, BlockCore(action=action))
    return store


@pytest.fixture
def backend() -> FakeMintBackend:
    return FakeMintBackend()


@pytest.fixture
def tracker(storage, store, backend) -> MintReceiptTracker:
    counter = itertools.count(10_000)
    return MintReceiptTracker(storage, store, backend=backend, clock=lambda: next(counter))


def test_create_receipt_starts_pending(tracker):
    receipt = tracker.create_receipt(AGENT, 2)
    assert receipt.status is MintStatus.PENDING
    assert receipt.external_ref is None
    assert tracker.get_receipt(AGENT, 2) == receipt


def test_receipt_requires_existing_block(tracker):
    with pytest.raises(BlockNotFound):
        tracker.create_receipt(AGENT, 99)
    with pytest.raises(KeyError):
        tracker.create_receipt("0xnobody", 0)


def test_duplicate_receipt_carries_existing(tracker):
    first = tracker.create_receipt(AGENT, 2)
    with pytest.raises(DuplicateReceipt) as exc:
        tracker.create_receipt(AGENT, 2)
    assert exc.value.existing == first


def test_pending_to_confirmed(tracker):
    tracker.create_receipt(AGENT, 2)
    confirmed = tracker.update_status(AGENT, 2, MintStatus.CONFIRMED)
    assert confirmed.status is MintStatus.CONFIRMED
    assert confirmed.updated_at is not None


def test_terminal_receipts_never_change(tracker):
    tracker.create_receipt(AGENT, 2)
    tracker.update_status(AGENT, 2, "failed")
    with pytest.raises(InvalidTransition):
        tracker.update_status(AGENT, 2, MintStatus.CONFIRMED)
    with pytest.raises(InvalidTransition):
        tracker.update_status(AGENT, 2, MintStatus.FAILED)
    assert tracker.get_receipt(AGENT, 2).status is MintStatus.FAILED


def test_cannot_move_back_to_pending(tracker):
    tracker.create_receipt(AGENT, 2)
    with pytest.raises(InvalidTransition):
        tracker.update_status(AGENT, 2, MintStatus.PENDING)


def test_unknown_receipt(tracker):
    with pytest.raises(ReceiptNotFound):
        tracker.update_status(AGENT, 1, MintStatus.CONFIRMED)


def test_attach_external_ref_once(tracker):
    tracker.create_receipt(AGENT, 2)
    assert tracker.attach_external_ref(AGENT, 2, "job-a").external_ref == "job-a"
    # same ref again is fine
    assert tracker.attach_external_ref(AGENT, 2, "job-a").external_ref == "job-a"
    with pytest.raises(InvalidTransition):
        tracker.attach_external_ref(AGENT, 2, "job-b")


def test_mint_claims_then_submits(tracker, backend):
    receipt = tracker.mint(AGENT, 2, {"name": "Nova #42"})
    assert receipt.status is MintStatus.PENDING
    assert receipt.external_ref == "job-1"
    assert backend.submitted == [{"name": "Nova #42"}]


def test_mint_twice_submits_once(tracker, backend):
    first = tracker.mint(AGENT, 2, {"name": "Nova #42"})
    again = tracker.mint(AGENT, 2, {"name": "Nova #42"})
    assert again == first
    assert len(backend.submitted) == 1


def test_reconcile_settles_finished_jobs(tracker, backend):
    tracker.mint(AGENT, 0, {})
    tracker.mint(AGENT, 1, {})
    tracker.mint(AGENT, 2, {})
    backend.remote["job-1"] = "confirmed"
    backend.remote["job-2"] = "failed"

    changed = tracker.reconcile()

    assert {(r.block_index, r.status) for r in changed} == {
        (0, MintStatus.CONFIRMED),
        (1, MintStatus.FAILED),
    }
    assert tracker.get_receipt(AGENT, 2).status is MintStatus.PENDING
    assert tracker.reconcile() == []


def test_reconcile_skips_jobs_that_fail_to_poll(tracker, backend, caplog):
    tracker.mint(AGENT, 0, {})
    tracker.mint(AGENT, 1, {})
    tracker.mint(AGENT, 2, {})
    del backend.remote["job-1"]                 # poll raises KeyError
    backend.remote["job-2"] = "minted?"         # not a known status
    backend.remote["job-3"] = "confirmed"

    changed = tracker.reconcile()

    assert [(r.block_index, r.status) for r in changed] == [(2, MintStatus.CONFIRMED)]
    assert tracker.get_receipt(AGENT, 0).status is MintStatus.PENDING
    assert tracker.get_receipt(AGENT, 1).status is MintStatus.PENDING
    assert "job-1" in caplog.text and "job-2" in caplog.text


def test_stalled_receipts_are_reported_not_resubmitted(tracker, backend, caplog):
    tracker.create_receipt(AGENT, 1)            # claimed, never submitted
    tracker.mint(AGENT, 2, {})

    assert [r.block_index for r in tracker.stalled()] == [1]
    tracker.reconcile()
    assert len(backend.submitted) == 1
    assert "pending with no job id" in caplog.text


def test_list_by_status(tracker):
    tracker.create_receipt(AGENT, 0)
    tracker.create_receipt(AGENT, 1)
    tracker.update_status(AGENT, 0, MintStatus.CONFIRMED)

    assert [r.block_index for r in tracker.list_by_status(MintStatus.PENDING)] == [1]
    assert [r.block_index for r in tracker.list_by_status("confirmed")] == [0]
    assert len(tracker.list_by_status()) == 2


def test_mint_without_backend(storage, store):
    tracker = MintReceiptTracker(storage, store)
    with pytest.raises(RuntimeError, match="backend"):
        tracker.mint(AGENT, 0, {})
