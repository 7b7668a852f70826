from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import pytest

from reserveproof.errors import HashCollisionError, ValidationError
from reserveproof.ledger.models import RootStatus
from reserveproof.ledger.store import SerialLedger
from reserveproof.tests.fakes import serial_range
from reserveproof.zk.merkle_tree import EMPTY_ROOT, compute_merkle_root, hash_serial, root_to_hex


def test_ingest_computes_root_over_all_serials(ledger: SerialLedger) -> None:
    first = ledger.ingest("batch-1", ["A", "B"])
    second = ledger.ingest("batch-2", ["C"])

    expected = root_to_hex(compute_merkle_root(hash_serial(s) for s in ["A", "B", "C"]))
    assert first.total_serials == 2
    assert second.total_serials == 3
    assert second.new_merkle_root == expected
    assert ledger.current_root().root_hash == expected
    assert ledger.distinct_batch_count() == 2


def test_duplicates_are_counted_not_inserted(ledger: SerialLedger) -> None:
    ledger.ingest("batch-1", ["A", "B"])
    result = ledger.ingest("batch-2", ["B", "C", "C"])

    assert result.serials_ingested == 1
    assert result.duplicates == 2
    assert result.total_serials == 3
    assert ledger.get_serial("B").batch_id == "batch-1"


def test_root_is_independent_of_ingestion_order() -> None:
    serials = serial_range(25)
    with SerialLedger() as forward, SerialLedger() as backward:
        forward.ingest("b", serials)
        backward.ingest("b1", list(reversed(serials))[:10])
        backward.ingest("b2", list(reversed(serials))[10:])
        assert forward.snapshot().root_hash == backward.snapshot().root_hash


@pytest.mark.parametrize(
    "batch_id, serials",
    [
        ("", ["A"]),
        ("batch", []),
        ("batch", "A"),
        ("batch", ["A", ""]),
        ("batch", ["A", 7]),
        (None, ["A"]),
    ],
)
def test_malformed_payload_rejected(ledger: SerialLedger, batch_id, serials) -> None:
    with pytest.raises(ValidationError):
        ledger.ingest(batch_id, serials)
    assert ledger.total_serials() == 0


def test_leaf_collision_aborts_whole_batch(ledger: SerialLedger) -> None:
    ledger.ingest("batch-1", ["A"])
    # Plant a second serial whose stored leaf equals an incoming serial's leaf.
    with ledger._transaction() as conn:
        conn.execute(
            "INSERT INTO serials (serial_id, batch_id, leaf_hash, included_in_root, received_at) "
            "VALUES (?, ?, ?, 0, 0)",
            ("planted", "batch-x", hash_serial("Z").hex()),
        )
    before = ledger.total_serials()

    with pytest.raises(HashCollisionError):
        ledger.ingest("batch-2", ["Y", "Z"])

    assert ledger.total_serials() == before
    assert ledger.get_serial("Y") is None


def test_empty_ledger_snapshot_has_zero_root(ledger: SerialLedger) -> None:
    snapshot = ledger.snapshot()
    assert snapshot.total_serials == 0
    assert snapshot.root_hash == root_to_hex(EMPTY_ROOT)
    assert ledger.current_root() is None


def test_mark_anchored_only_backfills_snapshot_serials(ledger: SerialLedger) -> None:
    ledger.ingest("batch-1", ["A", "B"])
    snapshot = ledger.snapshot()
    ledger.ingest("batch-2", ["C"])

    ledger.mark_anchored(snapshot, "tx-1")

    assert ledger.is_anchored(snapshot.root_hash)
    assert ledger.get_serial("A").included_in_root
    assert ledger.get_serial("B").included_in_root
    assert not ledger.get_serial("C").included_in_root
    assert not ledger.is_anchored(ledger.current_root().root_hash)

    anchored = ledger.get_root(snapshot.root_hash)
    assert anchored.status is RootStatus.ANCHORED
    assert anchored.tx_ref == "tx-1"


def test_root_history_newest_first(ledger: SerialLedger) -> None:
    for n in range(1, 4):
        ledger.ingest(f"batch-{n}", [f"S{n}"])
    history = ledger.root_history(2)
    assert [r.total_serials for r in history] == [3, 2]


def test_proof_submissions_roundtrip(ledger: SerialLedger, fixed_now) -> None:
    assert ledger.latest_proof_submission() is None
    ledger.record_proof_submission("0xaa", ["h1"], ["tx-1"], now=fixed_now)
    ledger.record_proof_submission("0xbb", ["h2", "h3"], ["tx-2", "tx-3"], now=fixed_now + timedelta(hours=1))

    latest = ledger.latest_proof_submission()
    assert latest.root_hash == "0xbb"
    assert latest.batch_count == 2
    assert latest.tx_refs == ("tx-2", "tx-3")
    assert latest.submitted_at == fixed_now + timedelta(hours=1)
    assert len(ledger.proof_submissions()) == 2


def test_rate_history_is_pruned(ledger: SerialLedger, fixed_now) -> None:
    assert ledger.get_rate_setting() is None
    for hours_ago, rate in [(50, 8.0), (30, 8.5), (1, 9.0)]:
        moment = fixed_now - timedelta(hours=hours_ago)
        ledger.record_rate(rate, moment, prune_before=fixed_now - timedelta(hours=48))

    setting = ledger.get_rate_setting()
    assert setting.rate == 9.0
    assert setting.updated_at == fixed_now - timedelta(hours=1)
    assert [p.price for p in ledger.price_history()] == [8.5, 9.0]
    assert ledger.price_at_or_before(fixed_now - timedelta(hours=24)).price == 8.5
    assert ledger.price_at_or_before(fixed_now - timedelta(hours=40)) is None


def test_concurrent_ingests_never_lose_serials(tmp_path: Path) -> None:
    store = SerialLedger(tmp_path / "ledger.db")
    errors = []

    def worker(n: int) -> None:
        try:
            store.ingest(f"batch-{n}", [f"T{n}-{i}" for i in range(10)])
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    snapshot = store.snapshot()
    assert snapshot.total_serials == 80
    assert store.current_root().root_hash == snapshot.root_hash
    store.close()
