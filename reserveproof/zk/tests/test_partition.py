from __future__ import annotations

import hashlib
import json
import math
from pathlib import Path

import pytest
from hypothesis import given, strategies as st

from reserveproof.errors import HashCollisionError, ValidationError
from reserveproof.tests.fakes import serial_range
from reserveproof.zk import partition
from reserveproof.zk.partition import (
    MANIFEST_NAME,
    SENTINEL,
    field_hash,
    load_batch_manifest,
    partition_serials,
    write_batch_manifest,
)


def test_45_serials_split_20_20_5() -> None:
    plan = partition_serials(serial_range(45), capacity=20)
    assert [b.active_count for b in plan.batches] == [20, 20, 5]
    assert [b.batch_number for b in plan.batches] == [1, 2, 3]
    assert plan.total_serials == 45


@given(count=st.integers(min_value=1, max_value=120), capacity=st.integers(min_value=1, max_value=32))
def test_batch_count_is_ceiling(count: int, capacity: int) -> None:
    plan = partition_serials(serial_range(count), capacity=capacity)
    assert plan.batch_count == math.ceil(count / capacity)
    assert sum(b.active_count for b in plan.batches) == count
    assert all(len(b.padded_leaves) == capacity for b in plan.batches)


def test_leaves_sorted_and_padded_with_sentinel() -> None:
    plan = partition_serials(serial_range(45), capacity=20)
    flat = [leaf for b in plan.batches for leaf in b.leaves]
    assert flat == sorted(flat)

    last = plan.batches[-1]
    padded = last.padded_leaves
    assert padded[:5] == last.leaves
    assert padded[5:] == (SENTINEL,) * 15
    assert all(leaf < SENTINEL for leaf in flat)
    assert SENTINEL < 2 ** 248


def test_serial_ids_follow_their_leaves() -> None:
    plan = partition_serials(serial_range(7), capacity=3)
    for batch in plan.batches:
        assert tuple(field_hash(s) for s in batch.serial_ids) == batch.leaves


def test_field_hash_is_31_byte_prefix() -> None:
    digest = hashlib.sha256(b"GB-2026-000001").digest()
    assert field_hash("GB-2026-000001") == int.from_bytes(digest[:31], "big")


def test_prover_file_contents() -> None:
    plan = partition_serials(serial_range(3), capacity=4)
    text = plan.batches[0].to_prover_toml(plan.batch_count)

    assert text.startswith("# Batch 1 of 1\n")
    assert 'active_count = "3"' in text
    assert 'total_supply = "3"' in text
    assert 'merkle_root = "0x' + "00" * 32 + '"' in text
    assert text.count('"0x' + "ff" * 31 + '"') == 1
    assert text == plan.batches[0].to_prover_toml(plan.batch_count)


def test_write_and_load_manifest(tmp_path: Path) -> None:
    plan = partition_serials(serial_range(45), capacity=20)
    manifest_path = write_batch_manifest(plan, tmp_path / "batches")

    assert manifest_path.name == MANIFEST_NAME
    for n in (1, 2, 3):
        assert (tmp_path / "batches" / f"Prover_batch_{n}.toml").exists()

    manifest = load_batch_manifest(manifest_path)
    assert manifest["batchCount"] == 3
    assert manifest["batchSize"] == 20
    assert [b["serialCount"] for b in manifest["batches"]] == [20, 20, 5]
    assert sorted(s for b in manifest["batches"] for s in b["serials"]) == serial_range(45)


def test_load_manifest_rejects_missing_prover_file(tmp_path: Path) -> None:
    manifest_path = write_batch_manifest(partition_serials(serial_range(5), capacity=2), tmp_path)
    (tmp_path / "Prover_batch_2.toml").unlink()
    with pytest.raises(ValidationError):
        load_batch_manifest(manifest_path)


def test_load_manifest_rejects_count_mismatch(tmp_path: Path) -> None:
    manifest_path = write_batch_manifest(partition_serials(serial_range(5), capacity=2), tmp_path)
    data = json.loads(manifest_path.read_text())
    data["batchCount"] = 7
    manifest_path.write_text(json.dumps(data))
    with pytest.raises(ValidationError):
        load_batch_manifest(manifest_path)


@pytest.mark.parametrize("serials, capacity", [([], 20), (["A"], 0)])
def test_invalid_input(serials, capacity) -> None:
    with pytest.raises(ValidationError):
        partition_serials(serials, capacity=capacity)


def test_leaf_equal_to_sentinel_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(partition, "field_hash", lambda s: SENTINEL if s == "bad" else 1)
    with pytest.raises(HashCollisionError):
        partition_serials(["bad"], capacity=4)


def test_colliding_leaves_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(partition, "field_hash", lambda s: 42)
    with pytest.raises(HashCollisionError) as info:
        partition_serials(["A", "B"], capacity=4)
    assert {info.value.first, info.value.second} == {"A", "B"}
