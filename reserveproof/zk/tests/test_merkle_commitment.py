"""Merkle commitment properties.

- Root depends only on the set of serials, never their order
- Odd nodes pair with themselves
- Every inclusion proof verifies; a tampered one does not
"""

from __future__ import annotations

import pytest
from hypothesis import given, settings, strategies as st

from reserveproof.zk.merkle_tree import (
    EMPTY_ROOT,
    MerkleTreeBuilder,
    compute_merkle_root,
    hash_pair,
    hash_serial,
    hex_to_root,
    root_to_hex,
    verify_serial,
)

serial_sets = st.lists(
    st.text(min_size=1, max_size=24, alphabet=st.characters(min_codepoint=33, max_codepoint=126)),
    min_size=1,
    max_size=60,
    unique=True,
)


@given(serials=serial_sets, data=st.data())
def test_root_is_order_invariant(serials: list[str], data: st.DataObject) -> None:
    shuffled = data.draw(st.permutations(serials))
    assert compute_merkle_root(map(hash_serial, serials)) == compute_merkle_root(map(hash_serial, shuffled))


@settings(max_examples=50)
@given(serials=serial_sets)
def test_every_inclusion_proof_verifies(serials: list[str]) -> None:
    builder = MerkleTreeBuilder()
    for serial in serials:
        builder.add_serial(serial)
    root, proofs = builder.build()

    assert root == compute_merkle_root(map(hash_serial, serials))
    for serial in serials:
        assert verify_serial(serial, proofs[serial], root)


def test_tampered_proof_is_rejected() -> None:
    serials = ["GB-2026-000001", "GB-2026-000002", "GB-2026-000003", "GB-2026-000004"]
    builder = MerkleTreeBuilder()
    for serial in serials:
        builder.add_serial(serial)
    root, proofs = builder.build()

    path = list(proofs[serials[0]])
    _, is_right = path[0]
    path[0] = (bytes(32), is_right)
    assert not verify_serial(serials[0], path, root)
    assert not verify_serial("GB-2026-999999", proofs[serials[0]], root)


def test_empty_set_has_zero_root() -> None:
    assert compute_merkle_root([]) == EMPTY_ROOT
    assert MerkleTreeBuilder().build() == (EMPTY_ROOT, {})
    assert root_to_hex(EMPTY_ROOT) == "0x" + "00" * 32


def test_single_leaf_is_its_own_root() -> None:
    leaf = hash_serial("only")
    assert compute_merkle_root([leaf]) == leaf


def test_odd_node_pairs_with_itself() -> None:
    a, b, c = sorted(hash_serial(s) for s in ("x", "y", "z"))
    expected = hash_pair(hash_pair(a, b), hash_pair(c, c))
    assert compute_merkle_root([c, a, b]) == expected


def test_hex_round_trip_and_validation() -> None:
    root = hash_serial("x")
    assert hex_to_root(root_to_hex(root)) == root
    assert hex_to_root(root.hex()) == root
    with pytest.raises(ValueError):
        hex_to_root("0x1234")
