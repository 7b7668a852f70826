from __future__ import annotations

import pytest

from reserveproof.chain.layout import (
    DISCRIMINATOR_SIZE,
    V1_MIN_SIZE,
    V2_ACCOUNT_SIZE,
    decode_protocol_state,
    decode_pubkey,
    decode_v1_protocol_state,
    encode_protocol_state,
    encode_v1_protocol_state,
    is_v2,
    remap_v1_to_v2,
)
from reserveproof.errors import MigrationRequiredError
from reserveproof.tests.fakes import make_state, pubkey


def test_v2_round_trip() -> None:
    state = make_state(
        total_supply=40,
        total_burned=3,
        current_merkle_root=bytes(range(32)),
        proven_reserves=45,
        last_root_update=1_760_000_000,
        last_proof_timestamp=1_760_000_100,
        yield_apy_bps=250,
        total_yield_distributed=9,
        last_yield_distribution=1_750_000_000,
        is_paused=True,
    )
    data = encode_protocol_state(state, discriminator=b"PROTOSTA")

    assert len(data) == V2_ACCOUNT_SIZE
    assert is_v2(data)
    assert data[:DISCRIMINATOR_SIZE] == b"PROTOSTA"
    assert decode_protocol_state(data) == state


def test_v1_account_needs_migration() -> None:
    data = encode_v1_protocol_state(make_state())
    assert len(data) == V1_MIN_SIZE
    assert not is_v2(data)
    with pytest.raises(MigrationRequiredError):
        decode_protocol_state(data)


def test_v1_decode_sets_operator_to_authority() -> None:
    original = make_state(total_supply=10, proven_reserves=12, price_per_unit=77, last_proof_timestamp=5)
    state = decode_v1_protocol_state(encode_v1_protocol_state(original))

    assert state.operator == state.authority == original.authority
    assert state.total_supply == 10
    assert state.proven_reserves == 12
    assert state.price_per_unit == 77
    assert state.last_proof_timestamp == 5
    assert state.total_burned == 0


def test_remap_resized_v1_account() -> None:
    original = make_state(total_supply=10, proven_reserves=12, current_merkle_root=b"\x07" * 32)
    v1 = encode_v1_protocol_state(original, discriminator=b"DISCRIMI")
    resized = v1 + bytes(V2_ACCOUNT_SIZE - len(v1))

    remapped = remap_v1_to_v2(resized)

    assert len(remapped) == V2_ACCOUNT_SIZE
    assert remapped[:DISCRIMINATOR_SIZE] == b"DISCRIMI"
    state = decode_protocol_state(remapped)
    assert state.current_merkle_root == b"\x07" * 32
    assert state.proven_reserves == 12
    assert state.operator == original.authority


def test_short_account_cannot_be_decoded() -> None:
    with pytest.raises(MigrationRequiredError):
        decode_v1_protocol_state(bytes(100))


def test_to_dict_uses_hex_root() -> None:
    payload = make_state(current_merkle_root=b"\xab" * 32).to_dict()
    assert payload["currentMerkleRoot"] == "0x" + "ab" * 32
    assert payload["authority"] == pubkey(1)


def test_pubkey_must_be_32_bytes() -> None:
    assert decode_pubkey(pubkey(9)) == bytes([9]) * 32
    with pytest.raises(ValueError):
        decode_pubkey("3mJr7AoUXx2Wqd")
