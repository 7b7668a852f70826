"""Byte layout of the on-chain ProtocolState account.

Two layouts exist. V1 accounts are at least 218 bytes and predate the
operator, burn and yield fields. V2 accounts are resized to 512 bytes and
remapped; byte length is the only marker distinguishing them.

All integers are little-endian. Every layout starts with an 8-byte account
discriminator.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, replace
from typing import Any, Dict

import base58

from reserveproof.errors import MigrationRequiredError

DISCRIMINATOR_SIZE = 8
V1_MIN_SIZE = 218
V2_ACCOUNT_SIZE = 512

# authority, operator, mint, treasury, total_supply, total_burned,
# current_merkle_root, proven_reserves, last_root_update,
# last_proof_timestamp, price_per_unit, price_receiver, yield_apy_bps,
# total_yield_distributed, last_yield_distribution, is_paused, bump, reserved
_V2 = struct.Struct("<32s32s32s32sQQ32sQqqQ32sHQqBB64s")

# authority, mint, treasury, merkle_root, last_root_update, last_proof_ts,
# proven_reserves, total_supply, is_paused, bump, price, price_receiver
_V1 = struct.Struct("<32s32s32s32sqqQQBBQ32s")


def encode_pubkey(raw: bytes) -> str:
    return base58.b58encode(raw).decode("ascii")


def decode_pubkey(value: str) -> bytes:
    raw = base58.b58decode(value)
    if len(raw) != 32:
        raise ValueError(f"Public key must be 32 bytes, got {len(raw)}")
    return raw


@dataclass(frozen=True)
class ProtocolState:
    """Decoded ProtocolState. Keys are base58, the root is raw bytes."""
    authority: str
    operator: str
    token_mint: str
    treasury: str
    total_supply: int
    total_burned: int
    current_merkle_root: bytes
    proven_reserves: int
    last_root_update: int
    last_proof_timestamp: int
    price_per_unit: int
    price_receiver: str
    yield_apy_bps: int = 0
    total_yield_distributed: int = 0
    last_yield_distribution: int = 0
    is_paused: bool = False
    bump: int = 0

    def with_changes(self, **changes: Any) -> "ProtocolState":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authority": self.authority,
            "operator": self.operator,
            "tokenMint": self.token_mint,
            "treasury": self.treasury,
            "totalSupply": self.total_supply,
            "totalBurned": self.total_burned,
            "currentMerkleRoot": "0x" + self.current_merkle_root.hex(),
            "provenReserves": self.proven_reserves,
            "lastRootUpdate": self.last_root_update,
            "lastProofTimestamp": self.last_proof_timestamp,
            "pricePerUnit": self.price_per_unit,
            "priceReceiver": self.price_receiver,
            "isPaused": self.is_paused,
        }


def is_v2(data: bytes) -> bool:
    return len(data) >= V2_ACCOUNT_SIZE


def decode_protocol_state(data: bytes) -> ProtocolState:
    """Decode a V2 account.

    Raises:
        MigrationRequiredError: the account is shorter than the V2 size
    """
    if len(data) < V2_ACCOUNT_SIZE:
        raise MigrationRequiredError(
            "Protocol state uses the legacy layout",
            f"account is {len(data)} bytes, V2 requires {V2_ACCOUNT_SIZE}",
        )
    (
        authority, operator, mint, treasury,
        total_supply, total_burned, root, proven_reserves,
        last_root_update, last_proof_ts, price, receiver,
        yield_bps, yield_total, yield_last, is_paused, bump, _reserved,
    ) = _V2.unpack_from(data, DISCRIMINATOR_SIZE)
    return ProtocolState(
        authority=encode_pubkey(authority),
        operator=encode_pubkey(operator),
        token_mint=encode_pubkey(mint),
        treasury=encode_pubkey(treasury),
        total_supply=total_supply,
        total_burned=total_burned,
        current_merkle_root=root,
        proven_reserves=proven_reserves,
        last_root_update=last_root_update,
        last_proof_timestamp=last_proof_ts,
        price_per_unit=price,
        price_receiver=encode_pubkey(receiver),
        yield_apy_bps=yield_bps,
        total_yield_distributed=yield_total,
        last_yield_distribution=yield_last,
        is_paused=bool(is_paused),
        bump=bump,
    )


def decode_v1_protocol_state(data: bytes) -> ProtocolState:
    """Decode a V1 account into the V2 record (operator = authority)."""
    if len(data) < V1_MIN_SIZE:
        raise MigrationRequiredError(
            "Protocol state is too short to decode",
            f"account is {len(data)} bytes, V1 requires {V1_MIN_SIZE}",
        )
    (
        authority, mint, treasury, root,
        last_root_update, last_proof_ts, proven_reserves, total_supply,
        is_paused, bump, price, receiver,
    ) = _V1.unpack_from(data, DISCRIMINATOR_SIZE)
    return ProtocolState(
        authority=encode_pubkey(authority),
        operator=encode_pubkey(authority),
        token_mint=encode_pubkey(mint),
        treasury=encode_pubkey(treasury),
        total_supply=total_supply,
        total_burned=0,
        current_merkle_root=root,
        proven_reserves=proven_reserves,
        last_root_update=last_root_update,
        last_proof_timestamp=last_proof_ts,
        price_per_unit=price,
        price_receiver=encode_pubkey(receiver),
        is_paused=bool(is_paused),
        bump=bump,
    )


def encode_protocol_state(state: ProtocolState, discriminator: bytes = bytes(DISCRIMINATOR_SIZE)) -> bytes:
    """Encode to a zero-padded V2 account of ``V2_ACCOUNT_SIZE`` bytes."""
    body = _V2.pack(
        decode_pubkey(state.authority),
        decode_pubkey(state.operator),
        decode_pubkey(state.token_mint),
        decode_pubkey(state.treasury),
        state.total_supply,
        state.total_burned,
        state.current_merkle_root,
        state.proven_reserves,
        state.last_root_update,
        state.last_proof_timestamp,
        state.price_per_unit,
        decode_pubkey(state.price_receiver),
        state.yield_apy_bps,
        state.total_yield_distributed,
        state.last_yield_distribution,
        int(state.is_paused),
        state.bump,
        bytes(64),
    )
    data = discriminator + body
    return data + bytes(V2_ACCOUNT_SIZE - len(data))


def encode_v1_protocol_state(state: ProtocolState, discriminator: bytes = bytes(DISCRIMINATOR_SIZE)) -> bytes:
    """Encode to a V1 account of ``V1_MIN_SIZE`` bytes."""
    body = _V1.pack(
        decode_pubkey(state.authority),
        decode_pubkey(state.token_mint),
        decode_pubkey(state.treasury),
        state.current_merkle_root,
        state.last_root_update,
        state.last_proof_timestamp,
        state.proven_reserves,
        state.total_supply,
        int(state.is_paused),
        state.bump,
        state.price_per_unit,
        decode_pubkey(state.price_receiver),
    )
    data = discriminator + body
    return data + bytes(V1_MIN_SIZE - len(data))


def remap_v1_to_v2(data: bytes) -> bytes:
    """Rewrite a V1 account (already resized or not) into the V2 layout."""
    state = decode_v1_protocol_state(data)
    return encode_protocol_state(state, discriminator=data[:DISCRIMINATOR_SIZE])
