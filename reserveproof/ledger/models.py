"""Records persisted by the serial ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class RootStatus(str, Enum):
    PENDING = "pending"
    ANCHORED = "anchored"


@dataclass(frozen=True)
class SerialRecord:
    serial_id: str
    batch_id: str
    leaf_hash: str  # 64 hex chars, no prefix
    included_in_root: bool
    received_at: datetime


@dataclass(frozen=True)
class MerkleRoot:
    root_hash: str  # 0x-prefixed
    total_serials: int
    created_at: datetime
    status: RootStatus = RootStatus.PENDING
    anchored_at: Optional[datetime] = None
    tx_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rootHash": self.root_hash,
            "totalSerials": self.total_serials,
            "createdAt": to_iso(self.created_at),
            "status": self.status.value,
            "anchoredAt": to_iso(self.anchored_at),
            "txRef": self.tx_ref,
        }


@dataclass(frozen=True)
class IngestResult:
    batch_id: str
    serials_ingested: int
    duplicates: int
    new_merkle_root: str
    total_serials: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "batchId": self.batch_id,
            "serialsIngested": self.serials_ingested,
            "duplicatesSkipped": self.duplicates,
            "newMerkleRoot": self.new_merkle_root,
            "totalSerials": self.total_serials,
        }


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable view of the ledger taken under the ingest lock."""
    serials: Tuple[SerialRecord, ...]
    root_hash: str
    taken_at: datetime = field(default_factory=utc_now)

    @property
    def total_serials(self) -> int:
        return len(self.serials)

    @property
    def serial_ids(self) -> Tuple[str, ...]:
        return tuple(s.serial_id for s in self.serials)


@dataclass(frozen=True)
class ProofSubmission:
    root_hash: str
    batch_count: int
    proof_hashes: Tuple[str, ...]
    tx_refs: Tuple[str, ...]
    verified: bool
    submitted_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rootHash": self.root_hash,
            "batchCount": self.batch_count,
            "proofHashes": list(self.proof_hashes),
            "txRefs": list(self.tx_refs),
            "verified": self.verified,
            "submittedAt": to_iso(self.submitted_at),
        }


@dataclass(frozen=True)
class RateSetting:
    rate: float
    updated_at: datetime


@dataclass(frozen=True)
class PriceHistoryPoint:
    price: float
    timestamp: datetime
