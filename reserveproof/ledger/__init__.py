"""Serial ledger: registry, root history, proof submissions and rate data."""

from .models import (
    IngestResult,
    LedgerSnapshot,
    MerkleRoot,
    PriceHistoryPoint,
    ProofSubmission,
    RateSetting,
    RootStatus,
    SerialRecord,
)
from .store import SerialLedger

__all__ = [
    "IngestResult",
    "LedgerSnapshot",
    "MerkleRoot",
    "PriceHistoryPoint",
    "ProofSubmission",
    "RateSetting",
    "RootStatus",
    "SerialLedger",
    "SerialRecord",
]
