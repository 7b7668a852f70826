"""Split the serial commitment into fixed-capacity circuit batches.

The circuit takes exactly ``capacity`` field elements per proof. Leaves are
SHA-256 hashes truncated to 31 bytes so they stay below the BN254 field
prime. Each batch is sorted ascending and padded with a sentinel that is
strictly greater than every real leaf, which lets the circuit check
uniqueness with a single adjacent-pair scan.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Sequence, Tuple

from reserveproof.errors import HashCollisionError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
FIELD_BYTES = 31
SENTINEL = (1 << (FIELD_BYTES * 8)) - 1
ZERO_ROOT_FIELD = "0x" + "00" * 32

MANIFEST_NAME = "manifest.json"
PROVER_FILE_TEMPLATE = "Prover_batch_{n}.toml"


def field_hash(serial: str) -> int:
    """First 31 bytes of SHA-256(serial) as an unsigned integer."""
    digest = hashlib.sha256(serial.encode("utf-8")).digest()
    return int.from_bytes(digest[:FIELD_BYTES], "big")


def field_to_hex(value: int) -> str:
    return "0x" + format(value, f"0{FIELD_BYTES * 2}x")


@dataclass(frozen=True)
class Batch:
    """One circuit input: ``capacity`` ascending leaves, real ones first."""
    batch_number: int
    leaves: Tuple[int, ...]
    serial_ids: Tuple[str, ...]
    capacity: int

    @property
    def active_count(self) -> int:
        return len(self.leaves)

    @property
    def padded_leaves(self) -> Tuple[int, ...]:
        return self.leaves + (SENTINEL,) * (self.capacity - len(self.leaves))

    @property
    def prover_file(self) -> str:
        return PROVER_FILE_TEMPLATE.format(n=self.batch_number)

    def to_prover_toml(self, total_batches: int) -> str:
        """Prover input file. Deterministic for a given batch."""
        serials = ", ".join(f'"{field_to_hex(v)}"' for v in self.padded_leaves)
        return (
            f"# Batch {self.batch_number} of {total_batches}\n"
            f"# {self.active_count} active leaves, padded to {self.capacity}\n"
            "\n"
            "# Private inputs\n"
            f"serials = [{serials}]\n"
            f'active_count = "{self.active_count}"\n'
            "\n"
            "# Public inputs (merkle_root is computed during witness generation)\n"
            f'merkle_root = "{ZERO_ROOT_FIELD}"\n'
            f'total_supply = "{self.active_count}"\n'
        )


@dataclass(frozen=True)
class BatchPlan:
    batches: Tuple[Batch, ...]
    total_serials: int
    capacity: int
    generated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @property
    def batch_count(self) -> int:
        return len(self.batches)

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "generatedAt": self.generated_at,
            "totalSerials": self.total_serials,
            "batchSize": self.capacity,
            "batchCount": self.batch_count,
            "batches": [
                {
                    "batchNumber": b.batch_number,
                    "serialCount": b.active_count,
                    "proverFile": b.prover_file,
                    "serials": list(b.serial_ids),
                }
                for b in self.batches
            ],
        }


def partition_serials(
    serials: Sequence[str],
    capacity: int = DEFAULT_BATCH_SIZE,
) -> BatchPlan:
    """Hash, sort and chunk serials into ``ceil(n / capacity)`` batches.

    Raises:
        ValidationError: empty input or non-positive capacity
        HashCollisionError: two serials share a leaf, or a leaf equals the sentinel
    """
    if capacity <= 0:
        raise ValidationError("batch capacity must be positive")
    if not serials:
        raise ValidationError("No serials to partition")

    hashed = sorted((field_hash(s), s) for s in serials)

    for (value_a, serial_a), (value_b, serial_b) in zip(hashed, hashed[1:]):
        if value_a == value_b:
            raise HashCollisionError(serial_a, serial_b, field_to_hex(value_a))
    if hashed[-1][0] == SENTINEL:
        raise HashCollisionError(hashed[-1][1], "<padding>", field_to_hex(SENTINEL))

    batches = []
    for start in range(0, len(hashed), capacity):
        chunk = hashed[start:start + capacity]
        batches.append(
            Batch(
                batch_number=start // capacity + 1,
                leaves=tuple(v for v, _ in chunk),
                serial_ids=tuple(s for _, s in chunk),
                capacity=capacity,
            )
        )

    logger.info(
        f"Partitioned {len(hashed)} serials into {len(batches)} batch(es) of max {capacity}"
    )
    return BatchPlan(batches=tuple(batches), total_serials=len(hashed), capacity=capacity)


def write_batch_manifest(plan: BatchPlan, out_dir: Path) -> Path:
    """Write one prover file per batch plus ``manifest.json``.

    Returns:
        Path to the manifest.
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    for batch in plan.batches:
        (out_dir / batch.prover_file).write_text(batch.to_prover_toml(plan.batch_count))

    manifest_path = out_dir / MANIFEST_NAME
    manifest_path.write_text(json.dumps(plan.to_manifest(), indent=2))
    logger.info(f"Wrote {plan.batch_count} prover file(s) and manifest to {out_dir}")
    return manifest_path


def load_batch_manifest(path: Path) -> Dict[str, Any]:
    """Read a batch manifest and check that its prover files exist."""
    path = Path(path)
    manifest = json.loads(path.read_text())
    for key in ("totalSerials", "batchSize", "batchCount", "batches"):
        if key not in manifest:
            raise ValidationError(f"Batch manifest missing field: {key}")
    if manifest["batchCount"] != len(manifest["batches"]):
        raise ValidationError("Batch manifest count does not match its entries")
    for entry in manifest["batches"]:
        if not (path.parent / entry["proverFile"]).exists():
            raise ValidationError(f"Prover file missing: {entry['proverFile']}")
    return manifest
