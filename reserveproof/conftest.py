"""Shared pytest fixtures for reserveproof tests."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import List

import pytest

from reserveproof.ledger.store import SerialLedger
from reserveproof.zk.verification import ProofArtifact


@pytest.fixture
def ledger():
    """Fresh in-memory serial ledger."""
    store = SerialLedger(":memory:")
    yield store
    store.close()


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_artifacts(tmp_path: Path):
    """Factory writing fake proof files and returning matching ProofArtifacts.

    ``make_artifacts([20, 20, 5])`` gives three batches with those serial counts.
    """

    def _make(counts: List[int]) -> List[ProofArtifact]:
        proofs = tmp_path / "proofs"
        proofs.mkdir(exist_ok=True)
        artifacts = []
        for n, count in enumerate(counts, start=1):
            proof = proofs / f"proof_batch_{n}"
            vk = proofs / f"vk_batch_{n}"
            public_inputs = proofs / f"public_inputs_batch_{n}"
            proof.write_bytes(f"proof-{n}".encode())
            vk.write_bytes(b"vk")
            public_inputs.write_bytes(bytes([n]) * 32)
            artifacts.append(
                ProofArtifact(
                    batch_number=n,
                    serial_count=count,
                    proof_path=proof,
                    vk_path=vk,
                    public_inputs_path=public_inputs,
                    merkle_root="0x" + (bytes([n]) * 32).hex(),
                )
            )
        return artifacts

    return _make
