"""One proof-of-reserve cycle: snapshot, partition, prove, anchor."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from reserveproof.chain.anchor import AnchorSubmitter, SubmissionResult
from reserveproof.errors import ValidationError
from reserveproof.ledger.models import LedgerSnapshot
from reserveproof.ledger.store import SerialLedger
from reserveproof.zk.partition import partition_serials, write_batch_manifest
from reserveproof.zk.proof_manager import ProofOrchestrator
from reserveproof.zk.verification import ProofRunReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleResult:
    snapshot: LedgerSnapshot
    proof_report: Optional[ProofRunReport] = None
    submission: Optional[SubmissionResult] = None

    @property
    def success(self) -> bool:
        return self.submission is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "rootHash": self.snapshot.root_hash,
            "totalSerials": self.snapshot.total_serials,
            "proofRun": self.proof_report.to_dict() if self.proof_report else None,
            "submission": self.submission.to_dict() if self.submission else None,
        }


async def run_reserve_cycle(
    ledger: SerialLedger,
    orchestrator: ProofOrchestrator,
    submitter: AnchorSubmitter,
    *,
    batch_dir: Path,
    batch_size: int,
) -> CycleResult:
    """Prove and anchor the ledger as it stands now.

    Serials ingested while the cycle runs are left for the next cycle. A
    failed proof run submits nothing.
    """
    snapshot = ledger.snapshot()
    if snapshot.total_serials == 0:
        raise ValidationError("Ledger is empty; nothing to prove")

    if ledger.is_anchored(snapshot.root_hash):
        logger.info(f"Root {snapshot.root_hash} already anchored; skipping proof run")
        submission = await submitter.submit(snapshot, [])
        return CycleResult(snapshot=snapshot, submission=submission)

    plan = partition_serials(snapshot.serial_ids, batch_size)
    manifest_path = write_batch_manifest(plan, Path(batch_dir))

    report = await asyncio.to_thread(orchestrator.run, manifest_path)
    if not report:
        failure = report.failure
        logger.error(
            f"Proof run failed at batch {failure.batch_number if failure else '?'}; nothing submitted"
        )
        return CycleResult(snapshot=snapshot, proof_report=report)

    submission = await submitter.submit(snapshot, report.artifacts)
    return CycleResult(snapshot=snapshot, proof_report=report, submission=submission)
