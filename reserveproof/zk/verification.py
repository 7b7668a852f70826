"""Structured results for proof runs.

Every orchestrator stage returns a ``StageReport`` instead of exiting the
process, so the caller decides whether to abort, retry or report.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from reserveproof.errors import ExternalToolFailure


class ProofStage(str, Enum):
    STAGE_INPUTS = "stage_inputs"
    WITNESS = "witness"
    PROVE = "prove"
    VERIFY = "verify"
    EXTRACT_ROOT = "extract_root"
    PUBLISH = "publish"


class ProofErrorCode(str, Enum):
    """Error codes for proof stages.

    Using str as base class allows JSON serialization.
    """

    OK = "ok"

    PROVER_FILE_MISSING = "prover_file_missing"
    CIRCUIT_MISSING = "circuit_missing"
    ARTIFACT_MISSING = "artifact_missing"
    PUBLIC_INPUTS_INVALID = "public_inputs_invalid"

    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_FAILED = "tool_failed"
    TOOL_TIMEOUT = "tool_timeout"
    RUN_DEADLINE_EXCEEDED = "run_deadline_exceeded"
    VERIFY_REJECTED = "verify_rejected"

    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class StageReport:
    """Outcome of one stage for one batch.

    Examples:
        >>> report = StageReport.ok(ProofStage.WITNESS, 1)
        >>> bool(report)
        True
    """

    success: bool
    stage: ProofStage
    batch_number: int
    error_code: ProofErrorCode = ProofErrorCode.OK
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, stage: ProofStage, batch_number: int, message: str = "", **details: Any) -> "StageReport":
        return cls(
            success=True,
            stage=stage,
            batch_number=batch_number,
            message=message,
            details=details,
        )

    @classmethod
    def fail(
        cls,
        stage: ProofStage,
        batch_number: int,
        code: ProofErrorCode,
        message: str,
        **details: Any,
    ) -> "StageReport":
        return cls(
            success=False,
            stage=stage,
            batch_number=batch_number,
            error_code=code,
            message=message,
            details=details,
        )

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "stage": self.stage.value,
            "batch_number": self.batch_number,
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass(frozen=True)
class ProofArtifact:
    """Published proof files for one batch."""
    batch_number: int
    serial_count: int
    proof_path: Path
    vk_path: Path
    public_inputs_path: Path
    merkle_root: str

    def to_manifest_entry(self) -> Dict[str, Any]:
        return {
            "batchNumber": self.batch_number,
            "serialCount": self.serial_count,
            "proofFile": self.proof_path.name,
            "vkFile": self.vk_path.name,
            "publicInputsFile": self.public_inputs_path.name,
            "merkleRoot": self.merkle_root,
        }


@dataclass(frozen=True)
class ProofRunReport:
    """Outcome of a whole proving run.

    ``artifacts`` is empty unless every batch succeeded.
    """

    success: bool
    stages: Tuple[StageReport, ...]
    artifacts: Tuple[ProofArtifact, ...] = ()
    manifest_path: Optional[Path] = None

    def __bool__(self) -> bool:
        return self.success

    @property
    def failure(self) -> Optional[StageReport]:
        for stage in self.stages:
            if not stage.success:
                return stage
        return None

    def raise_for_failure(self) -> None:
        failure = self.failure
        if failure is None:
            return
        raise ExternalToolFailure(
            failure.batch_number,
            failure.stage.value,
            failure.message,
            internal_details=str(failure.details) if failure.details else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        failure = self.failure
        stages: List[Dict[str, Any]] = [s.to_dict() for s in self.stages]
        return {
            "success": self.success,
            "failed_batch": failure.batch_number if failure else None,
            "stages": stages,
            "artifacts": [a.to_manifest_entry() for a in self.artifacts],
            "manifest": str(self.manifest_path) if self.manifest_path else None,
        }
