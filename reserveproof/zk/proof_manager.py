"""Drive the external prover over every circuit batch.

For each batch, strictly in order:

1. stage the batch's prover file as the circuit's ``Prover.toml``
2. witness generation (``nargo execute``)
3. proof generation (``bb prove ... --write_vk``)
4. verification (``bb verify``)
5. read the Merkle root from the first 32 bytes of ``public_inputs``

Artifacts accumulate in a run-scoped staging directory and are published to
the proofs directory, with ``proof_manifest.json``, only once every batch has
verified. A failed run removes its staging directory, so no artifact of a
partial run is ever visible to the submitter.

Dependencies: shlex, subprocess
"""

from __future__ import annotations

import json
import logging
import shlex
import shutil
import subprocess
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from reserveproof.config import ReserveConfig
from reserveproof.errors import ValidationError
from reserveproof.zk.partition import load_batch_manifest
from reserveproof.zk.verification import (
    ProofArtifact,
    ProofErrorCode,
    ProofRunReport,
    ProofStage,
    StageReport,
)

logger = logging.getLogger(__name__)

PROOF_MANIFEST_NAME = "proof_manifest.json"
PUBLIC_ROOT_BYTES = 32
STDERR_TAIL_CHARS = 2000
MAX_PUBLIC_INPUTS_BYTES = 64 * 1024


def _validate_path_safety(path: Path, base_dir: Optional[Path] = None) -> None:
    """Reject paths that escape ``base_dir`` or contain null bytes."""
    if "\x00" in str(path):
        raise ValidationError(f"Invalid null byte in path: {path!r}")
    if base_dir is not None and not path.resolve().is_relative_to(base_dir.resolve()):
        raise ValidationError(f"Path escapes {base_dir}: {path}")


@dataclass(frozen=True)
class ProverCommands:
    """Command templates; placeholders are filled per step."""
    witness: str = "nargo execute"
    prove: str = "bb prove -b {bytecode} -w {witness} -o {output_dir} --write_vk"
    verify: str = "bb verify -p {proof} -k {vk}"


class ProofOrchestrator:
    """Runs witness, prove and verify for each batch of a batch manifest.

    Args:
        circuit_dir: Circuit project directory (``nargo`` working directory)
        circuit_name: Circuit package name, used for ``target/<name>.json|.gz``
        proofs_dir: Where verified artifacts are published
        commands: Tool command templates
        step_timeout: Upper bound for one tool invocation, seconds
        run_timeout: Deadline for the whole run, seconds
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        circuit_dir: Path,
        circuit_name: str,
        proofs_dir: Path,
        *,
        commands: Optional[ProverCommands] = None,
        step_timeout: float = 300.0,
        run_timeout: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.circuit_dir = Path(circuit_dir)
        self.circuit_name = circuit_name
        self.proofs_dir = Path(proofs_dir)
        self.commands = commands or ProverCommands()
        self.step_timeout = step_timeout
        self.run_timeout = run_timeout
        self._clock = clock

    @classmethod
    def from_config(cls, config: ReserveConfig) -> "ProofOrchestrator":
        return cls(
            circuit_dir=Path(config.circuit.circuit_dir),
            circuit_name=config.circuit.circuit_name,
            proofs_dir=Path(config.circuit.proofs_dir),
            commands=ProverCommands(
                witness=config.prover.witness_command,
                prove=config.prover.prove_command,
                verify=config.prover.verify_command,
            ),
            step_timeout=config.prover.step_timeout_seconds,
            run_timeout=config.prover.run_timeout_seconds,
        )

    @property
    def target_dir(self) -> Path:
        return self.circuit_dir / "target"

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, batch_manifest_path: Path) -> ProofRunReport:
        """Prove every batch listed in ``batch_manifest_path``.

        Returns:
            ProofRunReport. On failure it names the first failing batch and
            stage and carries no artifacts.
        """
        batch_manifest_path = Path(batch_manifest_path)
        manifest = load_batch_manifest(batch_manifest_path)
        batch_dir = batch_manifest_path.parent
        deadline = self._clock() + self.run_timeout
        stages: List[StageReport] = []

        if not self.circuit_dir.is_dir():
            stages.append(StageReport.fail(
                ProofStage.STAGE_INPUTS, 1, ProofErrorCode.CIRCUIT_MISSING,
                f"Circuit directory not found: {self.circuit_dir}",
            ))
            return ProofRunReport(success=False, stages=tuple(stages))

        staging = self.proofs_dir.parent / f".{self.proofs_dir.name}.staging-{uuid.uuid4().hex[:8]}"
        staging.mkdir(parents=True)
        logger.info(f"Proving {manifest['batchCount']} batch(es); staging in {staging}")

        staged: List[Tuple[Dict[str, Any], str]] = []
        try:
            for entry in manifest["batches"]:
                batch_reports, root = self._prove_batch(entry, batch_dir, staging, deadline)
                stages.extend(batch_reports)
                if root is None:
                    failure = batch_reports[-1]
                    logger.error(
                        f"Batch {failure.batch_number} failed at {failure.stage.value}: {failure.message}"
                    )
                    shutil.rmtree(staging, ignore_errors=True)
                    return ProofRunReport(success=False, stages=tuple(stages))
                staged.append((entry, root))

            artifacts, manifest_path = self._publish(manifest, staged, staging)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            stages.append(StageReport.fail(
                ProofStage.PUBLISH, 0, ProofErrorCode.INTERNAL_ERROR,
                "Could not write proof artifacts", error=str(exc),
            ))
            return ProofRunReport(success=False, stages=tuple(stages))

        logger.info(f"Published {len(artifacts)} verified proof(s) to {self.proofs_dir}")
        return ProofRunReport(
            success=True,
            stages=tuple(stages),
            artifacts=tuple(artifacts),
            manifest_path=manifest_path,
        )

    def _prove_batch(
        self,
        entry: Dict[str, Any],
        batch_dir: Path,
        staging: Path,
        deadline: float,
    ) -> Tuple[List[StageReport], Optional[str]]:
        """Run every stage for one batch; stop at the first failure."""
        n = entry["batchNumber"]
        reports: List[StageReport] = []

        report = self._stage_inputs(n, batch_dir / entry["proverFile"], batch_dir)
        reports.append(report)
        if not report:
            return reports, None

        target = self.target_dir
        steps = (
            (ProofStage.WITNESS, self.commands.witness, {}),
            (ProofStage.PROVE, self.commands.prove, {
                "bytecode": f"./target/{self.circuit_name}.json",
                "witness": f"./target/{self.circuit_name}.gz",
                "output_dir": "./target",
                "circuit": self.circuit_name,
            }),
            (ProofStage.VERIFY, self.commands.verify, {
                "proof": "./target/proof",
                "vk": "./target/vk",
            }),
        )
        for stage, template, params in steps:
            if stage is ProofStage.VERIFY:
                missing = [name for name in ("proof", "vk") if not (target / name).exists()]
                if missing:
                    reports.append(StageReport.fail(
                        stage, n, ProofErrorCode.ARTIFACT_MISSING,
                        f"Prover did not produce: {', '.join(missing)}",
                    ))
                    return reports, None
            report = self._run_tool(stage, n, template, deadline, **params)
            reports.append(report)
            if not report:
                return reports, None

        report, root = self._extract_root(n, target)
        reports.append(report)
        if root is None:
            return reports, None

        for name in ("proof", "vk", "public_inputs"):
            shutil.copyfile(target / name, staging / f"{name}_batch_{n}")
        return reports, root

    def _stage_inputs(self, batch_number: int, prover_file: Path, batch_dir: Path) -> StageReport:
        try:
            _validate_path_safety(prover_file, batch_dir)
        except ValidationError as exc:
            return StageReport.fail(
                ProofStage.STAGE_INPUTS, batch_number, ProofErrorCode.PROVER_FILE_MISSING,
                exc.user_message,
            )
        if not prover_file.is_file():
            return StageReport.fail(
                ProofStage.STAGE_INPUTS, batch_number, ProofErrorCode.PROVER_FILE_MISSING,
                f"Prover file not found: {prover_file.name}",
            )
        shutil.copyfile(prover_file, self.circuit_dir / "Prover.toml")
        # Outputs left by the previous batch must not be mistaken for this one's.
        for name in ("proof", "vk", "public_inputs"):
            (self.target_dir / name).unlink(missing_ok=True)
        return StageReport.ok(ProofStage.STAGE_INPUTS, batch_number, prover_file=prover_file.name)

    def _run_tool(
        self,
        stage: ProofStage,
        batch_number: int,
        template: str,
        deadline: float,
        **params: str,
    ) -> StageReport:
        """Run one tool invocation bounded by the step timeout and run deadline."""
        remaining = deadline - self._clock()
        if remaining <= 0:
            return StageReport.fail(
                stage, batch_number, ProofErrorCode.RUN_DEADLINE_EXCEEDED,
                "Proof run deadline exceeded",
            )
        timeout = min(self.step_timeout, remaining)

        # Format first, then split; never hand the string to a shell.
        cmd_parts = shlex.split(template.format(**params))
        logger.debug(f"batch {batch_number} {stage.value}: {cmd_parts}")
        started = self._clock()

        try:
            subprocess.run(
                cmd_parts,
                cwd=self.circuit_dir,
                check=True,
                timeout=timeout,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            return StageReport.fail(
                stage, batch_number, ProofErrorCode.TOOL_NOT_FOUND,
                f"Tool not found: {cmd_parts[0] if cmd_parts else template}",
            )
        except subprocess.TimeoutExpired:
            return StageReport.fail(
                stage, batch_number, ProofErrorCode.TOOL_TIMEOUT,
                f"{stage.value} timed out after {timeout:.0f}s",
            )
        except subprocess.CalledProcessError as exc:
            code = ProofErrorCode.VERIFY_REJECTED if stage is ProofStage.VERIFY else ProofErrorCode.TOOL_FAILED
            return StageReport.fail(
                stage, batch_number, code,
                f"{stage.value} exited with status {exc.returncode}",
                stderr=(exc.stderr or "")[-STDERR_TAIL_CHARS:],
            )

        return StageReport.ok(stage, batch_number, elapsed=round(self._clock() - started, 3))

    def _extract_root(self, batch_number: int, target: Path) -> Tuple[StageReport, Optional[str]]:
        public_inputs = target / "public_inputs"
        if not public_inputs.is_file():
            return StageReport.fail(
                ProofStage.EXTRACT_ROOT, batch_number, ProofErrorCode.ARTIFACT_MISSING,
                "Prover did not produce: public_inputs",
            ), None
        if public_inputs.stat().st_size > MAX_PUBLIC_INPUTS_BYTES:
            return StageReport.fail(
                ProofStage.EXTRACT_ROOT, batch_number, ProofErrorCode.PUBLIC_INPUTS_INVALID,
                "public_inputs exceeds size limit",
            ), None

        data = public_inputs.read_bytes()
        if len(data) < PUBLIC_ROOT_BYTES:
            return StageReport.fail(
                ProofStage.EXTRACT_ROOT, batch_number, ProofErrorCode.PUBLIC_INPUTS_INVALID,
                f"public_inputs has {len(data)} bytes, expected at least {PUBLIC_ROOT_BYTES}",
            ), None

        root = "0x" + data[:PUBLIC_ROOT_BYTES].hex()
        return StageReport.ok(ProofStage.EXTRACT_ROOT, batch_number, merkle_root=root), root

    def _publish(
        self,
        manifest: Dict[str, Any],
        staged: List[Tuple[Dict[str, Any], str]],
        staging: Path,
    ) -> Tuple[List[ProofArtifact], Path]:
        """Write the proof manifest and swap staging into place."""
        artifacts = [
            ProofArtifact(
                batch_number=entry["batchNumber"],
                serial_count=entry["serialCount"],
                proof_path=self.proofs_dir / f"proof_batch_{entry['batchNumber']}",
                vk_path=self.proofs_dir / f"vk_batch_{entry['batchNumber']}",
                public_inputs_path=self.proofs_dir / f"public_inputs_batch_{entry['batchNumber']}",
                merkle_root=root,
            )
            for entry, root in staged
        ]
        proof_manifest = {
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "totalSerials": manifest["totalSerials"],
            "batchCount": len(artifacts),
            "proofs": [a.to_manifest_entry() for a in artifacts],
        }
        (staging / PROOF_MANIFEST_NAME).write_text(json.dumps(proof_manifest, indent=2))

        previous = None
        if self.proofs_dir.exists():
            previous = self.proofs_dir.with_name(f".{self.proofs_dir.name}.previous-{uuid.uuid4().hex[:8]}")
            self.proofs_dir.rename(previous)
        staging.rename(self.proofs_dir)
        if previous is not None:
            shutil.rmtree(previous, ignore_errors=True)

        return artifacts, self.proofs_dir / PROOF_MANIFEST_NAME

    # ------------------------------------------------------------------
    # Re-verification
    # ------------------------------------------------------------------

    def verify_artifact(self, artifact: ProofArtifact) -> StageReport:
        """Re-run the verifier against a published artifact."""
        for path in (artifact.proof_path, artifact.vk_path):
            if not path.is_file():
                return StageReport.fail(
                    ProofStage.VERIFY, artifact.batch_number, ProofErrorCode.ARTIFACT_MISSING,
                    f"Artifact not found: {path.name}",
                )
        return self._run_tool(
            ProofStage.VERIFY,
            artifact.batch_number,
            self.commands.verify,
            self._clock() + self.step_timeout,
            proof=str(artifact.proof_path.resolve()),
            vk=str(artifact.vk_path.resolve()),
        )


def load_proof_manifest(path: Path) -> Tuple[int, List[ProofArtifact]]:
    """Read ``proof_manifest.json``.

    Returns:
        (total_serials, artifacts) with artifact paths resolved next to the manifest.
    """
    path = Path(path)
    data = json.loads(path.read_text())
    for key in ("totalSerials", "batchCount", "proofs"):
        if key not in data:
            raise ValidationError(f"Proof manifest missing field: {key}")
    if data["batchCount"] != len(data["proofs"]):
        raise ValidationError("Proof manifest count does not match its entries")

    base = path.parent
    artifacts = []
    for entry in data["proofs"]:
        artifact = ProofArtifact(
            batch_number=entry["batchNumber"],
            serial_count=entry["serialCount"],
            proof_path=base / entry["proofFile"],
            vk_path=base / entry["vkFile"],
            public_inputs_path=base / entry["publicInputsFile"],
            merkle_root=entry["merkleRoot"],
        )
        for p in (artifact.proof_path, artifact.vk_path, artifact.public_inputs_path):
            _validate_path_safety(p, base)
        artifacts.append(artifact)
    return data["totalSerials"], artifacts
