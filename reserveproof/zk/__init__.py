"""Merkle commitments, circuit batching and external proof orchestration."""

from .merkle_tree import MerkleTreeBuilder, compute_merkle_root, hash_serial, root_to_hex
from .partition import Batch, BatchPlan, partition_serials, write_batch_manifest
from .proof_manager import ProofOrchestrator, load_proof_manifest
from .verification import ProofArtifact, ProofErrorCode, ProofRunReport, ProofStage, StageReport

__all__ = [
    "Batch",
    "BatchPlan",
    "MerkleTreeBuilder",
    "ProofArtifact",
    "ProofErrorCode",
    "ProofOrchestrator",
    "ProofRunReport",
    "ProofStage",
    "StageReport",
    "compute_merkle_root",
    "hash_serial",
    "load_proof_manifest",
    "partition_serials",
    "root_to_hex",
    "write_batch_manifest",
]
