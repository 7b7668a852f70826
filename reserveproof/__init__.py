"""Proof-of-Reserve pipeline for serialized physical assets.

Serial ingestion, Merkle commitments, circuit batching, external proof
orchestration, on-chain anchoring and solvency/rate reconciliation.
"""

__version__ = "0.3.0"
