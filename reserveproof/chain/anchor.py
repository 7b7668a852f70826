"""Anchor a verified commitment on the ledger.

Submission order for one snapshot:

1. skip entirely if the ledger already records the root as anchored
2. make sure the protocol account uses the V2 layout (idempotent migration)
3. ``update_merkle_root`` unless the chain already holds this root and count
4. ``submit_proof`` with SHA-256 of each batch's proof and the claimed reserves
5. optionally mint the gap between proven reserves and supply
6. mark the root anchored, back-fill the snapshot's serials and write an audit log

A failure at any step leaves the ledger root pending, so the next run resumes
from step 3 with no duplicate root update.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from reserveproof.chain.layout import (
    V1_MIN_SIZE,
    V2_ACCOUNT_SIZE,
    ProtocolState,
    decode_protocol_state,
)
from reserveproof.chain.rpc import LedgerClient
from reserveproof.errors import LedgerRpcError, MigrationRequiredError, ValidationError
from reserveproof.ledger.models import LedgerSnapshot
from reserveproof.ledger.store import SerialLedger
from reserveproof.zk.merkle_tree import hex_to_root
from reserveproof.zk.verification import ProofArtifact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionResult:
    root_hash: str
    total_serials: int
    already_anchored: bool = False
    root_updated: bool = False
    tx_refs: Tuple[str, ...] = ()
    proof_hashes: Tuple[str, ...] = ()
    minted: int = 0
    audit_path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rootHash": self.root_hash,
            "totalSerials": self.total_serials,
            "alreadyAnchored": self.already_anchored,
            "rootUpdated": self.root_updated,
            "txRefs": list(self.tx_refs),
            "proofHashes": list(self.proof_hashes),
            "minted": self.minted,
            "auditLog": str(self.audit_path) if self.audit_path else None,
        }


@dataclass
class _AuditTrail:
    transactions: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, instruction: str, tx_ref: str, **details: Any) -> None:
        self.transactions.append({"instruction": instruction, "txRef": tx_ref, **details})


def proof_hash(artifact: ProofArtifact) -> str:
    return hashlib.sha256(artifact.proof_path.read_bytes()).hexdigest()


class AnchorSubmitter:
    """Submits roots and proofs through a ``LedgerClient`` and records the outcome.

    Args:
        ledger: Serial ledger receiving anchor status and submissions
        client: Ledger RPC client
        audit_dir: Where ``audit_<ts>.json`` files are written; None disables them
        auto_mint: Mint the reserve surplus after a successful submission
    """

    def __init__(
        self,
        ledger: SerialLedger,
        client: LedgerClient,
        *,
        audit_dir: Optional[Path] = None,
        auto_mint: bool = False,
    ):
        self.ledger = ledger
        self.client = client
        self.audit_dir = Path(audit_dir) if audit_dir is not None else None
        self.auto_mint = auto_mint

    async def read_state(self) -> Optional[ProtocolState]:
        """Current ProtocolState, or None when the account does not exist.

        Raises:
            MigrationRequiredError: the account still uses the V1 layout
        """
        data = await self.client.get_account_data()
        if data is None:
            return None
        return decode_protocol_state(data)

    async def ensure_schema(self) -> bool:
        """Upgrade a V1 account to V2 if needed.

        Returns:
            True if a migration was performed, False if already current.
        """
        data = await self.client.get_account_data()
        if data is None:
            raise MigrationRequiredError("Protocol state account not found")
        if len(data) >= V2_ACCOUNT_SIZE:
            return False
        if len(data) < V1_MIN_SIZE:
            raise MigrationRequiredError(
                "Protocol state layout is not recognised",
                f"account is {len(data)} bytes",
            )

        logger.warning(f"Protocol state is {len(data)} bytes; migrating to V2 layout")
        await self.client.send_instruction("migrate_v2", {})
        await self.client.send_instruction("fix_v2_layout", {})

        data = await self.client.get_account_data()
        if data is None or len(data) < V2_ACCOUNT_SIZE:
            raise MigrationRequiredError(
                "Protocol state migration did not complete",
                f"account is {0 if data is None else len(data)} bytes after migration",
            )
        logger.info("Protocol state migrated to V2 layout")
        return True

    async def submit(
        self,
        snapshot: LedgerSnapshot,
        artifacts: Sequence[ProofArtifact],
    ) -> SubmissionResult:
        """Anchor ``snapshot.root_hash`` backed by ``artifacts``.

        Raises:
            ValidationError: the artifacts do not cover the snapshot
            MigrationRequiredError: the protocol account is missing or unmigratable
            LedgerRpcError: the ledger rejected or never answered a call
        """
        root_hex = snapshot.root_hash
        total = snapshot.total_serials

        if self.ledger.is_anchored(root_hex):
            logger.info(f"Root {root_hex} already anchored; nothing to submit")
            return SubmissionResult(root_hash=root_hex, total_serials=total, already_anchored=True)

        if not artifacts:
            raise ValidationError("No proof artifacts to submit")
        covered = sum(a.serial_count for a in artifacts)
        if covered != total:
            raise ValidationError(
                "Proofs do not cover the ledger snapshot",
                f"proofs cover {covered} serials, snapshot has {total}",
            )

        await self.ensure_schema()
        state = await self.read_state()
        if state is None:
            raise MigrationRequiredError("Protocol state account not found")
        if state.is_paused:
            raise LedgerRpcError("Protocol is paused")

        trail = _AuditTrail()
        root_bytes = hex_to_root(root_hex)
        root_updated = False
        if state.current_merkle_root != root_bytes or state.proven_reserves != total:
            tx = await self.client.send_instruction(
                "update_merkle_root", {"root": root_hex, "totalSerials": total}
            )
            trail.add("update_merkle_root", tx, root=root_hex, totalSerials=total)
            root_updated = True
        else:
            logger.info("Chain already holds this root; skipping update_merkle_root")

        hashes = []
        for artifact in sorted(artifacts, key=lambda a: a.batch_number):
            digest = proof_hash(artifact)
            tx = await self.client.send_instruction(
                "submit_proof", {"proofHash": digest, "claimedReserves": total}
            )
            trail.add("submit_proof", tx, batchNumber=artifact.batch_number, proofHash=digest)
            hashes.append(digest)

        minted = await self._mint_surplus(trail) if self.auto_mint else 0

        tx_refs = tuple(t["txRef"] for t in trail.transactions)
        self.ledger.mark_anchored(snapshot, tx_refs[0])
        self.ledger.record_proof_submission(root_hex, hashes, tx_refs)
        audit_path = self._write_audit(snapshot, trail, minted)

        return SubmissionResult(
            root_hash=root_hex,
            total_serials=total,
            root_updated=root_updated,
            tx_refs=tx_refs,
            proof_hashes=tuple(hashes),
            minted=minted,
            audit_path=audit_path,
        )

    async def _mint_surplus(self, trail: _AuditTrail) -> int:
        state = await self.read_state()
        if state is None:
            return 0
        surplus = state.proven_reserves - state.total_supply
        if surplus <= 0:
            return 0
        tx = await self.client.send_instruction("mint", {"amount": surplus})
        trail.add("mint", tx, amount=surplus)
        logger.info(f"Minted {surplus} to match proven reserves")
        return surplus

    def _write_audit(self, snapshot: LedgerSnapshot, trail: _AuditTrail, minted: int) -> Optional[Path]:
        if self.audit_dir is None:
            return None
        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "merkleRoot": snapshot.root_hash,
            "totalSerials": snapshot.total_serials,
            "snapshotTakenAt": snapshot.taken_at.isoformat(),
            "transactions": trail.transactions,
            "minted": minted,
        }
        self.audit_dir.mkdir(parents=True, exist_ok=True)
        path = self.audit_dir / f"audit_{now.strftime('%Y%m%dT%H%M%S%fZ')}.json"
        path.write_text(json.dumps(record, indent=2))
        return path

    async def sync_price(self, price_per_unit: int) -> str:
        """Send ``set_price``. Callers check the program's change bound first."""
        if price_per_unit <= 0:
            raise ValidationError("price must be positive")
        return await self.client.send_instruction("set_price", {"price": price_per_unit})
