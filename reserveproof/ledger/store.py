"""SQLite-backed serial ledger.

Holds the serial registry, the history of Merkle roots, proof submissions
and the reference rate with its price history.

Ingestion and root recomputation run as one critical section: a process-wide
lock plus a single transaction, so two concurrent ingests can never persist a
root that misses the other's serials.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from reserveproof.errors import DuplicateSerial, HashCollisionError, ValidationError
from reserveproof.ledger.models import (
    IngestResult,
    LedgerSnapshot,
    MerkleRoot,
    PriceHistoryPoint,
    ProofSubmission,
    RateSetting,
    RootStatus,
    SerialRecord,
    from_epoch,
    utc_now,
)
from reserveproof.zk.merkle_tree import compute_merkle_root, hash_serial, root_to_hex

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS serials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    serial_id TEXT NOT NULL UNIQUE,
    batch_id TEXT NOT NULL,
    leaf_hash TEXT NOT NULL UNIQUE,
    included_in_root INTEGER NOT NULL DEFAULT 0,
    received_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_serials_batch ON serials(batch_id);

CREATE TABLE IF NOT EXISTS merkle_roots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    root_hash TEXT NOT NULL UNIQUE,
    total_serials INTEGER NOT NULL,
    created_at REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    anchored_at REAL,
    tx_ref TEXT
);

CREATE TABLE IF NOT EXISTS proof_submissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    root_hash TEXT NOT NULL,
    batch_count INTEGER NOT NULL,
    proof_hashes TEXT NOT NULL,
    tx_refs TEXT NOT NULL,
    verified INTEGER NOT NULL,
    submitted_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS rate_settings (
    id TEXT PRIMARY KEY,
    rate REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS price_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    price REAL NOT NULL,
    timestamp REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_price_history_ts ON price_history(timestamp);
"""

_RATE_ROW_ID = "main"


class SerialLedger:
    """Serial registry and commitment history.

    Args:
        path: Database file, or ``":memory:"``.
    """

    def __init__(self, path: Union[str, Path] = ":memory:"):
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if self._path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SerialLedger":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Exclusive lock plus one transaction; rolls back on any error."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Serial ingestion
    # ------------------------------------------------------------------

    def ingest(
        self,
        batch_id: str,
        serials: Sequence[str],
        *,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """Register serials and recompute the root over the whole ledger.

        Serials already present are skipped and counted. A leaf hash shared
        by two distinct serials aborts the whole batch with no partial write.
        """
        if not isinstance(batch_id, str) or not batch_id.strip():
            raise ValidationError("batchId must be a non-empty string")
        if isinstance(serials, (str, bytes)) or not isinstance(serials, Sequence):
            raise ValidationError("serials must be an array of strings")
        if not serials:
            raise ValidationError("serials must not be empty")
        for serial in serials:
            if not isinstance(serial, str) or not serial.strip():
                raise ValidationError("every serial must be a non-empty string")

        received_at = (now or utc_now()).timestamp()
        inserted = 0
        duplicates = 0

        with self._transaction() as conn:
            seen_in_batch = set()
            for serial in serials:
                leaf_hex = hash_serial(serial).hex()
                try:
                    if serial in seen_in_batch:
                        raise DuplicateSerial(serial)
                    seen_in_batch.add(serial)
                    self._insert_serial(conn, batch_id, serial, leaf_hex, received_at)
                    inserted += 1
                except DuplicateSerial:
                    duplicates += 1

            root_hex, total = self._recompute_root(conn, received_at)

        logger.info(
            f"Ingested batch {batch_id}: {inserted} new, {duplicates} duplicate, "
            f"root={root_hex} total={total}"
        )
        return IngestResult(
            batch_id=batch_id,
            serials_ingested=inserted,
            duplicates=duplicates,
            new_merkle_root=root_hex,
            total_serials=total,
        )

    @staticmethod
    def _insert_serial(
        conn: sqlite3.Connection,
        batch_id: str,
        serial: str,
        leaf_hex: str,
        received_at: float,
    ) -> None:
        row = conn.execute(
            "SELECT serial_id FROM serials WHERE serial_id = ? OR leaf_hash = ?",
            (serial, leaf_hex),
        ).fetchone()
        if row is not None:
            if row["serial_id"] == serial:
                raise DuplicateSerial(serial)
            raise HashCollisionError(row["serial_id"], serial, leaf_hex)

        conn.execute(
            "INSERT INTO serials (serial_id, batch_id, leaf_hash, included_in_root, received_at) "
            "VALUES (?, ?, ?, 0, ?)",
            (serial, batch_id, leaf_hex, received_at),
        )

    @staticmethod
    def _recompute_root(conn: sqlite3.Connection, created_at: float) -> Tuple[str, int]:
        # Full rescan of every leaf on each ingest.
        leaves = [
            bytes.fromhex(row["leaf_hash"])
            for row in conn.execute("SELECT leaf_hash FROM serials")
        ]
        root_hex = root_to_hex(compute_merkle_root(leaves))
        conn.execute(
            "INSERT OR IGNORE INTO merkle_roots (root_hash, total_serials, created_at, status) "
            "VALUES (?, ?, ?, ?)",
            (root_hex, len(leaves), created_at, RootStatus.PENDING.value),
        )
        return root_hex, len(leaves)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> LedgerSnapshot:
        """Immutable copy of all serials and their root, taken under the lock."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT serial_id, batch_id, leaf_hash, included_in_root, received_at "
                "FROM serials ORDER BY id"
            ).fetchall()
        records = tuple(_serial_from_row(row) for row in rows)
        root = compute_merkle_root(bytes.fromhex(r.leaf_hash) for r in records)
        return LedgerSnapshot(serials=records, root_hash=root_to_hex(root))

    def total_serials(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM serials").fetchone()[0]

    def distinct_batch_count(self) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(DISTINCT batch_id) FROM serials"
            ).fetchone()[0]

    def get_serial(self, serial_id: str) -> Optional[SerialRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT serial_id, batch_id, leaf_hash, included_in_root, received_at "
                "FROM serials WHERE serial_id = ?",
                (serial_id,),
            ).fetchone()
        return _serial_from_row(row) if row is not None else None

    def current_root(self) -> Optional[MerkleRoot]:
        """Most recently computed root, or None for an empty ledger."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM merkle_roots ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return _root_from_row(row) if row is not None else None

    def get_root(self, root_hash: str) -> Optional[MerkleRoot]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM merkle_roots WHERE root_hash = ?", (root_hash,)
            ).fetchone()
        return _root_from_row(row) if row is not None else None

    def is_anchored(self, root_hash: str) -> bool:
        root = self.get_root(root_hash)
        return root is not None and root.status is RootStatus.ANCHORED

    def root_history(self, limit: int = 10) -> List[MerkleRoot]:
        """Most recent roots first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM merkle_roots ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_root_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Anchoring
    # ------------------------------------------------------------------

    def mark_anchored(
        self,
        snapshot: LedgerSnapshot,
        tx_ref: str,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        """Mark the snapshot's root anchored and back-fill its serials.

        Serials ingested after the snapshot was taken stay unincluded.
        """
        anchored_at = (now or utc_now()).timestamp()
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO merkle_roots (root_hash, total_serials, created_at, status) "
                "VALUES (?, ?, ?, ?)",
                (snapshot.root_hash, snapshot.total_serials, anchored_at, RootStatus.PENDING.value),
            )
            conn.execute(
                "UPDATE merkle_roots SET status = ?, anchored_at = ?, tx_ref = ? WHERE root_hash = ?",
                (RootStatus.ANCHORED.value, anchored_at, tx_ref, snapshot.root_hash),
            )
            conn.executemany(
                "UPDATE serials SET included_in_root = 1 WHERE serial_id = ?",
                [(serial_id,) for serial_id in snapshot.serial_ids],
            )
        logger.info(f"Root {snapshot.root_hash} anchored ({tx_ref}), {snapshot.total_serials} serials")

    def record_proof_submission(
        self,
        root_hash: str,
        proof_hashes: Sequence[str],
        tx_refs: Sequence[str],
        *,
        verified: bool = True,
        now: Optional[datetime] = None,
    ) -> ProofSubmission:
        submitted_at = now or utc_now()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO proof_submissions "
                "(root_hash, batch_count, proof_hashes, tx_refs, verified, submitted_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    root_hash,
                    len(proof_hashes),
                    json.dumps(list(proof_hashes)),
                    json.dumps(list(tx_refs)),
                    int(verified),
                    submitted_at.timestamp(),
                ),
            )
        return ProofSubmission(
            root_hash=root_hash,
            batch_count=len(proof_hashes),
            proof_hashes=tuple(proof_hashes),
            tx_refs=tuple(tx_refs),
            verified=verified,
            submitted_at=submitted_at,
        )

    def latest_proof_submission(self) -> Optional[ProofSubmission]:
        submissions = self.proof_submissions(limit=1)
        return submissions[0] if submissions else None

    def proof_submissions(self, limit: int = 20) -> List[ProofSubmission]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM proof_submissions ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            ProofSubmission(
                root_hash=row["root_hash"],
                batch_count=row["batch_count"],
                proof_hashes=tuple(json.loads(row["proof_hashes"])),
                tx_refs=tuple(json.loads(row["tx_refs"])),
                verified=bool(row["verified"]),
                submitted_at=from_epoch(row["submitted_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Reference rate
    # ------------------------------------------------------------------

    def get_rate_setting(self) -> Optional[RateSetting]:
        with self._lock:
            row = self._conn.execute(
                "SELECT rate, updated_at FROM rate_settings WHERE id = ?", (_RATE_ROW_ID,)
            ).fetchone()
        if row is None:
            return None
        return RateSetting(rate=row["rate"], updated_at=from_epoch(row["updated_at"]))

    def record_rate(
        self,
        rate: float,
        updated_at: datetime,
        prune_before: datetime,
    ) -> None:
        """Upsert the current rate, append it to history and prune old points."""
        ts = updated_at.timestamp()
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO rate_settings (id, rate, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET rate = excluded.rate, updated_at = excluded.updated_at",
                (_RATE_ROW_ID, rate, ts),
            )
            conn.execute(
                "INSERT INTO price_history (price, timestamp) VALUES (?, ?)", (rate, ts)
            )
            pruned = conn.execute(
                "DELETE FROM price_history WHERE timestamp < ?", (prune_before.timestamp(),)
            ).rowcount
        if pruned:
            logger.debug(f"Pruned {pruned} price history points")

    def price_at_or_before(self, moment: datetime) -> Optional[PriceHistoryPoint]:
        """Newest history point recorded at or before ``moment``."""
        with self._lock:
            row = self._conn.execute(
                "SELECT price, timestamp FROM price_history WHERE timestamp <= ? "
                "ORDER BY timestamp DESC LIMIT 1",
                (moment.timestamp(),),
            ).fetchone()
        if row is None:
            return None
        return PriceHistoryPoint(price=row["price"], timestamp=from_epoch(row["timestamp"]))

    def price_history(self, since: Optional[datetime] = None) -> List[PriceHistoryPoint]:
        cutoff = since.timestamp() if since is not None else 0.0
        with self._lock:
            rows = self._conn.execute(
                "SELECT price, timestamp FROM price_history WHERE timestamp >= ? ORDER BY timestamp",
                (cutoff,),
            ).fetchall()
        return [
            PriceHistoryPoint(price=row["price"], timestamp=from_epoch(row["timestamp"]))
            for row in rows
        ]


def _serial_from_row(row: sqlite3.Row) -> SerialRecord:
    return SerialRecord(
        serial_id=row["serial_id"],
        batch_id=row["batch_id"],
        leaf_hash=row["leaf_hash"],
        included_in_root=bool(row["included_in_root"]),
        received_at=from_epoch(row["received_at"]),
    )


def _root_from_row(row: sqlite3.Row) -> MerkleRoot:
    return MerkleRoot(
        root_hash=row["root_hash"],
        total_serials=row["total_serials"],
        created_at=from_epoch(row["created_at"]),
        status=RootStatus(row["status"]),
        anchored_at=from_epoch(row["anchored_at"]),
        tx_ref=row["tx_ref"],
    )
