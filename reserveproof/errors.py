"""Error taxonomy for the reserve pipeline.

Every error carries a ``user_message`` that is safe to return over the API and
optional ``internal_details`` that only ever reach the log.
"""

from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ReserveError(Exception):
    """Base class for pipeline errors that don't leak internal details."""

    def __init__(self, user_message: str, internal_details: Optional[str] = None):
        super().__init__(user_message)
        self.user_message = user_message
        self.internal_details = internal_details

        if internal_details:
            logger.debug("%s internal: %s", type(self).__name__, internal_details)


class ValidationError(ReserveError):
    """Malformed input (payload shape, empty serial list, bad config)."""


class DuplicateSerial(ReserveError):
    """A serial already present in the ledger. Counted and skipped by ingestion."""

    def __init__(self, serial_id: str):
        super().__init__(f"Serial already ingested: {serial_id}")
        self.serial_id = serial_id


class HashCollisionError(ReserveError):
    """Two distinct serials map to the same leaf value. Fatal for the batch."""

    def __init__(self, first: str, second: str, leaf: str):
        super().__init__(
            "Leaf hash collision between distinct serials",
            f"serials {first!r} and {second!r} both hash to {leaf}",
        )
        self.first = first
        self.second = second
        self.leaf = leaf


class ExternalToolFailure(ReserveError):
    """Witness, prove or verify step failed (non-zero exit, timeout, missing output)."""

    def __init__(
        self,
        batch_number: int,
        stage: str,
        message: str,
        internal_details: Optional[str] = None,
    ):
        super().__init__(
            f"Proof run failed at batch {batch_number} ({stage}): {message}",
            internal_details,
        )
        self.batch_number = batch_number
        self.stage = stage


class LedgerRpcError(ReserveError):
    """Ledger call failed after retries were exhausted."""


class StaleDataFallback(ReserveError):
    """A rate refresh failed; the caller falls back to the last cached value."""


class MigrationRequiredError(ReserveError):
    """On-chain state is missing or uses a layout that could not be upgraded."""
