"""Solvency and price-drift evaluation.

Pure functions over on-chain figures plus an evaluator that reads the
protocol account. A missing account is reported, not raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from reserveproof.chain.layout import ProtocolState, decode_protocol_state
from reserveproof.chain.rpc import LedgerClient

logger = logging.getLogger(__name__)

SOLVENT = "SOLVENT"
INSOLVENT = "INSOLVENT"


@dataclass(frozen=True)
class Solvency:
    is_solvent: bool
    ratio: float
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {"isSolvent": self.is_solvent, "ratio": self.ratio, "status": self.status}


def compute_solvency(total_supply: int, proven_reserves: int) -> Solvency:
    """Backing ratio in percent, capped at 100; zero supply counts as fully backed."""
    if total_supply < 0 or proven_reserves < 0:
        raise ValueError("supply and reserves must be non-negative")
    if total_supply == 0:
        ratio = 100.0
    else:
        ratio = min(proven_reserves / total_supply, 1.0) * 100
    is_solvent = proven_reserves >= total_supply
    return Solvency(is_solvent=is_solvent, ratio=ratio, status=SOLVENT if is_solvent else INSOLVENT)


def suggest_price(reference_rate: float, spot_price: float, unit_scale: int = 1_000_000_000) -> int:
    """Native-unit price for one token: ``round(rate / spot * scale)``."""
    if spot_price <= 0:
        raise ValueError("spot price must be positive")
    return round(reference_rate / spot_price * unit_scale)


def drift_percent(suggested: int, on_chain: Optional[int]) -> Optional[float]:
    """Relative distance of ``suggested`` from ``on_chain``, 2 decimals.

    None when the on-chain price is unknown or zero.
    """
    if not on_chain:
        return None
    return round(abs(suggested - on_chain) / on_chain * 100, 2)


def within_price_bound(current: int, proposed: int, max_change_percent: float = 20.0) -> bool:
    """Mirror of the program's set_price bound (integer arithmetic)."""
    if proposed <= 0:
        return False
    if current <= 0:
        return True
    max_change = int(current * max_change_percent) // 100
    return abs(proposed - current) <= max_change


@dataclass(frozen=True)
class SolvencyReport:
    found: bool
    state: Optional[ProtocolState] = None
    solvency: Optional[Solvency] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.found or self.state is None or self.solvency is None:
            return {"onChain": None, "solvency": None, "onChainError": self.error or "not found"}
        return {
            "onChain": {
                "totalSupply": self.state.total_supply,
                "provenReserves": self.state.proven_reserves,
                "lastProofTimestamp": self.state.last_proof_timestamp,
                "currentMerkleRoot": "0x" + self.state.current_merkle_root.hex(),
                "isPaused": self.state.is_paused,
            },
            "solvency": self.solvency.to_dict(),
        }


class SolvencyEvaluator:
    def __init__(self, client: LedgerClient):
        self.client = client

    async def evaluate(self) -> SolvencyReport:
        data = await self.client.get_account_data()
        if data is None:
            logger.warning("Protocol state account not found")
            return SolvencyReport(found=False, error="not found")
        state = decode_protocol_state(data)
        return SolvencyReport(
            found=True,
            state=state,
            solvency=compute_solvency(state.total_supply, state.proven_reserves),
        )
