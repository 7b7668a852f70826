"""On-chain protocol account: layout, RPC client and anchor submission."""

from .anchor import AnchorSubmitter, SubmissionResult
from .layout import ProtocolState, decode_protocol_state, encode_protocol_state
from .rpc import InstructionRejected, JsonRpcLedgerClient, LedgerClient

__all__ = [
    "AnchorSubmitter",
    "InstructionRejected",
    "JsonRpcLedgerClient",
    "LedgerClient",
    "ProtocolState",
    "SubmissionResult",
    "decode_protocol_state",
    "encode_protocol_state",
]
