"""
Ledger RPC client.

Reads go through the standard JSON-RPC ``getAccountInfo`` call. Writes are
signed instruction envelopes posted to the operator's instruction relay,
which builds and submits the transaction and returns its signature.

Every call runs through bounded retry with backoff behind a circuit breaker.
Transport failures are retried; a program rejecting an instruction is not.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from reserveproof.chain.layout import encode_pubkey
from reserveproof.config import ChainConfig
from reserveproof.errors import LedgerRpcError, ValidationError
from reserveproof.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerError,
    retry_with_circuit_breaker,
)

logger = logging.getLogger(__name__)

# Instructions that must never be replayed after an ambiguous failure.
NON_IDEMPOTENT_INSTRUCTIONS = frozenset({"mint"})

_RETRYABLE = (aiohttp.ClientError, asyncio.TimeoutError)


class InstructionRejected(LedgerRpcError):
    """The program refused an instruction (paused, bounds, reserve mismatch)."""

    def __init__(self, instruction: str, reason: str):
        super().__init__(f"{instruction} rejected: {reason}")
        self.instruction = instruction
        self.reason = reason


class LedgerClient(abc.ABC):
    """Access to the protocol account and its instructions."""

    @abc.abstractmethod
    async def get_account_data(self) -> Optional[bytes]:
        """Raw ProtocolState bytes, or None if the account does not exist."""

    @abc.abstractmethod
    async def send_instruction(self, name: str, args: Dict[str, Any]) -> str:
        """Submit an instruction and return its transaction reference."""

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


def load_keypair(path: Path) -> ed25519.Ed25519PrivateKey:
    """Load an operator keypair file (JSON array of 64 ints: seed then public key)."""
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, ValueError) as exc:
        raise ValidationError("Could not read operator keypair", f"{path}: {exc}") from exc
    if not isinstance(raw, list) or len(raw) not in (32, 64):
        raise ValidationError("Operator keypair must be a JSON array of 32 or 64 bytes")
    return ed25519.Ed25519PrivateKey.from_private_bytes(bytes(raw[:32]))


def public_key_b58(key: ed25519.Ed25519PrivateKey) -> str:
    raw = key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return encode_pubkey(raw)


def signing_payload(envelope: Dict[str, Any]) -> bytes:
    """Canonical bytes covered by the operator signature."""
    return json.dumps(envelope, sort_keys=True, separators=(",", ":")).encode("utf-8")


class JsonRpcLedgerClient(LedgerClient):
    """aiohttp-backed client for the ledger node and instruction relay.

    Args:
        rpc_url: JSON-RPC endpoint
        program_id: Reserve program address
        state_address: ProtocolState account address
        signer: Operator key; required for writes only
        timeout: Per-request timeout, seconds
        max_retries: Attempts per call
    """

    def __init__(
        self,
        rpc_url: str,
        program_id: str,
        state_address: str,
        *,
        signer: Optional[ed25519.Ed25519PrivateKey] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.state_address = state_address
        self._signer = signer
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._session = session
        self._owns_session = session is None
        self._breaker = CircuitBreaker(
            f"ledger_rpc:{rpc_url}",
            CircuitBreakerConfig(failure_threshold=5, ignored_exceptions=(InstructionRejected,)),
        )
        self._request_id = 0

    @classmethod
    def from_config(cls, config: ChainConfig) -> "JsonRpcLedgerClient":
        signer = load_keypair(Path(config.keypair_path)) if config.keypair_path else None
        return cls(
            config.rpc_url,
            config.program_id,
            config.protocol_state_address,
            signer=signer,
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _post(self, method: str, params: list) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        session = await self._get_session()
        async with session.post(self.rpc_url, json=payload, timeout=self._timeout) as resp:
            resp.raise_for_status()
            try:
                body = await resp.json(content_type=None)
            except ValueError as exc:
                raise LedgerRpcError(
                    "Malformed RPC response", f"{method}: non-JSON reply ({resp.content_type})"
                ) from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            raise InstructionRejected(method, message)
        if not isinstance(body, dict) or "result" not in body:
            raise LedgerRpcError("Malformed RPC response", f"{method}: {body!r}")
        return body["result"]

    async def _call(self, method: str, params: list, *, retries: Optional[int] = None) -> Any:
        attempts = self._max_retries if retries is None else retries
        try:
            return await retry_with_circuit_breaker(
                lambda: self._post(method, params),
                breaker=self._breaker,
                max_retries=attempts,
                base_delay=self._base_delay,
                max_delay=self._max_delay,
                retryable_exceptions=_RETRYABLE,
            )
        except CircuitBreakerError as exc:
            raise LedgerRpcError("Ledger RPC unavailable", str(exc)) from exc
        except _RETRYABLE as exc:
            raise LedgerRpcError(
                f"Ledger RPC {method} failed after {attempts} attempt(s)",
                f"{type(exc).__name__}: {exc}",
            ) from exc

    async def get_account_data(self) -> Optional[bytes]:
        result = await self._call(
            "getAccountInfo",
            [self.state_address, {"encoding": "base64", "commitment": "confirmed"}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            return None
        data = value.get("data")
        if not isinstance(data, list) or not data:
            raise LedgerRpcError("Unexpected account encoding", repr(data))
        return base64.b64decode(data[0])

    async def send_instruction(self, name: str, args: Dict[str, Any]) -> str:
        if self._signer is None:
            raise ValidationError("An operator keypair is required to send instructions")

        envelope = {
            "programId": self.program_id,
            "instruction": name,
            "args": args,
            "accounts": {"protocolState": self.state_address},
            "signer": public_key_b58(self._signer),
            "nonce": uuid.uuid4().hex,
            "timestamp": int(time.time()),
        }
        signature = base64.b64encode(self._signer.sign(signing_payload(envelope))).decode("ascii")

        retries = 1 if name in NON_IDEMPOTENT_INSTRUCTIONS else None
        tx_ref = await self._call("sendInstruction", [envelope, signature], retries=retries)
        logger.info(f"{name} submitted: {tx_ref}")
        return str(tx_ref)
