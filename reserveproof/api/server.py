"""
Reserve HTTP API.

Endpoints:
- POST /reserve/batch  - Ingest a batch of serials (X-API-Key when configured)
- GET  /reserve/status - Ledger status; ?extended=true adds on-chain state and
                         solvency, ?history=true adds the root history
- GET  /reserve/rate   - Reference rate, staleness and price drift
- GET  /health         - Health check

Reads never hard-fail: an unreachable ledger or rate source degrades the
response instead of turning it into an error.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import web

from reserveproof import __version__
from reserveproof.config import ApiConfig
from reserveproof.errors import HashCollisionError, ReserveError, ValidationError
from reserveproof.ledger.models import to_iso
from reserveproof.ledger.store import SerialLedger
from reserveproof.reserve.rate_cache import RateSelfHealer
from reserveproof.reserve.solvency import SolvencyEvaluator

logger = logging.getLogger(__name__)

HandlerResult = Tuple[int, Dict[str, Any]]


def parse_cors_origins(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _cors_allow_origin_value(allowed_origins: List[str], origin: str) -> Optional[str]:
    if "*" in allowed_origins:
        return "*"
    if origin in allowed_origins:
        return origin
    return None


def _cors_apply_headers(response: web.StreamResponse, allow_origin: str) -> None:
    response.headers["Access-Control-Allow-Origin"] = allow_origin
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
    response.headers["Access-Control-Max-Age"] = "600"
    if allow_origin != "*":
        vary = response.headers.get("Vary")
        response.headers["Vary"] = "Origin" if vary is None else f"{vary}, Origin"


def _error(message: str) -> Dict[str, Any]:
    return {"success": False, "error": message}


def _parse_flag(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in {"1", "true", "yes"}


class ReserveApiHandlers:
    """Framework-agnostic handlers; each returns ``(status, body)``."""

    def __init__(
        self,
        ledger: SerialLedger,
        config: ApiConfig,
        *,
        healer: Optional[RateSelfHealer] = None,
        evaluator: Optional[SolvencyEvaluator] = None,
    ):
        self._ledger = ledger
        self._config = config
        self._healer = healer
        self._evaluator = evaluator

    def _check_api_key(self, provided_key: Optional[str]) -> bool:
        if not self._config.api_key:
            return True
        if provided_key is None:
            return False
        return hmac.compare_digest(provided_key.encode(), self._config.api_key.encode())

    def handle_ingest(self, body: Any, api_key: Optional[str]) -> HandlerResult:
        if not self._check_api_key(api_key):
            return 401, _error("Invalid or missing API key")
        if not isinstance(body, dict):
            return 400, _error("Request body must be a JSON object")

        serials = body.get("serials")
        if isinstance(serials, list) and len(serials) > self._config.max_batch_serials:
            return 400, _error(f"Batch exceeds {self._config.max_batch_serials} serials")

        try:
            result = self._ledger.ingest(body.get("batchId"), serials)
        except HashCollisionError as exc:
            return 409, _error(exc.user_message)
        except ValidationError as exc:
            return 400, _error(exc.user_message)
        return 200, result.to_dict()

    def handle_status(self) -> Dict[str, Any]:
        root = self._ledger.current_root()
        submission = self._ledger.latest_proof_submission()
        return {
            "totalSerials": self._ledger.total_serials(),
            "currentMerkleRoot": root.root_hash if root else None,
            "lastRootUpdate": to_iso(root.created_at) if root else None,
            "lastProofSubmission": to_iso(submission.submitted_at) if submission else None,
            "proofVerified": submission.verified if submission else False,
        }

    async def handle_extended_status(self, include_history: bool) -> Dict[str, Any]:
        body = self.handle_status()

        if self._evaluator is None:
            body.update({"onChain": None, "solvency": None, "onChainError": "ledger RPC not configured"})
        else:
            try:
                report = await self._evaluator.evaluate()
                body.update(report.to_dict())
            except ReserveError as exc:
                logger.warning(f"On-chain status unavailable: {exc.user_message}")
                body.update({"onChain": None, "solvency": None, "onChainError": exc.user_message})

        latest = self._ledger.current_root()
        off_chain: Dict[str, Any] = {
            "lastAuditRecord": latest.to_dict() if latest else None,
            "totalBatches": self._ledger.distinct_batch_count(),
        }
        if include_history:
            off_chain["auditHistory"] = [r.to_dict() for r in self._ledger.root_history(10)]
        body["offChain"] = off_chain
        return body

    async def handle_rate(self) -> Dict[str, Any]:
        if self._healer is None:
            return _error("Rate service not configured")
        report = await self._healer.read()
        return {"success": True, **report.to_dict()}

    def handle_health(self) -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}


def create_api_app(handlers: ReserveApiHandlers, config: ApiConfig) -> web.Application:
    """Create the aiohttp application with routes and optional CORS."""
    app = web.Application()

    async def ingest(request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response(_error("Request body must be valid JSON"), status=400)
        # sqlite write plus full root rescan; keep it off the event loop
        status, payload = await asyncio.to_thread(
            handlers.handle_ingest, body, request.headers.get("X-API-Key")
        )
        return web.json_response(payload, status=status)

    async def status(request: web.Request) -> web.Response:
        if _parse_flag(request.query.get("extended")):
            payload = await handlers.handle_extended_status(_parse_flag(request.query.get("history")))
        else:
            payload = handlers.handle_status()
        return web.json_response(payload, headers={"Cache-Control": "no-store, max-age=0"})

    async def rate(request: web.Request) -> web.Response:
        return web.json_response(await handlers.handle_rate())

    async def health(request: web.Request) -> web.Response:
        return web.json_response(handlers.handle_health())

    app.router.add_post("/reserve/batch", ingest)
    app.router.add_get("/reserve/status", status)
    app.router.add_get("/reserve/rate", rate)
    app.router.add_get("/health", health)

    allowed_origins = parse_cors_origins(config.cors_origins)
    if allowed_origins:

        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            origin = request.headers.get("Origin")
            if origin is None:
                return await handler(request)

            if request.method == "OPTIONS":
                response = web.Response(status=204)
            else:
                response = await handler(request)

            allow_origin = _cors_allow_origin_value(allowed_origins, origin)
            if allow_origin is not None:
                _cors_apply_headers(response, allow_origin)
            return response

        app.middlewares.append(cors_middleware)

    return app


class ReserveApiServer:
    """Runs the API on an aiohttp AppRunner."""

    def __init__(self, handlers: ReserveApiHandlers, config: ApiConfig):
        self._handlers = handlers
        self._config = config
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = create_api_app(self._handlers, self._config)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        logger.info(f"API server started on http://{self._config.host}:{self._config.port}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("API server stopped")
