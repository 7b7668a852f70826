"""Operator CLI for the reserve pipeline (ingest, prove, anchor, serve)."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from reserveproof.api.server import ReserveApiHandlers, ReserveApiServer
from reserveproof.chain.anchor import AnchorSubmitter
from reserveproof.chain.rpc import JsonRpcLedgerClient
from reserveproof.config import ReserveConfig, set_config
from reserveproof.errors import ReserveError, ValidationError
from reserveproof.ledger.store import SerialLedger
from reserveproof.logging import LoggingOptions, configure_logging
from reserveproof.pipeline import run_reserve_cycle
from reserveproof.reserve.prices import ReferenceRateSource, SpotPriceSource
from reserveproof.reserve.rate_cache import RateSelfHealer
from reserveproof.reserve.solvency import SolvencyEvaluator
from reserveproof.zk.partition import MANIFEST_NAME, partition_serials, write_batch_manifest
from reserveproof.zk.proof_manager import PROOF_MANIFEST_NAME, ProofOrchestrator, load_proof_manifest

SUCCESS = "✅"
STEP = "🚀"
WARN = "⚠️"
ERROR = "❌"


def _print_header(title: str) -> None:
    print(f"{STEP} {title}")


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def _load_config(args: argparse.Namespace) -> ReserveConfig:
    config = ReserveConfig.load(args.config)
    config.validate()
    configure_logging(
        LoggingOptions(
            level=config.logging.level,
            format=config.logging.format,
            file=config.logging.file,
            redact=config.logging.redact,
        )
    )
    set_config(config)
    return config


def _open_ledger(config: ReserveConfig) -> SerialLedger:
    return SerialLedger(config.ledger.db_path)


def _chain_configured(config: ReserveConfig) -> bool:
    return bool(config.chain.program_id and config.chain.protocol_state_address)


def mock_serials(count: int, prefix: str = "GB-2026", start: int = 1) -> List[str]:
    """Sequential test serials: ``GB-2026-000001``, ``GB-2026-000002``, ..."""
    if count <= 0:
        raise ValidationError("mock count must be positive")
    return [f"{prefix}-{n:06d}" for n in range(start, start + count)]


def read_serials_file(path: Path) -> List[str]:
    """Serials from a JSON array, a ``{"serials": [...]}`` object or one per line."""
    text = path.read_text()
    if path.suffix == ".json":
        data = json.loads(text)
        if isinstance(data, dict):
            data = data.get("serials")
        if not isinstance(data, list):
            raise ValidationError(f"{path} must hold a JSON array of serials")
        return data
    return [line.strip() for line in text.splitlines() if line.strip()]


def _cmd_ingest(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        if args.mock:
            serials = mock_serials(args.mock, prefix=args.prefix, start=args.start)
        elif args.file:
            path = Path(args.file)
            if not path.exists():
                raise FileNotFoundError(f"Path not found: {path}")
            serials = read_serials_file(path)
        else:
            serials = list(args.serials or [])

        _print_header(f"Ingesting {len(serials)} serial(s) as batch {args.batch_id}")
        with _open_ledger(config) as ledger:
            result = ledger.ingest(args.batch_id, serials)
        _print_json(result.to_dict())
        if result.duplicates:
            print(f"{WARN} {result.duplicates} duplicate serial(s) skipped")
        print(f"{SUCCESS} Merkle root {result.new_merkle_root} over {result.total_serials} serial(s)")
        return 0
    except (ReserveError, OSError, ValueError) as exc:
        print(f"{ERROR} Ingest failed: {exc}")
        return 1


def _cmd_partition(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        out_dir = Path(args.out or config.circuit.batch_dir)
        batch_size = args.batch_size or config.circuit.batch_size

        with _open_ledger(config) as ledger:
            snapshot = ledger.snapshot()
        _print_header(f"Partitioning {snapshot.total_serials} serial(s) into batches of {batch_size}")
        plan = partition_serials(snapshot.serial_ids, batch_size)
        manifest_path = write_batch_manifest(plan, out_dir)

        for batch in plan.batches:
            print(f"    Batch {batch.batch_number}: {batch.active_count} serial(s) -> {batch.prover_file}")
        print(f"{SUCCESS} Batch manifest written: {manifest_path}")
        return 0
    except (ReserveError, OSError) as exc:
        print(f"{ERROR} Partition failed: {exc}")
        return 1


def _cmd_prove(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        manifest_path = Path(args.manifest or Path(config.circuit.batch_dir) / MANIFEST_NAME)
        if not manifest_path.exists():
            raise FileNotFoundError(f"Batch manifest not found: {manifest_path}")

        _print_header(f"Proving batches from {manifest_path}")
        report = ProofOrchestrator.from_config(config).run(manifest_path)
        if args.json:
            _print_json(report.to_dict())

        if not report:
            failure = report.failure
            print(f"{ERROR} Proof run failed at batch {failure.batch_number} ({failure.stage.value})")
            print(f"    {failure.error_code.value}: {failure.message}")
            return 1
        print(f"{SUCCESS} {len(report.artifacts)} batch proof(s) verified")
        print(f"    Manifest: {report.manifest_path}")
        return 0
    except (ReserveError, OSError, ValueError) as exc:
        print(f"{ERROR} Prove failed: {exc}")
        return 1


async def _submit(config: ReserveConfig, manifest_path: Path) -> int:
    total, artifacts = load_proof_manifest(manifest_path)
    with _open_ledger(config) as ledger:
        snapshot = ledger.snapshot()
        if total != snapshot.total_serials:
            print(f"{ERROR} Proofs cover {total} serial(s) but the ledger holds {snapshot.total_serials}")
            print("    Run partition and prove again before submitting")
            return 1
        async with JsonRpcLedgerClient.from_config(config.chain) as client:
            submitter = AnchorSubmitter(
                ledger,
                client,
                audit_dir=Path(config.chain.audit_dir),
                auto_mint=config.chain.auto_mint,
            )
            result = await submitter.submit(snapshot, artifacts)

    if result.already_anchored:
        print(f"{SUCCESS} Root {result.root_hash} already anchored; nothing submitted")
        return 0
    _print_json(result.to_dict())
    print(f"{SUCCESS} Root {result.root_hash} anchored with {len(result.proof_hashes)} proof(s)")
    return 0


def _cmd_submit(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        manifest_path = Path(args.manifest or Path(config.circuit.proofs_dir) / PROOF_MANIFEST_NAME)
        if not manifest_path.exists():
            raise FileNotFoundError(f"Proof manifest not found: {manifest_path}")
        _print_header(f"Submitting proofs from {manifest_path}")
        return asyncio.run(_submit(config, manifest_path))
    except (ReserveError, OSError, ValueError) as exc:
        print(f"{ERROR} Submit failed: {exc}")
        return 1


async def _run_cycle(config: ReserveConfig) -> int:
    with _open_ledger(config) as ledger:
        async with JsonRpcLedgerClient.from_config(config.chain) as client:
            submitter = AnchorSubmitter(
                ledger,
                client,
                audit_dir=Path(config.chain.audit_dir),
                auto_mint=config.chain.auto_mint,
            )
            result = await run_reserve_cycle(
                ledger,
                ProofOrchestrator.from_config(config),
                submitter,
                batch_dir=Path(config.circuit.batch_dir),
                batch_size=config.circuit.batch_size,
            )

    _print_json(result.to_dict())
    if not result.success:
        print(f"{ERROR} Cycle failed; nothing was anchored")
        result.proof_report.raise_for_failure()
        return 1
    print(f"{SUCCESS} Root {result.snapshot.root_hash} anchored")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        _print_header("Running reserve cycle (partition, prove, submit)")
        return asyncio.run(_run_cycle(config))
    except (ReserveError, OSError) as exc:
        print(f"{ERROR} Run failed: {exc}")
        return 1


async def _migrate(config: ReserveConfig) -> bool:
    with _open_ledger(config) as ledger:
        async with JsonRpcLedgerClient.from_config(config.chain) as client:
            return await AnchorSubmitter(ledger, client).ensure_schema()


def _cmd_migrate(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        _print_header("Checking protocol state layout")
        if asyncio.run(_migrate(config)):
            print(f"{SUCCESS} Protocol state migrated to the V2 layout")
        else:
            print(f"{SUCCESS} Protocol state already uses the V2 layout")
        return 0
    except (ReserveError, OSError) as exc:
        print(f"{ERROR} Migration failed: {exc}")
        return 1


async def _status(config: ReserveConfig, extended: bool, history: bool) -> dict:
    with _open_ledger(config) as ledger:
        if not extended:
            return ReserveApiHandlers(ledger, config.api).handle_status()
        if not _chain_configured(config):
            return await ReserveApiHandlers(ledger, config.api).handle_extended_status(history)
        async with JsonRpcLedgerClient.from_config(config.chain) as client:
            handlers = ReserveApiHandlers(ledger, config.api, evaluator=SolvencyEvaluator(client))
            return await handlers.handle_extended_status(history)


def _cmd_status(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        status = asyncio.run(_status(config, args.extended, args.history))
        _print_json(status)
        solvency = status.get("solvency")
        if solvency is not None and not solvency["isSolvent"]:
            print(f"{WARN} Supply exceeds proven reserves ({solvency['ratio']:.2f}% backed)")
        return 0
    except (ReserveError, OSError) as exc:
        print(f"{ERROR} Status failed: {exc}")
        return 1


async def _serve(config: ReserveConfig) -> None:
    ledger = _open_ledger(config)
    client = JsonRpcLedgerClient.from_config(config.chain) if _chain_configured(config) else None
    submitter = AnchorSubmitter(ledger, client) if client is not None else None

    healer = RateSelfHealer(
        ledger,
        ReferenceRateSource(config.rate.source_url, timeout=config.rate.http_timeout_seconds),
        config=config.rate,
        spot=SpotPriceSource.from_config(config.rate) if submitter is not None else None,
        submitter=submitter,
        unit_scale=config.chain.unit_scale,
    )
    handlers = ReserveApiHandlers(
        ledger,
        config.api,
        healer=healer,
        evaluator=SolvencyEvaluator(client) if client is not None else None,
    )
    server = ReserveApiServer(handlers, config.api)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()
        if client is not None:
            await client.close()
        ledger.close()


def _cmd_serve(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        if args.port:
            config.api.port = args.port
        if args.host:
            config.api.host = args.host
        _print_header(f"Serving reserve API on http://{config.api.host}:{config.api.port}")
        if not _chain_configured(config):
            print(f"{WARN} Ledger RPC not configured; on-chain status and price sync disabled")
        asyncio.run(_serve(config))
        return 0
    except KeyboardInterrupt:
        print(f"{SUCCESS} Server stopped")
        return 0
    except (ReserveError, OSError) as exc:
        print(f"{ERROR} Serve failed: {exc}")
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reserveproof",
        description="Proof-of-reserve pipeline: serial ledger, batch proofs and on-chain anchoring",
    )
    parser.add_argument(
        "--config",
        help="Config file (TOML, JSON or YAML); RESERVEPROOF_* env vars override it",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_ingest = sub.add_parser("ingest", help="Ingest a batch of serials into the ledger")
    p_ingest.add_argument("--batch-id", required=True, help="Batch identifier")
    source = p_ingest.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", help="JSON array or newline-separated serials")
    source.add_argument("--serials", nargs="+", help="Serials given inline")
    source.add_argument("--mock", type=int, help="Generate N sequential test serials")
    p_ingest.add_argument("--prefix", default="GB-2026", help="Prefix for --mock serials")
    p_ingest.add_argument("--start", type=int, default=1, help="First sequence number for --mock")
    p_ingest.set_defaults(func=_cmd_ingest)

    p_partition = sub.add_parser("partition", help="Write circuit batch inputs for the current ledger")
    p_partition.add_argument("--out", help="Output directory (defaults to circuit.batch_dir)")
    p_partition.add_argument("--batch-size", type=int, help="Circuit capacity (defaults to circuit.batch_size)")
    p_partition.set_defaults(func=_cmd_partition)

    p_prove = sub.add_parser("prove", help="Generate and verify a proof for every batch")
    p_prove.add_argument("--manifest", help="Batch manifest (defaults to <batch_dir>/manifest.json)")
    p_prove.add_argument("--json", action="store_true", help="Print the full run report as JSON")
    p_prove.set_defaults(func=_cmd_prove)

    p_submit = sub.add_parser("submit", help="Anchor the ledger root and submit verified proofs")
    p_submit.add_argument("--manifest", help="Proof manifest (defaults to <proofs_dir>/proof_manifest.json)")
    p_submit.set_defaults(func=_cmd_submit)

    p_run = sub.add_parser("run", help="Partition, prove and submit in one cycle")
    p_run.set_defaults(func=_cmd_run)

    p_migrate = sub.add_parser("migrate", help="Upgrade the protocol state account to the V2 layout")
    p_migrate.set_defaults(func=_cmd_migrate)

    p_status = sub.add_parser("status", help="Show ledger and on-chain reserve status")
    p_status.add_argument("--extended", action="store_true", help="Include on-chain state and solvency")
    p_status.add_argument("--history", action="store_true", help="Include recent root history")
    p_status.set_defaults(func=_cmd_status)

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", help="Bind address (defaults to api.host)")
    p_serve.add_argument("--port", type=int, help="Port (defaults to api.port)")
    p_serve.set_defaults(func=_cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
