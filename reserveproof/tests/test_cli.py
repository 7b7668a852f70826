from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from reserveproof.cli import main, mock_serials, read_serials_file
from reserveproof.errors import ValidationError
from reserveproof.ledger.store import SerialLedger
from reserveproof.zk.partition import MANIFEST_NAME


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch):
    db = tmp_path / "data" / "reserve.db"
    monkeypatch.setenv("RESERVEPROOF_LEDGER_DB_PATH", str(db))
    monkeypatch.setenv("RESERVEPROOF_CIRCUIT_BATCH_DIR", str(tmp_path / "batches"))
    yield db
    root = logging.getLogger("reserveproof")
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    root.propagate = True


def test_mock_serials() -> None:
    assert mock_serials(2, prefix="GB-2027", start=9) == ["GB-2027-000009", "GB-2027-000010"]
    with pytest.raises(ValidationError):
        mock_serials(0)


def test_read_serials_file(tmp_path: Path) -> None:
    listing = tmp_path / "serials.txt"
    listing.write_text("A\n\n  B \n")
    assert read_serials_file(listing) == ["A", "B"]

    wrapped = tmp_path / "serials.json"
    wrapped.write_text(json.dumps({"serials": ["C", "D"]}))
    assert read_serials_file(wrapped) == ["C", "D"]

    wrapped.write_text(json.dumps({"items": []}))
    with pytest.raises(ValidationError):
        read_serials_file(wrapped)


def test_ingest_then_partition(cli_env: Path, tmp_path: Path, capsys) -> None:
    assert main(["ingest", "--batch-id", "batch-1", "--mock", "25"]) == 0
    assert main(["ingest", "--batch-id", "batch-2", "--serials", "GB-2026-000001", "X-1"]) == 0
    out = capsys.readouterr().out
    assert "1 duplicate serial(s) skipped" in out

    with SerialLedger(cli_env) as ledger:
        assert ledger.total_serials() == 26

    assert main(["partition", "--batch-size", "20"]) == 0
    manifest = json.loads((tmp_path / "batches" / MANIFEST_NAME).read_text())
    assert manifest["totalSerials"] == 26
    assert len(manifest["batches"]) == 2


def test_ingest_failure_exit_code(cli_env: Path, tmp_path: Path, capsys) -> None:
    assert main(["ingest", "--batch-id", "b", "--file", str(tmp_path / "missing.txt")]) == 1
    assert "Ingest failed" in capsys.readouterr().out


def test_status_without_chain(cli_env: Path, capsys) -> None:
    assert main(["ingest", "--batch-id", "batch-1", "--mock", "3"]) == 0
    capsys.readouterr()

    assert main(["status", "--extended"]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["totalSerials"] == 3
    assert status["onChainError"] == "ledger RPC not configured"
