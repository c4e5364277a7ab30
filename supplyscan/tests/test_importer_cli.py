from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import openpyxl
import pytest
from sqlalchemy import select
from typer.testing import CliRunner

from supplyscan.cli import app
from supplyscan.db import init_db, session_scope
from supplyscan.importer import import_roster_xlsx, slugify
from supplyscan.models import Company, ScanRun
from supplyscan.scanner import ScanOutcome


def _xlsx(path, rows):
    wb = openpyxl.Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    wb.save(path)
    return path


class TestRosterImport:
    def test_header_columns_in_any_order(self, tmp_path, session):
        path = _xlsx(tmp_path / "r.xlsx", [
            ["Name", "Ticker", "ID"],
            ["NVIDIA", "nvda", "nvda"],
            ["Micron", "MU", None],
            [None, None, None],
        ])
        result = import_roster_xlsx(path, session)
        assert (result.imported, result.updated) == (2, 0)
        companies = {c.id: c for c in session.execute(select(Company)).scalars()}
        assert companies["nvda"].ticker == "NVDA"
        assert companies["mu"].name == "Micron"

    def test_existing_ids_are_updated(self, tmp_path, session, roster):
        path = _xlsx(tmp_path / "r.xlsx", [
            ["id", "ticker", "name"],
            ["tsm", "TSM", "TSMC"],
            ["avgo", "AVGO", "Broadcom"],
        ])
        result = import_roster_xlsx(path, session)
        assert (result.imported, result.updated) == (1, 1)
        assert session.get(Company, "tsm").name == "TSMC"

    def test_headerless_sheet_uses_positional_columns(self, tmp_path, session):
        path = _xlsx(tmp_path / "r.xlsx", [["amd", "AMD", "Advanced Micro Devices"]])
        result = import_roster_xlsx(path, session)
        assert result.imported == 1
        assert session.get(Company, "amd").name == "Advanced Micro Devices"

    def test_slugify(self):
        assert slugify(" BRK.B ") == "brk-b"


@pytest.fixture()
def cli_db(tmp_path, monkeypatch):
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("SUPPLYSCAN_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("SUPPLYSCAN_DB", str(db_path))
    init_db(db_path)
    return db_path


class TestCli:
    def test_stats_json(self, cli_db):
        with session_scope() as session:
            session.add(Company(id="nvda", ticker="NVDA", name="NVIDIA"))
            session.commit()

        result = CliRunner().invoke(app, ["--db", str(cli_db), "--json", "stats"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["companies"] == 1

    def test_import_then_runs(self, cli_db, tmp_path):
        path = _xlsx(tmp_path / "r.xlsx", [["id", "ticker", "name"], ["mu", "MU", "Micron"]])
        runner = CliRunner()
        result = runner.invoke(app, ["--db", str(cli_db), "--json", "import-roster", str(path)])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"imported": 1, "updated": 0}

        result = runner.invoke(app, ["--db", str(cli_db), "--json", "runs"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == []

    def test_scan_without_credentials_exits_nonzero(self, cli_db, monkeypatch):
        monkeypatch.delenv("FMP_API_KEY", raising=False)
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        result = CliRunner().invoke(app, ["--db", str(cli_db), "--json", "scan"])
        assert result.exit_code == 1
        assert json.loads(result.stdout) == {"error": "FMP_API_KEY not configured"}
        with session_scope() as session:
            assert session.execute(select(ScanRun)).first() is None

    def test_scan_defaults_to_manual_trigger(self, cli_db):
        outcome = ScanOutcome(scan_id="run-1", status="completed", companies_scanned=0,
                              signals_found=0, relationships_found=0)
        with patch("supplyscan.cli._scan", AsyncMock(return_value=outcome)) as fake_scan:
            result = CliRunner().invoke(app, ["--db", str(cli_db), "--json", "scan"])
        assert result.exit_code == 0, result.output
        fake_scan.assert_awaited_once_with("manual")
        assert json.loads(result.stdout)["scan_id"] == "run-1"
