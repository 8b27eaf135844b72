"""
Tests for scripts/run_auto_close.py.

The script initializes its own engine from --db-url; the module-level
engine globals are restored after each test so the suite's engine is
left untouched.
"""

import argparse
import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

import permit_kernel.db.engine as engine_module
import permit_kernel.logging_config as logging_config
from permit_kernel.exceptions import PersistenceError
from permit_kernel.services.action_history_service import ActionHistoryService
from permit_kernel.services.auto_close_sweeper import AutoCloseSweeper
from permit_kernel.services.permit_orchestrator import PermitOrchestrator
from tests.factories import make_draft

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "run_auto_close.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("run_auto_close", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def cli(monkeypatch, tmp_path):
    """Return (main, db_url, engines) with the engine globals preserved."""
    monkeypatch.setattr(engine_module, "_engine", engine_module._engine)
    monkeypatch.setattr(engine_module, "_SessionFactory", engine_module._SessionFactory)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    # Logging is configured once for the whole suite
    monkeypatch.setattr(logging_config, "configure_logging", lambda **kwargs: None)

    original_init = engine_module.init_engine_from_url
    engines = []

    def tracking_init(*args, **kwargs):
        engine = original_init(*args, **kwargs)
        engines.append(engine)
        return engine

    monkeypatch.setattr(engine_module, "init_engine_from_url", tracking_init)

    db_url = f"sqlite:///{tmp_path / 'cli.db'}"
    yield _load_script().main, db_url, engines

    for engine in engines:
        engine.dispose()


def _output(capsys) -> dict:
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def _seed_approved(engine, clock, requester, fireman, count=1):
    orchestrator = PermitOrchestrator(sessionmaker(bind=engine, expire_on_commit=False), clock=clock)
    for _ in range(count):
        outcome = orchestrator.create_permit(make_draft(), requester)
        orchestrator.decide(outcome.approval.id, "APPROVED", "ok", fireman)


class TestRunAutoClose:

    def test_empty_database(self, cli, capsys):
        main, db_url, _ = cli

        code = main(["--db-url", db_url, "--create-tables", "--as-of", "2024-01-11T00:00:00+00:00"])

        assert code == 0
        assert _output(capsys) == {
            "closedCount": 0,
            "regularClosed": 0,
            "extendedClosed": 0,
            "failures": [],
        }

    def test_closes_expired_permits(self, cli, capsys, deterministic_clock, requester, fireman):
        main, db_url, engines = cli
        assert main(["--db-url", db_url, "--create-tables", "--as-of", "2024-01-05"]) == 0
        capsys.readouterr()
        _seed_approved(engines[-1], deterministic_clock, requester, fireman, count=2)

        # Naive --as-of is read as UTC
        code = main(["--db-url", db_url, "--as-of", "2024-01-11T00:00:00", "--limit", "1"])
        assert code == 0
        assert _output(capsys)["regularClosed"] == 1

        code = main(["--db-url", db_url, "--as-of", "2024-01-11T00:00:00"])
        assert code == 0
        assert _output(capsys)["regularClosed"] == 1

        main(["--db-url", db_url, "--as-of", "2024-01-11T00:00:00"])
        assert _output(capsys)["closedCount"] == 0

    def test_failures_exit_one(self, cli, capsys, monkeypatch, deterministic_clock, requester, fireman):
        main, db_url, engines = cli
        main(["--db-url", db_url, "--create-tables", "--as-of", "2024-01-05"])
        capsys.readouterr()
        _seed_approved(engines[-1], deterministic_clock, requester, fireman)

        def broken(self, *args, **kwargs):
            raise RuntimeError("history store offline")

        monkeypatch.setattr(ActionHistoryService, "record", broken)
        code = main(["--db-url", db_url, "--as-of", "2024-01-11T00:00:00+00:00"])

        assert code == 1
        result = _output(capsys)
        assert result["closedCount"] == 0
        [failure] = result["failures"]
        assert failure["scan"] == "regular"
        assert failure["errorCode"] == "RuntimeError"

    def test_kernel_error_exit_two(self, cli, capsys, monkeypatch):
        main, db_url, _ = cli

        def unavailable(self, now=None, limit=None):
            raise PersistenceError("run_auto_close", "db gone")

        monkeypatch.setattr(AutoCloseSweeper, "sweep", unavailable)
        code = main(["--db-url", db_url, "--create-tables"])

        assert code == 2
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "PERSISTENCE_ERROR" in captured.err

    def test_missing_config_exit_two(self, cli, capsys, tmp_path):
        main, _, engines = cli

        code = main(["--config", str(tmp_path / "absent.yaml")])

        assert code == 2
        assert "Failed to load config" in capsys.readouterr().err
        assert engines == []

    def test_config_file_used(self, cli, capsys, tmp_path):
        main, db_url, engines = cli
        config = tmp_path / "kernel.yaml"
        config.write_text(f"permit_kernel:\n  database_url: {db_url}\n  sweep_batch_limit: 10\n")

        code = main(["--config", str(config), "--create-tables", "--as-of", "2024-01-11"])

        assert code == 0
        assert str(engines[-1].url) == db_url

    def test_invalid_as_of_rejected(self, cli):
        main, db_url, _ = cli
        with pytest.raises(SystemExit) as exc_info:
            main(["--db-url", db_url, "--as-of", "yesterday"])
        assert exc_info.value.code == 2

    @pytest.mark.parametrize("limit", ["0", "-5", "ten"])
    def test_invalid_limit_rejected(self, cli, capsys, limit):
        main, db_url, _ = cli
        with pytest.raises(SystemExit) as exc_info:
            main(["--db-url", db_url, "--limit", limit])
        assert exc_info.value.code == 2
        assert "--limit" in capsys.readouterr().err


def test_parse_as_of_keeps_offset():
    module = _load_script()
    parsed = module._parse_as_of("2024-02-02T05:30:00+05:30")
    assert parsed == datetime(2024, 2, 2, 0, 0, tzinfo=timezone.utc)


def test_positive_int():
    module = _load_script()
    assert module._positive_int("100") == 100
    with pytest.raises(argparse.ArgumentTypeError, match="at least 1"):
        module._positive_int("0")
