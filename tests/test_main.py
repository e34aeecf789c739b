"""Tests for the command line entry point and exit status."""

import os
import sys
import tempfile

import pytest

from txchaos.config import StoreSettings
from txchaos.main import (
    EXIT_ANOMALIES,
    EXIT_CONFIG,
    EXIT_FAILURES,
    EXIT_OK,
    build_store,
    cli,
    exit_code,
    run,
)
from txchaos.memory import InMemoryAccountRepository, InMemoryStore
from txchaos.runner import RunResult
from txchaos.stats import LatencyStats
from txchaos.store import IsolationLevel
from txchaos.test_utils import RecordingReporter, make_settings


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["txchaos", *argv])
    with pytest.raises(SystemExit) as excinfo:
        cli()
    return excinfo.value.code


def serializable_settings(workload="read_skew", **overrides):
    store = StoreSettings(isolation=IsolationLevel.SERIALIZABLE, accounts=10, groups=2)
    return make_settings(workload, store=store, concurrency=2, iterations=20, **overrides)


# ---------------------------------------------------------------------------
# Exit status
# ---------------------------------------------------------------------------

class TestExitCode:

    @pytest.mark.parametrize("failures,anomalies,expected", [
        (0, 0, EXIT_OK),
        (0, 3, EXIT_ANOMALIES),
        (1, 0, EXIT_FAILURES),
        (2, 5, EXIT_FAILURES),
    ])
    def test_precedence(self, failures, anomalies, expected):
        result = RunResult(iterations=10, failures=failures, elapsed_s=0.1,
                           stats=LatencyStats(), anomalies=anomalies)
        assert exit_code(result) == expected


# ---------------------------------------------------------------------------
# run()
# ---------------------------------------------------------------------------

class TestRun:

    def test_build_memory_store(self):
        store, repo = build_store(serializable_settings())
        assert isinstance(store, InMemoryStore)
        assert isinstance(repo, InMemoryAccountRepository)
        assert store.isolation is IsolationLevel.SERIALIZABLE
        assert len(store.accounts()) == 10

    def test_build_postgres_store_is_lazy(self):
        from txchaos.postgres import PsycopgAccountRepository, PsycopgStore

        settings = make_settings(store=StoreSettings(kind="postgres", dsn="postgresql://localhost/none"))
        store, repo = build_store(settings)
        assert isinstance(store, PsycopgStore)
        assert isinstance(repo, PsycopgAccountRepository)
        store.close()

    @pytest.mark.parametrize("workload", [
        "lost_update", "read_skew", "write_skew", "non_repeatable_read", "phantom_read",
    ])
    def test_clean_run_under_serializable(self, workload):
        reporter = RecordingReporter()
        assert run(serializable_settings(workload), reporter) == EXIT_OK
        assert ("header", "Configuration") in reporter.lines
        assert ("header", "Consistency Check") in reporter.lines
        assert ("header", "Timing") in reporter.lines
        assert reporter.contains("Iterations: 20")

    def test_export(self):
        fd, path = tempfile.mkstemp(suffix=".parquet")
        os.close(fd)
        try:
            assert run(serializable_settings(), RecordingReporter(), export_path=path) == EXIT_OK
            assert os.path.getsize(path) > 0
        finally:
            os.unlink(path)


# ---------------------------------------------------------------------------
# cli()
# ---------------------------------------------------------------------------

class TestCli:

    def test_clean_run(self, monkeypatch, capsys):
        code = run_cli(monkeypatch, "--workload", "non_repeatable_read", "--isolation", "1sr",
                       "--iterations", "10", "--threads", "2", "--no-progress", "-q")
        assert code == EXIT_OK
        out = capsys.readouterr().out
        assert "[Consistency Check]" in out
        assert "You are good!" in out

    def test_invalid_setting(self, monkeypatch, capsys):
        code = run_cli(monkeypatch, "--workload", "read_skew", "--ratio", "1.5", "-q")
        assert code == EXIT_CONFIG
        assert "Configuration validation failed" in capsys.readouterr().out

    def test_missing_workload(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, "-q") == EXIT_CONFIG
        assert "workload.type is required" in capsys.readouterr().out

    def test_too_few_targets(self, monkeypatch, capsys):
        code = run_cli(monkeypatch, "--workload", "write_skew", "--selection", "1",
                       "--iterations", "5", "--no-progress", "-q")
        assert code == EXIT_CONFIG

    def test_config_file(self, monkeypatch, capsys):
        fd, path = tempfile.mkstemp(suffix=".toml")
        os.write(fd, b'[workload]\ntype = "phantom_read"\n\n[runner]\niterations = 8\nconcurrency = 2\n'
                     b'\n[store]\nisolation = "serializable"\n')
        os.close(fd)
        try:
            assert run_cli(monkeypatch, path, "--no-progress", "-q") == EXIT_OK
        finally:
            os.unlink(path)
        assert "Total selects" in capsys.readouterr().out

    def test_unreadable_config(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, "/nonexistent/cfg.toml", "-q") == EXIT_CONFIG
