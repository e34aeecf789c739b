"""Tests for latency statistics, export and console reporting."""

import io
import os
import tempfile
import threading

import pandas as pd
import pytest

from txchaos.reporter import FLIP_TABLE, HAPPY, ConsoleReporter
from txchaos.stats import LatencyStats
from txchaos.test_utils import RecordingReporter


class TestLatencyStats:

    def test_record_preserves_order_and_operation(self):
        stats = LatencyStats()
        stats.record([0.001, 0.002], "read")
        stats.record([0.010], "write")
        assert len(stats) == 3
        assert stats.durations == [0.001, 0.002, 0.010]

        df = stats.to_dataframe()
        assert list(df.columns) == ["seq", "operation", "duration_ms"]
        assert list(df["operation"]) == ["read", "read", "write"]
        assert df["duration_ms"].tolist() == pytest.approx([1.0, 2.0, 10.0])

    def test_summary(self):
        stats = LatencyStats()
        stats.record([0.001] * 99 + [0.1])
        summary = stats.summary()
        assert summary["count"] == 100
        assert summary["p50_ms"] == pytest.approx(1.0, rel=0.01)
        assert summary["max_ms"] == pytest.approx(100.0)
        assert summary["mean_ms"] == pytest.approx((99 * 1.0 + 100.0) / 100)

    def test_empty_summary(self):
        assert LatencyStats().summary() == {"count": 0}
        reporter = RecordingReporter()
        LatencyStats().report(reporter)
        assert reporter.texts("print_left") == ["Transaction attempts: 0"]

    def test_concurrent_record(self):
        stats = LatencyStats()

        def writer():
            for _ in range(250):
                stats.record([0.001], "w")

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(stats) == 1000

    def test_report(self):
        stats = LatencyStats()
        stats.record([0.002, 0.004])
        reporter = RecordingReporter()
        stats.report(reporter)
        assert reporter.lines[0] == ("header", "Timing")
        assert reporter.contains("Transaction attempts: 2")
        assert reporter.contains("P99 (ms)")

    @pytest.mark.parametrize("suffix", [".parquet", ".csv"])
    def test_export(self, suffix):
        stats = LatencyStats()
        stats.record([0.001, 0.003], "read")
        fd, path = tempfile.mkstemp(suffix=suffix)
        os.close(fd)
        try:
            if suffix == ".parquet":
                stats.export_parquet(path)
                df = pd.read_parquet(path)
            else:
                stats.export_csv(path)
                df = pd.read_csv(path)
        finally:
            os.unlink(path)
        assert len(df) == 2
        assert df["seq"].tolist() == [0, 1]
        assert df["duration_ms"].tolist() == pytest.approx([1.0, 3.0])


class TestConsoleReporter:

    def test_formatting(self):
        out = io.StringIO()
        reporter = ConsoleReporter(out)
        reporter.header("Consistency Check")
        reporter.info(f"You are good! {HAPPY}")
        reporter.error(f"Observed 2 accounts! {FLIP_TABLE}")
        reporter.print_left("Total reads", "12")

        lines = out.getvalue().splitlines()
        assert lines[0] == ""
        assert lines[1] == "[Consistency Check]"
        assert lines[2] == f"  You are good! {HAPPY}"
        assert lines[3].startswith("  ✗ Observed 2 accounts!")
        assert lines[4].startswith("  Total reads:")
        assert lines[4].endswith(" 12")
