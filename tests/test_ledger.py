"""Tests for observation buffers, the anomaly ledger and counters."""

import threading

from txchaos.ledger import (
    AnomalyLedger,
    Counters,
    ObservationBuffer,
    RepeatedReadDetector,
)
from txchaos.test_utils import WorkloadBuilder


class TestObservationBuffer:

    def test_distinct_values_sorted(self):
        buffer = ObservationBuffer()
        for value in (3, 1, 3, 2):
            buffer.observe("a", value)
        buffer.observe("b", 7)
        assert buffer.distinct() == {"a": (1, 2, 3), "b": (7,)}
        assert len(buffer) == 2

    def test_reset_clears_everything(self):
        buffer = ObservationBuffer()
        buffer.observe("a", 1)
        buffer.reset()
        assert len(buffer) == 0
        assert buffer.distinct() == {}


class TestAnomalyLedger:

    def test_monotonic_merge(self):
        ledger = AnomalyLedger()
        ledger.record("k", [1, 2])
        before = set(ledger.get("k"))
        ledger.record("k", [3])
        ledger.record("k", [1])
        after = set(ledger.get("k"))
        assert before <= after
        assert after == {1, 2, 3}

    def test_items_sorted_by_key_text(self):
        ledger = AnomalyLedger()
        ledger.record("b", [2, 1])
        ledger.record("a", [5])
        assert ledger.items() == [("a", (5,)), ("b", (1, 2))]
        assert list(ledger) == ["a", "b"]
        assert "a" in ledger
        assert "c" not in ledger
        assert ledger.get("c") == ()

    def test_concurrent_records(self):
        ledger = AnomalyLedger()

        def writer(offset):
            for i in range(200):
                ledger.record(i % 10, [offset * 1000 + i])

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(ledger) == 10
        assert sum(len(values) for _, values in ledger.items()) == 800


class TestRepeatedReadDetector:

    def test_only_disagreements_recorded(self):
        ledger = AnomalyLedger()
        detector = RepeatedReadDetector(ledger, lambda values: len(values) > 1)
        buffer = detector.new_buffer()
        buffer.observe("stable", 10)
        buffer.observe("stable", 10)
        buffer.observe("moving", 10)
        buffer.observe("moving", 11)

        assert detector.check(buffer) == 1
        assert ledger.items() == [("moving", (10, 11))]
        assert detector.ledger is ledger

    def test_custom_rule(self):
        ledger = AnomalyLedger()
        detector = RepeatedReadDetector(ledger, lambda values: any(v < 0 for v in values))
        buffer = detector.new_buffer()
        buffer.observe("pair", -5)
        assert detector.check(buffer) == 1
        assert ledger.get("pair") == (-5,)

    def test_workload_default_rule(self):
        workload, _ = WorkloadBuilder("non_repeatable_read").build()
        assert workload.detector.ledger is workload.ledger
        assert not workload.is_anomalous((1,))
        assert workload.is_anomalous((1, 2))


class TestCounters:

    def test_declaration_order_and_increment(self):
        counters = Counters("reads", "writes")
        counters.increment("writes")
        counters.increment("reads", 3)
        assert counters.items() == [("reads", 3), ("writes", 1)]
        assert counters["reads"] == 3
        assert counters["missing"] == 0

    def test_thread_safe(self):
        counters = Counters("n")

        def bump():
            for _ in range(1000):
                counters.increment("n")

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert counters["n"] == 8000
