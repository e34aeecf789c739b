"""Concurrency anomaly verification harness for transactional stores."""

__version__ = "0.1.0"
