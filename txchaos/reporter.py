"""Console rendering of run results.

Workloads only ever call header(), info(), error() and print_left(); what
those look like is up to the Reporter implementation.
"""

from __future__ import annotations

import sys
from abc import ABC, abstractmethod
from typing import Optional, TextIO

HAPPY = "(ʘ‿ʘ)"
FLIP_TABLE = "(╯°□°)╯︵ ┻━┻"

_LABEL_WIDTH = 32


class Reporter(ABC):

    @abstractmethod
    def header(self, title: str) -> None:
        ...

    @abstractmethod
    def info(self, text: str) -> None:
        ...

    @abstractmethod
    def error(self, text: str) -> None:
        ...

    @abstractmethod
    def print_left(self, label: str, value: str) -> None:
        ...


class ConsoleReporter(Reporter):
    """Plain-text reporter. Errors are prefixed so they survive piping."""

    def __init__(self, out: Optional[TextIO] = None):
        self._out = out

    def _write(self, line: str) -> None:
        print(line, file=self._out or sys.stdout)

    def header(self, title: str) -> None:
        self._write("")
        self._write(f"[{title}]")

    def info(self, text: str) -> None:
        self._write(f"  {text}")

    def error(self, text: str) -> None:
        self._write(f"  ✗ {text}")

    def print_left(self, label: str, value: str) -> None:
        self._write(f"  {label + ':':<{_LABEL_WIDTH}} {value}")
