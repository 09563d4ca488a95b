"""Error taxonomy for nnlearn.

Every error carries a ``kind`` (its taxonomy name) and an optional
``stage`` (generation/training/evaluation/prediction) so entry points can
report both without inspecting the exception type.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator


class NNLearnError(Exception):
    """Base class for all errors raised by nnlearn."""

    kind = "NNLearnError"
    exit_code = 1

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        prefix = f"[{self.stage}] " if self.stage else ""
        return f"{prefix}{self.kind}: {self.message}"


class ShapeMismatch(NNLearnError):
    kind = "ShapeMismatch"
    exit_code = 2


class InvalidTopology(NNLearnError):
    kind = "InvalidTopology"
    exit_code = 3


class RowParseError(NNLearnError):
    """A CSV row could not be converted to numbers."""

    kind = "RowParseError"
    exit_code = 4

    def __init__(
        self,
        row: int,
        message: str,
        *,
        column: str | None = None,
        stage: str | None = None,
    ) -> None:
        location = f"row {row}" if column is None else f"row {row}, column {column!r}"
        super().__init__(f"{location}: {message}", stage=stage)
        self.row = row
        self.column = column


class CheckpointNotFound(NNLearnError):
    kind = "CheckpointNotFound"
    exit_code = 5


class CheckpointCorrupt(NNLearnError):
    kind = "CheckpointCorrupt"
    exit_code = 6


class NumericDivergence(NNLearnError):
    kind = "NumericDivergence"
    exit_code = 7


class LockContention(NNLearnError):
    kind = "LockContention"
    exit_code = 8


class ConfigError(NNLearnError):
    kind = "ConfigError"
    exit_code = 9


@contextmanager
def stage(name: str) -> Iterator[None]:
    """Stamp ``name`` onto any :class:`NNLearnError` escaping the block."""

    try:
        yield
    except NNLearnError as exc:
        if exc.stage is None:
            exc.stage = name
        raise


__all__ = [
    "CheckpointCorrupt",
    "CheckpointNotFound",
    "ConfigError",
    "InvalidTopology",
    "LockContention",
    "NNLearnError",
    "NumericDivergence",
    "RowParseError",
    "ShapeMismatch",
    "stage",
]
