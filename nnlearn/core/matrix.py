"""Shape-checked dense matrix primitives.

``Matrix`` wraps a two-dimensional ``float64`` array.  Unlike raw NumPy it
never broadcasts: every binary operation checks its operands and raises
:class:`~nnlearn.core.errors.ShapeMismatch` when they disagree.
"""

from __future__ import annotations

from typing import Callable, Iterable, Sequence

import numpy as np

from .errors import ShapeMismatch


def _check_row_lengths(rows: Sequence[object]) -> None:
    width: int | None = None
    for idx, row in enumerate(rows):
        if isinstance(row, (str, bytes)) or not hasattr(row, "__len__"):
            continue
        if width is None:
            width = len(row)  # type: ignore[arg-type]
        elif len(row) != width:  # type: ignore[arg-type]
            raise ShapeMismatch(f"Row {idx} has {len(row)} values, expected {width}")  # type: ignore[arg-type]


class Matrix:
    """Rows × columns of floating-point values."""

    __slots__ = ("_data",)
    __hash__ = None  # type: ignore[assignment]

    def __init__(self, data: np.ndarray | Sequence[Sequence[float]]) -> None:
        if not isinstance(data, np.ndarray):
            _check_row_lengths(data)
        array = np.asarray(data, dtype=np.float64)
        if array.ndim != 2:
            raise ShapeMismatch(f"Matrix requires 2-D data, got {array.ndim}-D")
        self._data = array

    # ------------------------------------------------------------------
    # Construction

    @classmethod
    def from_rows(cls, rows: Iterable[Sequence[float]]) -> "Matrix":
        """Build a matrix from row-major data, validating row lengths."""

        materialised = [list(row) for row in rows]
        if not materialised:
            return cls(np.zeros((0, 0)))
        _check_row_lengths(materialised)
        return cls(np.array(materialised, dtype=np.float64))

    @classmethod
    def zeros(cls, rows: int, cols: int) -> "Matrix":
        return cls(np.zeros((rows, cols), dtype=np.float64))

    @classmethod
    def row_vector(cls, values: Sequence[float] | np.ndarray) -> "Matrix":
        return cls(np.asarray(values, dtype=np.float64).reshape(1, -1))

    # ------------------------------------------------------------------
    # Introspection

    @property
    def shape(self) -> tuple[int, int]:
        return (int(self._data.shape[0]), int(self._data.shape[1]))

    @property
    def rows(self) -> int:
        return self.shape[0]

    @property
    def cols(self) -> int:
        return self.shape[1]

    @property
    def data(self) -> np.ndarray:
        """The underlying array (not a copy)."""

        return self._data

    def to_numpy(self) -> np.ndarray:
        return self._data.copy()

    def tolist(self) -> list[list[float]]:
        return self._data.tolist()

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self._data)))

    @property
    def frozen(self) -> bool:
        return not self._data.flags.writeable

    def freeze(self) -> "Matrix":
        self._data.setflags(write=False)
        return self

    def copy(self) -> "Matrix":
        return Matrix(self._data.copy())

    # ------------------------------------------------------------------
    # Arithmetic

    def _require_same_shape(self, other: "Matrix", op: str) -> None:
        if not isinstance(other, Matrix):
            raise TypeError(f"Cannot {op} Matrix and {type(other).__name__}")
        if self.shape != other.shape:
            raise ShapeMismatch(f"Cannot {op} {self.shape} and {other.shape}")

    def __add__(self, other: "Matrix") -> "Matrix":
        self._require_same_shape(other, "add")
        return Matrix(self._data + other._data)

    def __sub__(self, other: "Matrix") -> "Matrix":
        self._require_same_shape(other, "subtract")
        return Matrix(self._data - other._data)

    def __mul__(self, other: "Matrix | float") -> "Matrix":
        if isinstance(other, (int, float, np.floating)):
            return Matrix(self._data * float(other))
        self._require_same_shape(other, "multiply")
        return Matrix(self._data * other._data)

    def __rmul__(self, other: float) -> "Matrix":
        if isinstance(other, (int, float, np.floating)):
            return Matrix(self._data * float(other))
        return NotImplemented

    def __truediv__(self, other: float) -> "Matrix":
        return Matrix(self._data / float(other))

    def __isub__(self, other: "Matrix") -> "Matrix":
        self._require_same_shape(other, "subtract")
        self._data -= other._data
        return self

    def __matmul__(self, other: "Matrix") -> "Matrix":
        if not isinstance(other, Matrix):
            return NotImplemented
        if self.cols != other.rows:
            raise ShapeMismatch(f"Cannot multiply {self.shape} by {other.shape}")
        return Matrix(self._data @ other._data)

    def transpose(self) -> "Matrix":
        return Matrix(self._data.T.copy())

    @property
    def T(self) -> "Matrix":  # noqa: N802 - mirrors NumPy
        return self.transpose()

    def add_row(self, row: "Matrix") -> "Matrix":
        """Add a ``(1, cols)`` row vector to every row."""

        if row.shape != (1, self.cols):
            raise ShapeMismatch(
                f"Row vector of shape {row.shape} does not fit {self.shape}"
            )
        return Matrix(self._data + row._data)

    def sum_rows(self) -> "Matrix":
        """Column-wise sum, returned as a ``(1, cols)`` row vector."""

        return Matrix(self._data.sum(axis=0, keepdims=True))

    def mean_rows(self) -> "Matrix":
        if self.rows == 0:
            raise ShapeMismatch("Cannot average an empty matrix")
        return Matrix(self._data.mean(axis=0, keepdims=True))

    def apply(self, fn: Callable[[np.ndarray], np.ndarray]) -> "Matrix":
        """Apply ``fn`` to the whole buffer; ``fn`` must preserve shape."""

        result = np.asarray(fn(self._data), dtype=np.float64)
        if result.shape != self._data.shape:
            raise ShapeMismatch(
                f"Element-wise function changed shape {self.shape} -> {result.shape}"
            )
        return Matrix(result)

    def select_rows(self, indices: np.ndarray | Sequence[int]) -> "Matrix":
        return Matrix(self._data[np.asarray(indices, dtype=np.int64)])

    # ------------------------------------------------------------------
    # Comparison

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self._data, other._data))

    def allclose(self, other: "Matrix", *, rtol: float = 1e-9, atol: float = 1e-12) -> bool:
        self._require_same_shape(other, "compare")
        return bool(np.allclose(self._data, other._data, rtol=rtol, atol=atol))

    def __repr__(self) -> str:
        return f"Matrix(shape={self.shape})"


__all__ = ["Matrix"]
