"""
1D masked sequence used for grid profiles (rows, columns, per-row aggregates).
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from .errors import DimensionMismatchError, EmptyGridError


class MaskedVector:
    """Fixed-length sequence of floats where each element is valid or not."""

    def __init__(self, n: int, value: float = 0.0, valid: bool = False):
        if n < 0:
            raise ValueError(f"length must be >= 0, got {n}")
        self.n = n
        self.values = np.full(n, value, dtype=np.float64)
        self.flags = np.full(n, valid, dtype=bool)

    @classmethod
    def from_arrays(cls, values: np.ndarray, flags: np.ndarray) -> "MaskedVector":
        values = np.asarray(values, dtype=np.float64)
        flags = np.asarray(flags, dtype=bool)
        if values.shape != flags.shape or values.ndim != 1:
            raise DimensionMismatchError(
                f"values {values.shape} and flags {flags.shape} must be equal 1D shapes"
            )
        vec = cls(len(values))
        vec.values[:] = values
        vec.flags[:] = flags
        return vec

    def __len__(self) -> int:
        return self.n

    def __repr__(self) -> str:
        return f"MaskedVector(n={self.n}, valid={self.flag_count()})"

    def set(self, i: int, value: float) -> None:
        self.values[i] = value
        self.flags[i] = True

    def unset(self, i: int) -> None:
        self.flags[i] = False

    def get(self, i: int) -> float:
        return float(self.values[i])

    def is_set(self, i: int) -> bool:
        return bool(self.flags[i])

    def flag_count(self) -> int:
        return int(np.count_nonzero(self.flags))

    def used_values(self) -> np.ndarray:
        """Values of the valid elements, in order."""
        return self.values[self.flags].copy()

    def _require_values(self) -> np.ndarray:
        used = self.values[self.flags]
        if used.size == 0:
            raise EmptyGridError("no valid elements in vector")
        return used

    def mean(self) -> float:
        return float(np.mean(self._require_values()))

    def max(self) -> float:
        return float(np.max(self._require_values()))

    def min(self) -> float:
        return float(np.min(self._require_values()))

    def median(self) -> float:
        return float(np.median(self._require_values()))

    def derivate(self) -> "MaskedVector":
        """
        Forward difference.

        Element i is valid only if both i and i+1 are valid. The last element is
        always invalid.
        """
        result = MaskedVector(self.n)
        if self.n < 2:
            return result
        both = self.flags[:-1] & self.flags[1:]
        diff = self.values[1:] - self.values[:-1]
        result.values[:-1] = np.where(both, diff, 0.0)
        result.flags[:-1] = both
        return result

    def to_array(self, void_value: Optional[float] = np.nan) -> np.ndarray:
        """Dense copy with invalid elements replaced by ``void_value``."""
        return np.where(self.flags, self.values, void_value)
