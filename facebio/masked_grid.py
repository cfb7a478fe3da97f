"""
MaskedGrid: a 2D scalar field with a per-cell validity mask.

Depth, texture and curvature maps derived from face scans are full of holes
(occlusion, sensor dropout). Every statistic and neighborhood operation here
reads only valid cells; invalid cell values are never consumed.

Storage is flat and row-major: cell (x, y) lives at index ``y*w + x``.
Neighborhood operations (erosion, density, filtering) go through
scipy.ndimage on a snapshot of the current state and write a fresh buffer.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple, Union

import h5py
import numpy as np
from scipy import ndimage

from .errors import DimensionMismatchError, EmptyGridError
from .masked_vector import MaskedVector

PathLike = Union[str, Path]


def _check_kernel_size(kernel_size: int) -> None:
    if kernel_size % 2 != 1 or kernel_size < 3:
        raise ValueError(f"kernel size must be odd and >= 3, got {kernel_size}")


class MaskedGrid:
    """Fixed-size grid of float64 values with a boolean validity flag per cell."""

    def __init__(self, w: int, h: int):
        if w < 0 or h < 0:
            raise ValueError(f"grid dimensions must be >= 0, got {w}x{h}")
        self.w = int(w)
        self.h = int(h)
        n = self.w * self.h
        self.flags = np.zeros(n, dtype=bool)
        self.values = np.zeros(n, dtype=np.float64)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_arrays(cls, values: np.ndarray, flags: np.ndarray) -> "MaskedGrid":
        """Build a grid from (h, w) value and flag arrays."""
        values = np.asarray(values, dtype=np.float64)
        flags = np.asarray(flags, dtype=bool)
        if values.ndim != 2 or values.shape != flags.shape:
            raise DimensionMismatchError(
                f"values {values.shape} and flags {flags.shape} must be equal 2D shapes"
            )
        h, w = values.shape
        grid = cls(w, h)
        grid.values[:] = values.ravel()
        grid.flags[:] = flags.ravel()
        return grid

    @classmethod
    def from_matrix(cls, matrix: np.ndarray, void_value: float = 0.0) -> "MaskedGrid":
        """Build a grid from a dense (h, w) matrix; cells equal to ``void_value`` are invalid."""
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2:
            raise DimensionMismatchError(f"expected a 2D matrix, got shape {matrix.shape}")
        if np.isnan(void_value):
            flags = ~np.isnan(matrix)
        else:
            flags = matrix != void_value
        return cls.from_arrays(np.where(flags, matrix, 0.0), flags)

    @classmethod
    def load(cls, path: PathLike) -> "MaskedGrid":
        """Restore a grid written by :meth:`serialize`."""
        path = Path(path)
        with h5py.File(str(path), "r") as f:
            for key in ("w", "h", "flags", "values"):
                if key not in f:
                    raise ValueError(f"{path}: grid archive is missing '{key}' (expected w, h, flags, values)")
            w = int(f["w"][()])
            h = int(f["h"][()])
            flags = np.asarray(f["flags"][()], dtype=bool)
            values = np.asarray(f["values"][()], dtype=np.float64)
        if flags.shape != (w * h,) or values.shape != (w * h,):
            raise ValueError(
                f"{path}: grid archive holds {flags.size} flags and {values.size} values, expected {w * h}"
            )
        grid = cls(w, h)
        grid.flags[:] = flags
        grid.values[:] = values
        return grid

    def serialize(self, path: PathLike) -> None:
        """Write dimensions, flags and values to an HDF5 archive."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with h5py.File(str(path), "w") as f:
            self.write_to(f)

    def write_to(self, group: h5py.Group) -> None:
        """Write the grid datasets into an open HDF5 group."""
        group.create_dataset("w", data=self.w)
        group.create_dataset("h", data=self.h)
        group.create_dataset("flags", data=self.flags)
        group.create_dataset("values", data=self.values)

    @classmethod
    def read_from(cls, group: h5py.Group) -> "MaskedGrid":
        w = int(group["w"][()])
        h = int(group["h"][()])
        grid = cls(w, h)
        grid.flags[:] = np.asarray(group["flags"][()], dtype=bool)
        grid.values[:] = np.asarray(group["values"][()], dtype=np.float64)
        return grid

    def copy(self) -> "MaskedGrid":
        grid = MaskedGrid(self.w, self.h)
        grid.flags[:] = self.flags
        grid.values[:] = self.values
        return grid

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MaskedGrid):
            return NotImplemented
        if (self.w, self.h) != (other.w, other.h):
            return False
        if not np.array_equal(self.flags, other.flags):
            return False
        return bool(np.array_equal(self.values[self.flags], other.values[other.flags], equal_nan=True))

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        return f"MaskedGrid({self.w}x{self.h}, valid={self.valid_count()})"

    # ------------------------------------------------------------------
    # Cell access
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, int]:
        return self.h, self.w

    def flags2d(self) -> np.ndarray:
        return self.flags.reshape(self.h, self.w)

    def values2d(self) -> np.ndarray:
        return self.values.reshape(self.h, self.w)

    def is_valid_coord(self, x: int, y: int) -> bool:
        return 0 <= x < self.w and 0 <= y < self.h

    def coord_to_index(self, x: int, y: int) -> int:
        if not self.is_valid_coord(x, y):
            raise IndexError(f"cell ({x}, {y}) outside {self.w}x{self.h} grid")
        return y * self.w + x

    def set(self, x: int, y: int, value: float) -> None:
        i = self.coord_to_index(x, y)
        self.values[i] = value
        self.flags[i] = True

    def unset(self, x: int, y: int) -> None:
        self.flags[self.coord_to_index(x, y)] = False

    def set_index(self, i: int, value: float) -> None:
        self.values[i] = value
        self.flags[i] = True

    def unset_index(self, i: int) -> None:
        self.flags[i] = False

    def is_set(self, x: int, y: int) -> bool:
        return bool(self.flags[self.coord_to_index(x, y)])

    def get(self, x: int, y: int) -> float:
        return float(self.values[self.coord_to_index(x, y)])

    def set_all(self, value: float) -> None:
        self.values[:] = value
        self.flags[:] = True

    def unset_all(self) -> None:
        self.flags[:] = False

    def valid_count(self) -> int:
        return int(np.count_nonzero(self.flags))

    def used_values(self) -> np.ndarray:
        """Values of the valid cells in row-major order."""
        return self.values[self.flags].copy()

    # ------------------------------------------------------------------
    # Point-wise operations
    # ------------------------------------------------------------------

    def level_select(self, threshold: float) -> None:
        """Invalidate every valid cell whose value is below ``threshold``."""
        self.flags &= ~(self.values < threshold)

    def linear_scale(self, multiply: float, add: float) -> None:
        """Apply ``v * multiply + add`` to every valid cell."""
        self.values[self.flags] = self.values[self.flags] * multiply + add

    def add(self, other: "MaskedGrid") -> None:
        """Cell-wise sum; a cell stays valid only where both grids are valid."""
        if (self.w, self.h) != (other.w, other.h):
            raise DimensionMismatchError(
                f"cannot add {other.w}x{other.h} grid to {self.w}x{self.h} grid"
            )
        both = self.flags & other.flags
        self.values[both] += other.values[both]
        self.flags = both

    def min_value(self) -> float:
        if not self.flags.any():
            raise EmptyGridError()
        return float(self.values[self.flags].min())

    def max_value(self) -> float:
        if not self.flags.any():
            raise EmptyGridError()
        return float(self.values[self.flags].max())

    def max_index(self) -> Optional[int]:
        """Linear index of the maximum valid value, or None for an empty grid."""
        valid = np.flatnonzero(self.flags)
        if valid.size == 0:
            return None
        return int(valid[np.argmax(self.values[valid])])

    # ------------------------------------------------------------------
    # Neighborhood operations
    # ------------------------------------------------------------------

    def erode(self, kernel_size: int) -> None:
        """
        Morphological erosion of the validity mask.

        A valid cell becomes invalid if any in-grid cell of the square window
        centered on it is invalid. The window is clipped at the grid border.
        All decisions are taken against the mask as it was before the call.
        """
        _check_kernel_size(kernel_size)
        snapshot = self.flags2d().copy()
        structure = np.ones((kernel_size, kernel_size), dtype=bool)
        eroded = ndimage.binary_erosion(snapshot, structure=structure, border_value=1)
        self.flags = (snapshot & eroded).ravel()

    def density_map(self, kernel_size: int, from_center: bool = False) -> "MaskedGrid":
        """
        Fraction of valid cells in a square window around every cell.

        The count is divided by the full window area, so border cells never
        exceed the fraction of the window that lies inside the grid. With
        ``from_center`` the value is multiplied by ``1 - d / dmax`` where d is
        the distance to the grid center; far corners may go negative.
        """
        _check_kernel_size(kernel_size)
        window = np.ones((kernel_size, kernel_size), dtype=np.float64)
        counts = ndimage.correlate(
            self.flags2d().astype(np.float64), window, mode="constant", cval=0.0
        )
        density = counts / float(kernel_size * kernel_size)

        if from_center:
            cx, cy = self.w // 2, self.h // 2
            max_distance = np.hypot(cx, cy)
            if max_distance > 0:
                ys, xs = np.mgrid[0:self.h, 0:self.w]
                factor = 1.0 - np.hypot(xs - cx, ys - cy) / max_distance
                density = density * factor

        return MaskedGrid.from_arrays(density, np.ones_like(density, dtype=bool))

    def apply_filter(self, kernel: np.ndarray, times: int = 1, check_sum: bool = False) -> None:
        """
        Correlate valid cells with ``kernel``, ``times`` times.

        Only valid neighbors contribute. With ``check_sum`` the result is
        divided by the sum of kernel weights actually used, compensating for
        missing and clipped neighbors.
        """
        kernel = np.asarray(kernel, dtype=np.float64)
        if kernel.ndim != 2 or kernel.shape[0] % 2 != 1 or kernel.shape[1] % 2 != 1:
            raise ValueError(f"kernel must be 2D with odd dimensions, got {kernel.shape}")
        if times < 0:
            raise ValueError(f"times must be >= 0, got {times}")

        valid = self.flags2d()
        weights = ndimage.correlate(valid.astype(np.float64), kernel, mode="constant", cval=0.0)
        for _ in range(times):
            current = np.where(valid, self.values2d(), 0.0)
            filtered = ndimage.correlate(current, kernel, mode="constant", cval=0.0)
            if check_sum:
                usable = weights != 0
                filtered = np.where(usable, filtered / np.where(usable, weights, 1.0), current)
            self.values = np.where(valid, filtered, self.values2d()).ravel()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def horizontal_profile(self, y: int) -> MaskedVector:
        if not 0 <= y < self.h:
            raise IndexError(f"row {y} outside grid of height {self.h}")
        row_flags = self.flags2d()[y]
        return MaskedVector.from_arrays(np.where(row_flags, self.values2d()[y], 0.0), row_flags)

    def vertical_profile(self, x: int) -> MaskedVector:
        if not 0 <= x < self.w:
            raise IndexError(f"column {x} outside grid of width {self.w}")
        col_flags = self.flags2d()[:, x]
        return MaskedVector.from_arrays(np.where(col_flags, self.values2d()[:, x], 0.0), col_flags)

    def _row_aggregate(self, reducer) -> MaskedVector:
        profile = MaskedVector(self.h)
        flags = self.flags2d()
        values = self.values2d()
        for y in range(self.h):
            row = values[y][flags[y]]
            if row.size > 0:
                profile.set(y, float(reducer(row)))
        return profile

    def mean_vertical_profile(self) -> MaskedVector:
        return self._row_aggregate(np.mean)

    def max_vertical_profile(self) -> MaskedVector:
        return self._row_aggregate(np.max)

    def median_vertical_profile(self) -> MaskedVector:
        return self._row_aggregate(np.median)

    def horizontal_point_density(self, y: int, stripe_width: int) -> MaskedVector:
        """Per column, the number of valid cells in rows ``y-stripe_width .. y+stripe_width``."""
        lo = max(0, y - stripe_width)
        hi = min(self.h, y + stripe_width + 1)
        counts = np.zeros(self.w, dtype=np.float64)
        if lo < hi:
            counts = self.flags2d()[lo:hi].sum(axis=0).astype(np.float64)
        return MaskedVector.from_arrays(counts, np.ones(self.w, dtype=bool))

    # ------------------------------------------------------------------
    # Conversion and cropping
    # ------------------------------------------------------------------

    def to_matrix(self, void_value: float = 0.0, min_value: float = 0.0,
                  max_value: float = 0.0) -> np.ndarray:
        """
        Dense (h, w) matrix with valid cells normalized to ``(v - min) / (max - min)``.

        When min and max are both 0 they are taken from the valid cells. A zero
        range maps every valid cell to 0. Invalid cells get ``void_value``.
        """
        result = np.full((self.h, self.w), void_value, dtype=np.float64)
        if not self.flags.any():
            return result
        if min_value == 0 and max_value == 0:
            min_value = self.min_value()
            max_value = self.max_value()
        delta = max_value - min_value
        valid = self.flags2d()
        if delta == 0:
            result[valid] = 0.0
        else:
            result[valid] = (self.values2d()[valid] - min_value) / delta
        return result

    def get_crop_params(self) -> Tuple[int, int, int, int]:
        """
        Inclusive bounding box of the valid cells as ``(start_x, width, start_y, height)``.

        Raises EmptyGridError for an empty grid and ValueError when the box is
        a single row or column.
        """
        valid = self.flags2d()
        cols = np.flatnonzero(valid.any(axis=0))
        rows = np.flatnonzero(valid.any(axis=1))
        if cols.size == 0:
            raise EmptyGridError("cannot crop a grid with no valid cells")
        start_x, end_x = int(cols[0]), int(cols[-1])
        start_y, end_y = int(rows[0]), int(rows[-1])
        if end_x <= start_x or end_y <= start_y:
            raise ValueError(
                f"degenerate crop box x=[{start_x},{end_x}] y=[{start_y},{end_y}]"
            )
        return start_x, end_x - start_x + 1, start_y, end_y - start_y + 1

    def sub_map(self, start_x: int, width: int, start_y: int, height: int) -> "MaskedGrid":
        """Copy a window of this grid; cells outside the source stay invalid."""
        result = MaskedGrid(width, height)
        x0, x1 = max(start_x, 0), min(start_x + width, self.w)
        y0, y1 = max(start_y, 0), min(start_y + height, self.h)
        if x0 >= x1 or y0 >= y1:
            return result
        dst_flags = result.flags2d()
        dst_values = result.values2d()
        dst_flags[y0 - start_y:y1 - start_y, x0 - start_x:x1 - start_x] = self.flags2d()[y0:y1, x0:x1]
        dst_values[y0 - start_y:y1 - start_y, x0 - start_x:x1 - start_x] = self.values2d()[y0:y1, x0:x1]
        dst_values[~dst_flags] = 0.0
        return result

    def crop(self) -> "MaskedGrid":
        return self.sub_map(*self.get_crop_params())
