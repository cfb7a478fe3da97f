"""
Surface processing on masked grids.

Projects meshes onto a regular x/y layout (depth and texture maps), smooths
maps, and estimates curvature from a depth map.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy import ndimage
from scipy.interpolate import griddata
from scipy.spatial import QhullError, cKDTree

from .masked_grid import MaskedGrid
from .mesh import Mesh

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GridLayout:
    """
    Maps mesh x/y coordinates to grid cells.

    Column 0 starts at ``x_min``; row 0 starts at ``y_max`` so the grid reads
    like an image of a face looking along +z.
    """

    x_min: float = -75.0
    y_min: float = -75.0
    x_max: float = 75.0
    y_max: float = 75.0
    resolution: float = 1.0

    def __post_init__(self):
        if self.resolution <= 0:
            raise ValueError(f"resolution must be > 0, got {self.resolution}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"empty layout {self}")

    @property
    def width(self) -> int:
        return int(round((self.x_max - self.x_min) / self.resolution))

    @property
    def height(self) -> int:
        return int(round((self.y_max - self.y_min) / self.resolution))

    def map_to_mesh(self, col: float, row: float) -> Tuple[float, float]:
        """Mesh coordinates of a cell center."""
        return (self.x_min + (col + 0.5) * self.resolution,
                self.y_max - (row + 0.5) * self.resolution)

    def mesh_to_map(self, x: float, y: float) -> Tuple[float, float]:
        """Fractional (col, row) of a mesh point; integer values are cell centers."""
        return ((x - self.x_min) / self.resolution - 0.5,
                (self.y_max - y) / self.resolution - 0.5)

    def cell_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """(X, Y) arrays of shape (height, width) with every cell's mesh coordinates."""
        rows, cols = np.mgrid[0:self.height, 0:self.width]
        return self.map_to_mesh(cols, rows)

    def empty_grid(self) -> MaskedGrid:
        return MaskedGrid(self.width, self.height)

    def to_array(self) -> np.ndarray:
        return np.array([self.x_min, self.y_min, self.x_max, self.y_max, self.resolution])

    @classmethod
    def from_array(cls, values: np.ndarray) -> "GridLayout":
        x_min, y_min, x_max, y_max, resolution = (float(v) for v in values)
        return cls(x_min, y_min, x_max, y_max, resolution)


@dataclass
class CurvatureStruct:
    """Curvature maps of a depth grid."""

    gauss: MaskedGrid
    mean: MaskedGrid
    pcl1: MaskedGrid
    pcl2: MaskedGrid
    index: MaskedGrid
    peaks: MaskedGrid
    pits: MaskedGrid


def _default_max_gap(xy: np.ndarray, tree: cKDTree) -> float:
    distances, _ = tree.query(xy, k=2)
    spacing = distances[:, 1]
    spacing = spacing[spacing > 0]
    if spacing.size == 0:
        return 0.0
    return 2.0 * float(np.median(spacing))


def rasterize(mesh: Mesh, layout: GridLayout, values: np.ndarray,
              max_gap: Optional[float] = None) -> MaskedGrid:
    """
    Linearly interpolate per-vertex ``values`` at every cell center.

    Cells outside the convex hull of the projected vertices, or farther than
    ``max_gap`` from the nearest vertex, stay invalid.
    """
    values = np.asarray(values, dtype=np.float64).reshape(-1)
    if len(values) != mesh.vertex_count:
        raise ValueError(f"{len(values)} values for {mesh.vertex_count} vertices")

    grid = layout.empty_grid()
    finite = np.all(np.isfinite(mesh.points), axis=1) & np.isfinite(values)
    xy = mesh.points[finite, :2]
    if len(xy) < 3:
        logger.warning("Cannot rasterize mesh with %d usable vertices", len(xy))
        return grid

    X, Y = layout.cell_centers()
    try:
        interpolated = griddata(xy, values[finite], (X, Y), method="linear")
    except QhullError as exc:
        logger.warning("Cannot rasterize degenerate mesh projection: %s", exc)
        return grid

    tree = cKDTree(xy)
    if max_gap is None:
        max_gap = _default_max_gap(xy, tree)
    distances, _ = tree.query(np.column_stack([X.ravel(), Y.ravel()]))
    valid = np.isfinite(interpolated) & (distances.reshape(X.shape) <= max_gap)

    grid.flags[:] = valid.ravel()
    grid.values[:] = np.where(valid, interpolated, 0.0).ravel()
    return grid


def depthmap(mesh: Mesh, layout: GridLayout, max_gap: Optional[float] = None) -> MaskedGrid:
    return rasterize(mesh, layout, mesh.points[:, 2], max_gap)


def texturemap(mesh: Mesh, layout: GridLayout, max_gap: Optional[float] = None) -> MaskedGrid:
    if mesh.colors is None:
        raise ValueError("mesh has no texture")
    return rasterize(mesh, layout, mesh.colors, max_gap)


def smooth(grid: MaskedGrid, alpha: float, steps: int) -> None:
    """Weighted 3x3 averaging of valid cells: center weight 1, neighbors ``alpha``."""
    kernel = np.full((3, 3), float(alpha))
    kernel[1, 1] = 1.0
    grid.apply_filter(kernel, steps, check_sum=True)


def _stencil(values: np.ndarray, kernel) -> np.ndarray:
    return ndimage.correlate(values, np.asarray(kernel, dtype=np.float64), mode="constant", cval=0.0)


def calculate_curvatures(depth: MaskedGrid, resolution: float = 1.0) -> CurvatureStruct:
    """
    Curvature of the depth surface z(x, y) from 3x3 finite differences.

    Only cells whose whole 3x3 neighborhood lies inside the grid and is valid
    get a result. ``index`` is the shape index rescaled to [0, 1]: caps
    (nose tip) approach 1, cups approach 0. ``peaks`` and ``pits`` are
    grids valid only at elliptic convex / concave cells.
    """
    if depth.w < 3 or depth.h < 3:
        mask = np.zeros((depth.h, depth.w), dtype=bool)
    else:
        inner = depth.copy()
        inner.erode(3)
        mask = inner.flags2d().copy()
        mask[0, :] = mask[-1, :] = False
        mask[:, 0] = mask[:, -1] = False

    z = np.where(depth.flags2d(), depth.values2d(), 0.0)
    r = float(resolution)
    zx = _stencil(z, [[0, 0, 0], [-1, 0, 1], [0, 0, 0]]) / (2 * r)
    zy = _stencil(z, [[0, -1, 0], [0, 0, 0], [0, 1, 0]]) / (2 * r)
    zxx = _stencil(z, [[0, 0, 0], [1, -2, 1], [0, 0, 0]]) / (r * r)
    zyy = _stencil(z, [[0, 1, 0], [0, -2, 0], [0, 1, 0]]) / (r * r)
    zxy = _stencil(z, [[1, 0, -1], [0, 0, 0], [-1, 0, 1]]) / (4 * r * r)

    g = 1.0 + zx ** 2 + zy ** 2
    gauss = (zxx * zyy - zxy ** 2) / g ** 2
    mean = ((1 + zx ** 2) * zyy - 2 * zx * zy * zxy + (1 + zy ** 2) * zxx) / (2 * g ** 1.5)
    disc = np.sqrt(np.maximum(mean ** 2 - gauss, 0.0))
    k1 = mean + disc
    k2 = mean - disc
    index = 0.5 - np.arctan2(k1 + k2, k1 - k2) / np.pi

    def masked(values: np.ndarray, where: np.ndarray) -> MaskedGrid:
        return MaskedGrid.from_arrays(np.where(where, values, 0.0), where)

    ones = np.ones_like(z)
    return CurvatureStruct(
        gauss=masked(gauss, mask),
        mean=masked(mean, mask),
        pcl1=masked(k1, mask),
        pcl2=masked(k2, mask),
        index=masked(index, mask),
        peaks=masked(ones, mask & (gauss > 0) & (mean < 0)),
        pits=masked(ones, mask & (gauss > 0) & (mean > 0)),
    )
