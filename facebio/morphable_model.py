"""
Morphable 3D face model.

Shape is modelled as the depth (z) of a face surface sampled on a fixed grid
layout, texture as the intensity on the same cells. Only cells of the model
mask take part; the model vector of a face therefore has one entry per valid
mask cell. Three PCA sub-models are kept: depth, texture and the two
concatenated (``combined``).

Training (``align_training_set``, ``create``) brings a corpus into a common
frame with generalized Procrustes on control points, rasterizes every aligned
scan and fits the sub-models. Fitting (``MorphableFaceModel.align``,
``morph_model``) registers a new scan to the model and estimates its
coefficients from the cells the scan actually covers.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import h5py
import numpy as np
from scipy.spatial import cKDTree

from .errors import CannotFitError, DegenerateAlignmentError, DimensionMismatchError
from .landmarks import Landmarks
from .masked_grid import MaskedGrid
from .mesh import Mesh
from .pca import PCA
from .procrustes import ProcrustesResult, RigidTransform, rigid_fit, rmse
from .surface import GridLayout, depthmap, texturemap

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

DEFAULT_ICP_MAX_DISTANCE = 10.0


def _transform_mesh(mesh: Mesh, transform: RigidTransform) -> None:
    mesh.points = transform.apply(mesh.points)


# ----------------------------------------------------------------------------
# Training
# ----------------------------------------------------------------------------

def _check_control_points(meshes: Sequence[Mesh], control_points: Sequence[np.ndarray]) -> None:
    if len(meshes) != len(control_points):
        raise ValueError(f"{len(meshes)} meshes but {len(control_points)} control point sets")
    if not meshes:
        raise ValueError("training set is empty")
    counts = {np.asarray(cp).reshape(-1, 3).shape[0] for cp in control_points}
    if len(counts) != 1:
        raise ValueError(f"control point sets have different sizes: {sorted(counts)}")
    count = counts.pop()
    if count < 3:
        raise ValueError(f"at least 3 control points are required, got {count}")
    for i, cp in enumerate(control_points):
        if not np.all(np.isfinite(cp)):
            raise ValueError(f"control points of training sample {i} contain non-finite values")


def align_training_set(meshes: List[Mesh], control_points: List[np.ndarray],
                       iterations: int, scale: bool = False) -> np.ndarray:
    """
    Generalized Procrustes alignment of a training corpus.

    Every sample is first centered on its control-point centroid. Each round
    then fits all samples to the current mean and recomputes the mean from
    the aligned samples. ``meshes`` and ``control_points`` are updated in
    place; the final mean control points are returned.
    """
    _check_control_points(meshes, control_points)

    for i, mesh in enumerate(meshes):
        cp = np.asarray(control_points[i], dtype=np.float64).reshape(-1, 3)
        center = cp.mean(axis=0)
        mesh.translate(-center)
        control_points[i] = cp - center

    mean = np.mean(control_points, axis=0)
    reference_size = float(np.linalg.norm(mean))

    for iteration in range(iterations):
        transforms = [rigid_fit(cp, mean, scale=scale) for cp in control_points]
        for i, transform in enumerate(transforms):
            _transform_mesh(meshes[i], transform)
            control_points[i] = transform.apply(control_points[i])

        new_mean = np.mean(control_points, axis=0)
        if scale:
            size = float(np.linalg.norm(new_mean))
            if size > 0:
                new_mean *= reference_size / size
        error = float(np.mean([rmse(cp, new_mean) for cp in control_points]))
        logger.debug("Training alignment round %d/%d: mean rmse %.4f", iteration + 1, iterations, error)
        mean = new_mean

    return mean


def create(meshes: List[Mesh], control_points: List[np.ndarray], iterations: int,
           pca_zcoord_path: PathLike, pca_texture_path: PathLike, pca_path: PathLike,
           flags_path: PathLike, mean_control_points_path: PathLike, map_mask: MaskedGrid,
           layout: Optional[GridLayout] = None, control_point_names: Optional[Sequence[str]] = None,
           scale: bool = False, max_gap: Optional[float] = None) -> "MorphableFaceModel":
    """
    Train a model from ``meshes`` (with per-vertex texture) and their control points.

    The model mask is ``map_mask`` restricted to the cells covered by every
    aligned training scan. The three PCA sub-models, the mask and the mean
    control points are written to the given paths.
    """
    layout = layout or GridLayout()
    if (map_mask.w, map_mask.h) != (layout.width, layout.height):
        raise DimensionMismatchError(
            f"mask is {map_mask.w}x{map_mask.h}, layout is {layout.width}x{layout.height}"
        )
    if len(meshes) < 2:
        raise ValueError(f"training needs at least 2 meshes, got {len(meshes)}")
    for i, mesh in enumerate(meshes):
        if mesh.colors is None:
            raise ValueError(f"training mesh {i} has no texture")

    mean_control_points = align_training_set(meshes, control_points, iterations, scale=scale)

    depth_maps = [depthmap(mesh, layout, max_gap) for mesh in meshes]
    texture_maps = [texturemap(mesh, layout, max_gap) for mesh in meshes]

    common = map_mask.flags.copy()
    for grid in depth_maps + texture_maps:
        common &= grid.flags
    cells = np.flatnonzero(common)
    if cells.size == 0:
        raise ValueError("no grid cell is covered by the mask and every training scan")
    logger.info("Training on %d meshes, %d of %d mask cells covered by all scans",
                len(meshes), cells.size, map_mask.valid_count())

    zcoord_samples = np.array([grid.values[cells] for grid in depth_maps])
    texture_samples = np.array([grid.values[cells] for grid in texture_maps])

    pca_zcoord = PCA.fit(zcoord_samples)
    pca_texture = PCA.fit(texture_samples)
    pca = PCA.fit(np.hstack([zcoord_samples, texture_samples]))
    logger.info("Model modes: zcoord=%d texture=%d combined=%d",
                pca_zcoord.modes, pca_texture.modes, pca.modes)

    mask = MaskedGrid(map_mask.w, map_mask.h)
    mask.flags[cells] = True
    mask.values[cells] = 1.0

    if control_point_names is None:
        control_point_names = [f"cp{i}" for i in range(len(mean_control_points))]
    landmarks = Landmarks(control_point_names, mean_control_points)

    pca_zcoord.save(pca_zcoord_path)
    pca_texture.save(pca_texture_path)
    pca.save(pca_path)
    mask.serialize(flags_path)
    landmarks.save(mean_control_points_path)

    return MorphableFaceModel(pca_zcoord, pca_texture, pca, mask, landmarks, layout)


# ----------------------------------------------------------------------------
# Model
# ----------------------------------------------------------------------------

class MorphableFaceModel:
    """
    PCA face model over the valid cells of ``mask``.

    ``mesh`` is the current model instance; it starts as the mean face and is
    replaced by ``set_model_params``, ``set_common_params`` and ``morph_model``.
    """

    def __init__(self, pca_zcoord: PCA, pca_texture: PCA, pca: PCA, mask: MaskedGrid,
                 landmarks: Landmarks, layout: Optional[GridLayout] = None):
        self.layout = layout or GridLayout()
        if (mask.w, mask.h) != (self.layout.width, self.layout.height):
            raise DimensionMismatchError(
                f"mask is {mask.w}x{mask.h}, layout is {self.layout.width}x{self.layout.height}"
            )
        cells = np.flatnonzero(mask.flags)
        if pca_zcoord.dim != cells.size or pca_texture.dim != cells.size:
            raise DimensionMismatchError(
                f"sub-model dimensions {pca_zcoord.dim}/{pca_texture.dim} "
                f"do not match {cells.size} mask cells"
            )
        if pca.dim != 2 * cells.size:
            raise DimensionMismatchError(
                f"combined model dimension {pca.dim}, expected {2 * cells.size}"
            )

        self.pca_zcoord = pca_zcoord
        self.pca_texture = pca_texture
        self.pca = pca
        self.mask = mask
        self.landmarks = landmarks
        self._cells = cells
        self._triangles = self._build_triangles()

        self.mesh: Mesh = Mesh(np.zeros((0, 3)))
        self.zcoord_params = pca_zcoord.zero_params()
        self.texture_params = pca_texture.zero_params()
        self.common_params: Optional[np.ndarray] = None
        self.coverage = 0.0
        self.set_model_params(self.zcoord_params, self.texture_params)

    def __repr__(self) -> str:
        return (f"MorphableFaceModel(cells={self.cell_count}, zcoord={self.pca_zcoord.modes}, "
                f"texture={self.pca_texture.modes}, combined={self.pca.modes})")

    @property
    def cell_count(self) -> int:
        return int(self._cells.size)

    # ------------------------------------------------------------------
    # Mesh synthesis
    # ------------------------------------------------------------------

    def _build_triangles(self) -> np.ndarray:
        w, h = self.mask.w, self.mask.h
        vertex_of = np.full(w * h, -1, dtype=np.int64)
        vertex_of[self._cells] = np.arange(self._cells.size)
        grid = vertex_of.reshape(h, w)

        top_left, top_right = grid[:-1, :-1], grid[:-1, 1:]
        bottom_left, bottom_right = grid[1:, :-1], grid[1:, 1:]
        quad = (top_left >= 0) & (top_right >= 0) & (bottom_left >= 0) & (bottom_right >= 0)

        upper = np.stack([top_left[quad], bottom_left[quad], top_right[quad]], axis=1)
        lower = np.stack([top_right[quad], bottom_left[quad], bottom_right[quad]], axis=1)
        return np.vstack([upper, lower]).reshape(-1, 3)

    def _build_mesh(self, zcoord: np.ndarray, texture: np.ndarray) -> Mesh:
        cols = self._cells % self.mask.w
        rows = self._cells // self.mask.w
        x, y = self.layout.map_to_mesh(cols, rows)
        points = np.column_stack([x, y, zcoord])
        return Mesh(points, texture.copy(), self._triangles.copy())

    def set_model_params(self, zcoord_params: np.ndarray, texture_params: np.ndarray) -> None:
        """Replace the current instance with the face given by sub-model coefficients."""
        zcoord = self.pca_zcoord.back_project(zcoord_params)
        texture = self.pca_texture.back_project(texture_params)
        self.zcoord_params = np.asarray(zcoord_params, dtype=np.float64).reshape(-1).copy()
        self.texture_params = np.asarray(texture_params, dtype=np.float64).reshape(-1).copy()
        self.common_params = None
        self.mesh = self._build_mesh(zcoord, texture)

    def set_common_params(self, common_params: np.ndarray) -> None:
        """Replace the current instance with the face given by combined-model coefficients."""
        vector = self.pca.back_project(common_params)
        n = self.cell_count
        self.common_params = np.asarray(common_params, dtype=np.float64).reshape(-1).copy()
        self.mesh = self._build_mesh(vector[:n], vector[n:])

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------

    def align(self, input_mesh: Mesh, input_landmarks: Landmarks, iterations: int,
              scale: bool = False, max_distance: Optional[float] = DEFAULT_ICP_MAX_DISTANCE) -> ProcrustesResult:
        """
        Register ``input_mesh`` to the model frame.

        A coarse fit on the landmarks shared with the model is refined by
        ``iterations`` rounds of nearest-neighbour alignment against the
        current model mesh. Pairs farther apart than ``max_distance`` are
        ignored (``None`` keeps all). ``input_mesh`` is transformed in place.
        """
        shared = [name for name in self.landmarks.names
                  if input_landmarks.is_valid(name) and self.landmarks.is_valid(name)]
        if len(shared) < 3:
            raise CannotFitError(f"{len(shared)} landmarks shared with the model, at least 3 required")

        source = np.array([input_landmarks.get(name) for name in shared])
        target = np.array([self.landmarks.get(name) for name in shared])
        try:
            total = rigid_fit(source, target, scale=scale)
        except DegenerateAlignmentError as exc:
            raise CannotFitError("shared landmarks have zero spread") from exc
        _transform_mesh(input_mesh, total)

        result = ProcrustesResult(transform=total, correspondences=len(shared))
        result.error = rmse(total.apply(source), target)
        result.errors.append(result.error)
        logger.debug("Landmark alignment on %d landmarks: rmse %.4f", len(shared), result.error)

        tree = cKDTree(self.mesh.points)
        for iteration in range(iterations):
            finite = np.all(np.isfinite(input_mesh.points), axis=1)
            points = input_mesh.points[finite]
            if len(points) == 0:
                result.error = float("inf")
                result.correspondences = 0
                break
            distances, indices = tree.query(points)
            keep = np.ones(len(points), dtype=bool) if max_distance is None else distances <= max_distance
            if np.count_nonzero(keep) < 3:
                logger.debug("Refinement round %d: %d correspondences, stopping",
                             iteration + 1, np.count_nonzero(keep))
                result.error = float("inf")
                result.correspondences = int(np.count_nonzero(keep))
                break

            matched = points[keep]
            try:
                step = rigid_fit(matched, self.mesh.points[indices[keep]], scale=scale)
            except DegenerateAlignmentError as exc:
                raise CannotFitError("matched scan points have zero spread") from exc
            _transform_mesh(input_mesh, step)
            total = step.compose(total)

            result.error = rmse(step.apply(matched), self.mesh.points[indices[keep]])
            result.errors.append(result.error)
            result.correspondences = int(matched.shape[0])
            logger.debug("Refinement round %d/%d: %d correspondences, rmse %.4f",
                         iteration + 1, iterations, result.correspondences, result.error)

        result.transform = total
        return result

    def morph_model(self, aligned_mesh: Mesh, sigmas: float = 3.0, regularization: float = 0.0,
                    max_gap: Optional[float] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Estimate model coefficients for an aligned scan and instantiate them.

        Only mask cells the scan covers contribute. Coefficients are clamped
        to ``sigmas`` standard deviations before the instance is built. A scan
        without texture keeps the mean texture.
        """
        depth = depthmap(aligned_mesh, self.layout, max_gap)
        observed = depth.flags[self._cells]
        if not np.any(observed):
            self.coverage = 0.0
            raise CannotFitError("scan covers no model cell")
        self.coverage = float(np.count_nonzero(observed)) / self.cell_count

        zcoord_params = self.pca_zcoord.project_partial(depth.values[self._cells], observed, regularization)
        zcoord_params = self.pca_zcoord.normalize_params(zcoord_params, sigmas)

        texture_params = self.pca_texture.zero_params()
        if aligned_mesh.colors is not None:
            texture = texturemap(aligned_mesh, self.layout, max_gap)
            texture_observed = texture.flags[self._cells]
            if np.any(texture_observed):
                texture_params = self.pca_texture.project_partial(
                    texture.values[self._cells], texture_observed, regularization
                )
                texture_params = self.pca_texture.normalize_params(texture_params, sigmas)

        logger.debug("Morphed model from %.1f%% of the mask", 100.0 * self.coverage)
        self.set_model_params(zcoord_params, texture_params)
        return zcoord_params, texture_params

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @classmethod
    def from_files(cls, pca_zcoord_path: PathLike, pca_texture_path: PathLike, pca_path: PathLike,
                   mask_path: PathLike, landmarks_path: PathLike,
                   layout: Optional[GridLayout] = None) -> "MorphableFaceModel":
        """Load a model from the separate files written by ``create``."""
        return cls(
            PCA.load(pca_zcoord_path),
            PCA.load(pca_texture_path),
            PCA.load(pca_path),
            MaskedGrid.load(mask_path),
            Landmarks.load(landmarks_path),
            layout,
        )

    def save(self, path: PathLike) -> None:
        """Write the whole model into one HDF5 archive."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with h5py.File(str(path), "w") as f:
            self.pca_zcoord.write_to(f.create_group("zcoord"))
            self.pca_texture.write_to(f.create_group("texture"))
            self.pca.write_to(f.create_group("combined"))
            self.mask.write_to(f.create_group("mask"))
            group = f.create_group("landmarks")
            group.create_dataset("names", data=np.array(self.landmarks.names, dtype=h5py.string_dtype()))
            group.create_dataset("points", data=self.landmarks.points)
            f.create_dataset("layout", data=self.layout.to_array())

    @classmethod
    def load(cls, path: PathLike) -> "MorphableFaceModel":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Model archive not found: {path}")
        with h5py.File(str(path), "r") as f:
            for key in ("zcoord", "texture", "combined", "mask", "landmarks", "layout"):
                if key not in f:
                    raise ValueError(f"{path}: model archive is missing '{key}'")
            names = [str(n) for n in f["landmarks"]["names"].asstr()[()]]
            landmarks = Landmarks(names, f["landmarks"]["points"][()])
            return cls(
                PCA.read_from(f["zcoord"]),
                PCA.read_from(f["texture"]),
                PCA.read_from(f["combined"]),
                MaskedGrid.read_from(f["mask"]),
                landmarks,
                GridLayout.from_array(f["layout"][()]),
            )
