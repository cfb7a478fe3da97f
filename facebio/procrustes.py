"""
Least-squares rigid alignment of corresponding 3D point sets.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

import numpy as np
from scipy.spatial.transform import Rotation

from .errors import DegenerateAlignmentError, DimensionMismatchError


@dataclass
class RigidTransform:
    """p' = scale * R p + translation"""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    scale: float = 1.0
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def apply(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64)
        return self.scale * (points @ self.rotation.T) + self.translation

    def compose(self, first: "RigidTransform") -> "RigidTransform":
        """Transform equivalent to applying ``first`` and then ``self``."""
        return RigidTransform(
            rotation=self.rotation @ first.rotation,
            scale=self.scale * first.scale,
            translation=self.scale * (self.rotation @ first.translation) + self.translation,
        )


@dataclass
class ProcrustesResult:
    """Outcome of an iterative alignment."""

    transform: RigidTransform = field(default_factory=RigidTransform)
    errors: List[float] = field(default_factory=list)
    error: float = float("inf")
    correspondences: int = 0


def _as_points(points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 3:
        raise DimensionMismatchError(f"expected (N, 3) points, got {points.shape}")
    return points


def centroid(points: np.ndarray) -> np.ndarray:
    return _as_points(points).mean(axis=0)


def rmse(a: np.ndarray, b: np.ndarray) -> float:
    a, b = _as_points(a), _as_points(b)
    if a.shape != b.shape:
        raise DimensionMismatchError(f"cannot compare {a.shape} with {b.shape}")
    if len(a) == 0:
        return float("inf")
    return float(np.sqrt(np.mean(np.sum((a - b) ** 2, axis=1))))


def optimal_rotation(source: np.ndarray, target: np.ndarray) -> np.ndarray:
    """
    Rotation R minimizing sum |R s_i - t_i|^2 for centered point sets.

    Always a proper rotation (det = +1).
    """
    source, target = _as_points(source), _as_points(target)
    if source.shape != target.shape:
        raise DimensionMismatchError(f"cannot align {source.shape} with {target.shape}")
    if np.linalg.norm(source) == 0 or np.linalg.norm(target) == 0:
        raise DegenerateAlignmentError("point set has zero spread")
    rotation, _ = Rotation.align_vectors(target, source)
    return rotation.as_matrix()


def optimal_scale(source: np.ndarray, target: np.ndarray) -> float:
    """Uniform scale s minimizing sum |s s_i - t_i|^2 for centered, rotated sets."""
    source, target = _as_points(source), _as_points(target)
    denominator = float(np.sum(source * source))
    if denominator == 0:
        raise DegenerateAlignmentError("point set has zero spread")
    return float(np.sum(source * target)) / denominator


def rigid_fit(source: np.ndarray, target: np.ndarray, scale: bool = False) -> RigidTransform:
    """Best rigid (optionally similarity) transform mapping ``source`` onto ``target``."""
    source, target = _as_points(source), _as_points(target)
    source_center = source.mean(axis=0)
    target_center = target.mean(axis=0)
    centered_source = source - source_center
    centered_target = target - target_center

    rotation = optimal_rotation(centered_source, centered_target)
    s = 1.0
    if scale:
        s = optimal_scale(centered_source @ rotation.T, centered_target)
    translation = target_center - s * (rotation @ source_center)
    return RigidTransform(rotation=rotation, scale=s, translation=translation)
