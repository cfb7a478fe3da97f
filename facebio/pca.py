"""
PCA sub-model: mean vector plus an orthonormal eigenbasis ordered by
descending eigenvalue.

Fitting goes through scikit-learn; the fitted basis is stored in plain arrays
so a model can be persisted (HDF5) and reloaded without scikit-learn state.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import h5py
import numpy as np
from sklearn.decomposition import PCA as SklearnPCA

from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Modes whose eigenvalue falls below this fraction of the largest are dropped.
_RELATIVE_EIGENVALUE_TOLERANCE = 1e-10


class PCA:
    """Projection/reconstruction in a linear subspace."""

    def __init__(self, mean: np.ndarray, eigenvectors: np.ndarray, eigenvalues: np.ndarray):
        self.mean = np.asarray(mean, dtype=np.float64).reshape(-1)
        self.eigenvectors = np.asarray(eigenvectors, dtype=np.float64).reshape(-1, len(self.mean))
        self.eigenvalues = np.asarray(eigenvalues, dtype=np.float64).reshape(-1)
        if len(self.eigenvalues) != len(self.eigenvectors):
            raise DimensionMismatchError(
                f"{len(self.eigenvalues)} eigenvalues for {len(self.eigenvectors)} eigenvectors"
            )

    @property
    def dim(self) -> int:
        return len(self.mean)

    @property
    def modes(self) -> int:
        return len(self.eigenvalues)

    def __repr__(self) -> str:
        return f"PCA(dim={self.dim}, modes={self.modes})"

    @classmethod
    def fit(cls, samples: np.ndarray, max_modes: Optional[int] = None) -> "PCA":
        """
        Fit a basis to ``samples`` (one sample per row).

        Zero-variance modes are discarded, so identical samples give a
        mean-only model with no modes.
        """
        samples = np.asarray(samples, dtype=np.float64)
        if samples.ndim != 2:
            raise DimensionMismatchError(f"expected (n_samples, dim) matrix, got {samples.shape}")
        n, d = samples.shape
        if n < 2:
            raise ValueError(f"PCA needs at least 2 samples, got {n}")

        model = SklearnPCA(n_components=min(n, d), svd_solver="full")
        model.fit(samples)
        eigenvalues = np.asarray(model.explained_variance_, dtype=np.float64)
        eigenvectors = np.asarray(model.components_, dtype=np.float64)

        largest = eigenvalues[0] if eigenvalues.size else 0.0
        keep = eigenvalues > _RELATIVE_EIGENVALUE_TOLERANCE * largest if largest > 0 else np.zeros_like(eigenvalues, dtype=bool)
        eigenvalues = eigenvalues[keep]
        eigenvectors = eigenvectors[keep]
        if max_modes is not None:
            eigenvalues = eigenvalues[:max_modes]
            eigenvectors = eigenvectors[:max_modes]

        logger.debug("PCA fit: %d samples, dim %d, %d modes kept", n, d, len(eigenvalues))
        return cls(model.mean_, eigenvectors, eigenvalues)

    def _check_vector(self, vector: np.ndarray) -> np.ndarray:
        vector = np.asarray(vector, dtype=np.float64).reshape(-1)
        if len(vector) != self.dim:
            raise DimensionMismatchError(f"vector of length {len(vector)}, model dimension is {self.dim}")
        return vector

    def _check_params(self, params: np.ndarray) -> np.ndarray:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if len(params) != self.modes:
            raise DimensionMismatchError(f"{len(params)} parameters, model has {self.modes} modes")
        return params

    def project(self, vector: np.ndarray) -> np.ndarray:
        """Coefficients of ``vector`` in the eigenbasis."""
        vector = self._check_vector(vector)
        return self.eigenvectors @ (vector - self.mean)

    def back_project(self, params: np.ndarray) -> np.ndarray:
        """Reconstruct a vector from coefficients."""
        params = self._check_params(params)
        return self.mean + params @ self.eigenvectors

    def project_partial(self, vector: np.ndarray, observed: np.ndarray,
                        regularization: float = 0.0) -> np.ndarray:
        """
        Coefficients estimated from the observed entries of ``vector`` only.

        Solves the least-squares problem restricted to ``observed``. A positive
        ``regularization`` adds a Tikhonov term weighted by 1/eigenvalue.
        """
        vector = self._check_vector(vector)
        observed = np.asarray(observed, dtype=bool).reshape(-1)
        if len(observed) != self.dim:
            raise DimensionMismatchError(f"mask of length {len(observed)}, model dimension is {self.dim}")
        if self.modes == 0:
            return np.zeros(0)

        basis = self.eigenvectors[:, observed].T
        residual = vector[observed] - self.mean[observed]
        if regularization > 0:
            lhs = basis.T @ basis + regularization * np.diag(1.0 / self.eigenvalues)
            return np.linalg.solve(lhs, basis.T @ residual)
        params, *_ = np.linalg.lstsq(basis, residual, rcond=None)
        return params

    def normalize_params(self, params: np.ndarray, sigmas: float = 3.0) -> np.ndarray:
        """Clamp each coefficient to +-sigmas standard deviations of its mode."""
        params = self._check_params(params)
        limit = sigmas * np.sqrt(self.eigenvalues)
        return np.clip(params, -limit, limit)

    def zero_params(self) -> np.ndarray:
        return np.zeros(self.modes)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def write_to(self, group: h5py.Group) -> None:
        group.create_dataset("mean", data=self.mean)
        group.create_dataset("eigenvectors", data=self.eigenvectors)
        group.create_dataset("eigenvalues", data=self.eigenvalues)

    @classmethod
    def read_from(cls, group: h5py.Group) -> "PCA":
        return cls(group["mean"][()], group["eigenvectors"][()], group["eigenvalues"][()])

    def save(self, path: PathLike) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with h5py.File(str(path), "w") as f:
            self.write_to(f)

    @classmethod
    def load(cls, path: PathLike) -> "PCA":
        path = Path(path)
        with h5py.File(str(path), "r") as f:
            for key in ("mean", "eigenvectors", "eigenvalues"):
                if key not in f:
                    raise ValueError(f"{path}: PCA archive is missing '{key}'")
            return cls.read_from(f)
