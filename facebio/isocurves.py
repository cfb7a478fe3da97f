"""
Isocurve-based template extraction.

Each subject is described by a sequence of isocurves (rings of points at
equal geodesic distance from the nose tip, computed upstream). The extractor
normalizes the sequences (curve/point subsampling, curve range selection),
validates them, and reduces every subject to a fixed-length feature vector:

- ``generate_templates``: raw coordinates, curve-major, sample-minor, x/y/z.
- ``generate_eucl_distance_templates``: one distance summary per curve.

Isocurve archive (text, ``#`` starts a comment)::

    <curve count>
    <point count of curve 0>
    x y z
    ...
    <point count of curve 1>
    ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union

import h5py
import numpy as np

from .errors import DimensionMismatchError, IsoCurveFormatError, NonFiniteSampleError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

MODE_COORDINATES = "coordinates"
MODE_DISTANCE = "distance"


@dataclass
class SubjectIsoCurves:
    """Isocurves of one scan; each curve is an (S, 3) array."""

    subject_id: int
    isocurves: List[np.ndarray] = field(default_factory=list)

    @property
    def curve_count(self) -> int:
        return len(self.isocurves)


@dataclass(frozen=True, eq=False)
class Template:
    """
    Fixed-length descriptor of one subject.

    Two templates are equal when subject id and every component match.
    """

    subject_id: int
    feature_vector: np.ndarray

    def __post_init__(self):
        vector = np.array(self.feature_vector, dtype=np.float64).reshape(-1)
        vector.setflags(write=False)
        object.__setattr__(self, "feature_vector", vector)

    def __len__(self) -> int:
        return len(self.feature_vector)

    def __eq__(self, other):
        if not isinstance(other, Template):
            return NotImplemented
        return self.subject_id == other.subject_id and np.array_equal(self.feature_vector, other.feature_vector)

    def __hash__(self):
        return hash((self.subject_id, self.feature_vector.tobytes()))


# ----------------------------------------------------------------------------
# Archive I/O
# ----------------------------------------------------------------------------

def read_isocurves(path: PathLike) -> List[np.ndarray]:
    """Parse one isocurve archive."""
    path = Path(path)
    tokens: List[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.split("#", 1)[0].strip()
            if line:
                tokens.append(line)

    def parse_count(pos: int, what: str) -> int:
        if pos >= len(tokens):
            raise IsoCurveFormatError(path, f"unexpected end of file, expected {what}")
        try:
            count = int(tokens[pos])
        except ValueError:
            raise IsoCurveFormatError(path, f"line '{tokens[pos]}' is not a valid {what}") from None
        if count < 0:
            raise IsoCurveFormatError(path, f"negative {what} {count}")
        return count

    curve_count = parse_count(0, "curve count")
    pos = 1
    curves: List[np.ndarray] = []
    for curve_index in range(curve_count):
        point_count = parse_count(pos, f"point count of curve {curve_index}")
        pos += 1
        rows = tokens[pos:pos + point_count]
        if len(rows) != point_count:
            raise IsoCurveFormatError(
                path, f"curve {curve_index} declares {point_count} points, found {len(rows)}"
            )
        try:
            points = np.array([[float(v) for v in row.split()] for row in rows], dtype=np.float64)
        except ValueError as exc:
            raise IsoCurveFormatError(path, f"curve {curve_index}: {exc}") from None
        points = points.reshape(point_count, -1) if point_count else np.zeros((0, 3))
        if points.shape[1] != 3:
            raise IsoCurveFormatError(path, f"curve {curve_index}: expected 3 coordinates per point")
        curves.append(points)
        pos += point_count

    if pos != len(tokens):
        raise IsoCurveFormatError(path, f"{len(tokens) - pos} trailing lines after {curve_count} curves")
    return curves


def write_isocurves(path: PathLike, curves: Sequence[np.ndarray]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{len(curves)}\n")
        for curve in curves:
            curve = np.asarray(curve, dtype=np.float64).reshape(-1, 3)
            f.write(f"{len(curve)}\n")
            for x, y, z in curve.tolist():
                f.write(f"{x!r} {y!r} {z!r}\n")


def read_directory(path: PathLike, separator: str = "_", file_filter: str = "*") -> List[SubjectIsoCurves]:
    """
    Load every archive in ``path`` matching ``file_filter``.

    The subject id is the part of the file's base name before the first
    ``separator``; a non-numeric id is an error.
    """
    directory = Path(path)
    if not directory.is_dir():
        raise FileNotFoundError(f"Isocurve directory not found: {directory}")

    result: List[SubjectIsoCurves] = []
    for file_path in sorted(p for p in directory.glob(file_filter) if p.is_file()):
        base_name = file_path.name.split(".", 1)[0]
        prefix = base_name.split(separator, 1)[0] if separator else base_name
        try:
            subject_id = int(prefix)
        except ValueError:
            raise IsoCurveFormatError(
                file_path, f"cannot parse subject id from '{prefix}' (expected <id>{separator}...)"
            ) from None
        result.append(SubjectIsoCurves(subject_id, read_isocurves(file_path)))

    logger.info("Loaded isocurves of %d subjects from %s", len(result), directory)
    return result


# ----------------------------------------------------------------------------
# Normalization
# ----------------------------------------------------------------------------

def _check_modulo(modulo: int) -> None:
    if modulo < 1:
        raise ValueError(f"modulo must be >= 1, got {modulo}")


def sample_iso_curves(data: List[SubjectIsoCurves], modulo: int) -> None:
    """Keep every ``modulo``-th curve of every subject."""
    _check_modulo(modulo)
    for subject in data:
        subject.isocurves = subject.isocurves[::modulo]


def sample_iso_curve_points(data: List[SubjectIsoCurves], modulo: int) -> None:
    """Keep every ``modulo``-th point of every curve."""
    _check_modulo(modulo)
    for subject in data:
        subject.isocurves = [curve[::modulo] for curve in subject.isocurves]


def select_iso_curves(data: List[SubjectIsoCurves], start: int, end: int) -> None:
    """Restrict every subject to curves ``[start, end)``."""
    for subject in data:
        if not 0 <= start <= end <= subject.curve_count:
            raise IndexError(
                f"curve range [{start}, {end}) out of bounds for subject {subject.subject_id} "
                f"with {subject.curve_count} curves"
            )
    for subject in data:
        subject.isocurves = subject.isocurves[start:end]


def check_consistency(data: Sequence[SubjectIsoCurves], equal_samples: bool = True) -> None:
    """
    Every subject must have the same curve count; with ``equal_samples``
    every curve must also have the same sample count.
    """
    if not data:
        return
    curve_count = data[0].curve_count
    sample_count = len(data[0].isocurves[0]) if curve_count else 0
    for subject in data:
        if subject.curve_count != curve_count:
            raise DimensionMismatchError(
                f"subject {subject.subject_id} has {subject.curve_count} curves, expected {curve_count}"
            )
        if not equal_samples:
            continue
        for curve_index, curve in enumerate(subject.isocurves):
            if len(curve) != sample_count:
                raise DimensionMismatchError(
                    f"subject {subject.subject_id} curve {curve_index} has {len(curve)} samples, "
                    f"expected {sample_count}"
                )


def stats(data: Sequence[SubjectIsoCurves], equal_samples: bool = True) -> List[bool]:
    """
    For each curve index, whether every subject has finite coordinates at
    every sample. Diagnostic only; the data is not modified.

    ``equal_samples`` is passed to :func:`check_consistency`.
    """
    if not data:
        raise ValueError("stats needs at least one subject")
    if data[0].curve_count == 0 or len(data[0].isocurves[0]) == 0:
        raise ValueError("stats needs non-empty curves")
    check_consistency(data, equal_samples)

    report: List[bool] = []
    for curve_index in range(data[0].curve_count):
        all_valid = all(
            bool(np.all(np.isfinite(subject.isocurves[curve_index]))) for subject in data
        )
        logger.info("curveIndex: %d all samples valid: %s", curve_index, all_valid)
        report.append(all_valid)
    return report


def _require_finite(subject: SubjectIsoCurves, curve_index: int, curve: np.ndarray) -> None:
    bad = np.flatnonzero(~np.all(np.isfinite(curve), axis=1))
    if bad.size:
        raise NonFiniteSampleError(subject.subject_id, curve_index, int(bad[0]))


# ----------------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------------

def generate_templates(data: Sequence[SubjectIsoCurves]) -> List[Template]:
    """Concatenate x, y, z of every point, curve-major and sample-minor."""
    check_consistency(data)
    templates: List[Template] = []
    for subject in data:
        for curve_index, curve in enumerate(subject.isocurves):
            _require_finite(subject, curve_index, curve)
        if subject.isocurves:
            feature_vector = np.concatenate([np.asarray(c, dtype=np.float64).reshape(-1) for c in subject.isocurves])
        else:
            feature_vector = np.zeros(0)
        templates.append(Template(subject.subject_id, feature_vector))
    return templates


def curve_to_euclidean_distance(curve: np.ndarray, center: Sequence[float] = (0.0, 0.0, 0.0)) -> float:
    """Mean Euclidean distance between the points of an isocurve and ``center``."""
    curve = np.asarray(curve, dtype=np.float64).reshape(-1, 3)
    if len(curve) == 0:
        raise ValueError("cannot summarize an empty isocurve")
    return float(np.mean(np.linalg.norm(curve - np.asarray(center, dtype=np.float64), axis=1)))


def generate_eucl_distance_templates(data: Sequence[SubjectIsoCurves]) -> List[Template]:
    """One Euclidean distance summary (relative to the origin) per curve."""
    check_consistency(data, equal_samples=False)
    templates: List[Template] = []
    for subject in data:
        feature_vector = []
        for curve_index, curve in enumerate(subject.isocurves):
            _require_finite(subject, curve_index, curve)
            feature_vector.append(curve_to_euclidean_distance(curve))
        templates.append(Template(subject.subject_id, np.array(feature_vector, dtype=np.float64)))
    return templates


def save_templates(path: PathLike, templates: Sequence[Template]) -> None:
    """Write templates as an (n, d) matrix plus subject ids."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lengths = {len(t) for t in templates}
    if len(lengths) > 1:
        raise DimensionMismatchError(f"templates have different lengths: {sorted(lengths)}")
    dim = lengths.pop() if lengths else 0
    with h5py.File(str(path), "w") as f:
        f.create_dataset("subject_ids", data=np.array([t.subject_id for t in templates], dtype=np.int64))
        f.create_dataset(
            "feature_vectors",
            data=np.array([t.feature_vector for t in templates], dtype=np.float64).reshape(len(templates), dim),
        )


def load_templates(path: PathLike) -> List[Template]:
    path = Path(path)
    with h5py.File(str(path), "r") as f:
        ids = f["subject_ids"][()]
        vectors = f["feature_vectors"][()]
    return [Template(int(i), v) for i, v in zip(ids, vectors)]


class IsoCurveTemplateExtractor:
    """
    Configured read → select → sample → validate → reduce chain.

    Args:
        separator: Separator between subject id and the rest of the file name
        file_filter: Glob selecting archive files
        curve_modulo: Keep every n-th curve
        point_modulo: Keep every n-th point of each curve
        select_range: Optional ``(start, end)`` curve range, applied before sampling
        mode: ``"coordinates"`` or ``"distance"``
    """

    def __init__(self, separator: str = "_", file_filter: str = "*",
                 curve_modulo: int = 1, point_modulo: int = 1,
                 select_range: Optional[Sequence[int]] = None,
                 mode: str = MODE_COORDINATES):
        if mode not in (MODE_COORDINATES, MODE_DISTANCE):
            raise ValueError(f"unknown template mode '{mode}'")
        _check_modulo(curve_modulo)
        _check_modulo(point_modulo)
        self.separator = separator
        self.file_filter = file_filter
        self.curve_modulo = curve_modulo
        self.point_modulo = point_modulo
        self.select_range = tuple(select_range) if select_range is not None else None
        self.mode = mode

    def prepare(self, data: List[SubjectIsoCurves]) -> List[bool]:
        """Normalize ``data`` in place and return the per-curve validity report."""
        if self.select_range is not None:
            select_iso_curves(data, *self.select_range)
        if self.curve_modulo > 1:
            sample_iso_curves(data, self.curve_modulo)
        if self.point_modulo > 1:
            sample_iso_curve_points(data, self.point_modulo)
        return stats(data, equal_samples=self.mode == MODE_COORDINATES)

    def reduce(self, data: Sequence[SubjectIsoCurves]) -> List[Template]:
        if self.mode == MODE_DISTANCE:
            return generate_eucl_distance_templates(data)
        return generate_templates(data)

    def extract(self, path: PathLike) -> List[Template]:
        data = read_directory(path, self.separator, self.file_filter)
        self.prepare(data)
        return self.reduce(data)
