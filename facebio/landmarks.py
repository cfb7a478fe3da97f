"""
Named 3D landmark sets.

Landmark files are either JSON (``{"names": [...], "points": [[x, y, z], ...]}``)
or OpenCV FileStorage archives (.yml/.yaml/.xml) holding a ``names`` string
(comma separated) and a ``points`` matrix.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

import cv2
import numpy as np

PathLike = Union[str, Path]

LEFT_INNER_EYE = "left_inner_eye"
RIGHT_INNER_EYE = "right_inner_eye"
NOSETIP = "nosetip"
NOSE_ROOT = "nose_root"
NOSE_BOTTOM = "nose_bottom"
LEFT_OUTER_EYE = "left_outer_eye"
RIGHT_OUTER_EYE = "right_outer_eye"
LEFT_MOUTH_CORNER = "left_mouth_corner"
RIGHT_MOUTH_CORNER = "right_mouth_corner"

REQUIRED_LANDMARKS = (LEFT_INNER_EYE, RIGHT_INNER_EYE, NOSETIP)

_FILESTORAGE_SUFFIXES = {".yml", ".yaml", ".xml"}


class Landmarks:
    """Ordered set of named anchor points."""

    def __init__(self, names: Sequence[str] = (), points: Optional[np.ndarray] = None):
        names = list(names)
        if points is None:
            points = np.full((len(names), 3), np.nan)
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(names) != len(points):
            raise ValueError(f"{len(names)} names for {len(points)} points")
        if len(set(names)) != len(names):
            raise ValueError("landmark names must be unique")
        self.names: List[str] = names
        self.points: np.ndarray = points

    @classmethod
    def from_dict(cls, mapping: Dict[str, Iterable[float]]) -> "Landmarks":
        names = list(mapping)
        return cls(names, np.array([list(mapping[n]) for n in names], dtype=np.float64))

    def __len__(self) -> int:
        return len(self.names)

    def __contains__(self, name: str) -> bool:
        return name in self.names

    def __repr__(self) -> str:
        return f"Landmarks({', '.join(self.names)})"

    def index(self, name: str) -> int:
        return self.names.index(name)

    def get(self, name: str) -> np.ndarray:
        return self.points[self.index(name)].copy()

    def set(self, name: str, point: Iterable[float]) -> None:
        point = np.asarray(list(point), dtype=np.float64)
        if name in self.names:
            self.points[self.index(name)] = point
        else:
            self.names.append(name)
            self.points = np.vstack([self.points, point.reshape(1, 3)])

    def copy(self) -> "Landmarks":
        return Landmarks(list(self.names), self.points.copy())

    def is_valid(self, name: str) -> bool:
        return name in self.names and bool(np.all(np.isfinite(self.points[self.index(name)])))

    def check(self, bound: float = 250.0) -> bool:
        """
        Sanity gate before downstream processing.

        Required landmarks must be present and finite, must not be collinear,
        and every finite landmark must lie inside [-bound, bound] on each axis.
        """
        if not all(self.is_valid(name) for name in REQUIRED_LANDMARKS):
            return False

        finite = self.points[np.all(np.isfinite(self.points), axis=1)]
        if np.any(np.abs(finite) > bound):
            return False

        a, b, c = (self.get(name) for name in REQUIRED_LANDMARKS)
        area2 = np.linalg.norm(np.cross(b - a, c - a))
        span = max(np.linalg.norm(b - a), np.linalg.norm(c - a), np.linalg.norm(c - b))
        if span == 0 or area2 <= 1e-6 * span * span:
            return False
        return True

    def transform(self, rotation: np.ndarray, scale: float = 1.0,
                  translation: Optional[np.ndarray] = None) -> None:
        """Apply p' = scale * R p + t to every point."""
        self.points = scale * (self.points @ np.asarray(rotation, dtype=np.float64).T)
        if translation is not None:
            self.points = self.points + np.asarray(translation, dtype=np.float64)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path: PathLike) -> "Landmarks":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Landmark file not found: {path}")
        if path.suffix.lower() in _FILESTORAGE_SUFFIXES:
            fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
            try:
                names_node = fs.getNode("names")
                points = fs.getNode("points").mat()
                names_str = names_node.string() if not names_node.empty() else ""
            finally:
                fs.release()
            if points is None:
                raise ValueError(f"{path}: no 'points' matrix in landmark archive")
            names = [n for n in names_str.split(",") if n]
            return cls(names, points)

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if "names" not in data or "points" not in data:
            raise ValueError(f"{path}: landmark JSON needs 'names' and 'points' keys")
        points = np.array(
            [[np.nan if v is None else v for v in p] for p in data["points"]], dtype=np.float64
        )
        return cls(data["names"], points)

    def save(self, path: PathLike) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix.lower() in _FILESTORAGE_SUFFIXES:
            fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
            try:
                fs.write("names", ",".join(self.names))
                fs.write("points", np.ascontiguousarray(self.points))
            finally:
                fs.release()
            return

        points = [[None if not np.isfinite(v) else float(v) for v in p] for p in self.points]
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"names": self.names, "points": points}, f, indent=2)


def check_directory(directory: PathLike, bound: float = 250.0) -> Dict[str, bool]:
    """Run :meth:`Landmarks.check` on every landmark file of ``directory``, keyed by file name."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Landmark directory not found: {directory}")
    results: Dict[str, bool] = {}
    for path in sorted(directory.iterdir()):
        if path.suffix.lower() in _FILESTORAGE_SUFFIXES | {".json"}:
            results[path.name] = Landmarks.load(path).check(bound)
    return results
