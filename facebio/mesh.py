"""
Triangle mesh value type and a minimal ASCII PLY reader/writer.

Meshes carry an optional scalar texture (intensity) per vertex; the
morphable model uses it for the texture sub-model.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

import numpy as np

PathLike = Union[str, Path]


@dataclass
class Mesh:
    """Vertices (N, 3), optional per-vertex intensity (N,), triangles (F, 3)."""

    points: np.ndarray
    colors: Optional[np.ndarray] = None
    triangles: np.ndarray = field(default_factory=lambda: np.zeros((0, 3), dtype=np.int64))

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        if self.colors is not None:
            self.colors = np.asarray(self.colors, dtype=np.float64).reshape(-1)
            if len(self.colors) != len(self.points):
                raise ValueError(
                    f"{len(self.colors)} colors for {len(self.points)} vertices"
                )
        self.triangles = np.asarray(self.triangles, dtype=np.int64).reshape(-1, 3)

    @property
    def vertex_count(self) -> int:
        return len(self.points)

    def copy(self) -> "Mesh":
        return Mesh(
            self.points.copy(),
            None if self.colors is None else self.colors.copy(),
            self.triangles.copy(),
        )

    def centroid(self) -> np.ndarray:
        return self.points.mean(axis=0)

    def translate(self, offset: np.ndarray) -> None:
        self.points = self.points + np.asarray(offset, dtype=np.float64)

    def rotate(self, rotation: np.ndarray) -> None:
        """Apply a 3x3 rotation matrix to every vertex (p' = R p)."""
        self.points = self.points @ np.asarray(rotation, dtype=np.float64).T

    def scale(self, factor: float) -> None:
        self.points = self.points * factor

    # ------------------------------------------------------------------
    # PLY I/O
    # ------------------------------------------------------------------

    @classmethod
    def from_ply(cls, filepath: PathLike) -> "Mesh":
        """Load an ASCII PLY file (x y z, optional intensity or red/green/blue, triangle faces)."""
        filepath = Path(filepath)
        lines = filepath.read_text(encoding="utf-8", errors="ignore").splitlines()
        if not lines or lines[0].strip() != "ply":
            raise ValueError(f"{filepath}: not a PLY file")

        num_vertices = 0
        num_faces = 0
        header_end = 0
        properties: List[str] = []
        current_element = None
        for i, line in enumerate(lines):
            parts = line.split()
            if not parts:
                continue
            if parts[0] == "format" and parts[1] != "ascii":
                raise ValueError(f"{filepath}: only ASCII PLY is supported, got {parts[1]}")
            if parts[0] == "element":
                current_element = parts[1]
                if current_element == "vertex":
                    num_vertices = int(parts[2])
                elif current_element == "face":
                    num_faces = int(parts[2])
            elif parts[0] == "property" and current_element == "vertex":
                properties.append(parts[-1])
            elif parts[0] == "end_header":
                header_end = i + 1
                break
        else:
            raise ValueError(f"{filepath}: missing end_header")

        body = lines[header_end:]
        if len(body) < num_vertices + num_faces:
            raise ValueError(
                f"{filepath}: expected {num_vertices} vertices and {num_faces} faces, "
                f"found {len(body)} data lines"
            )

        table = np.array(
            [[float(v) for v in line.split()[:len(properties)]] for line in body[:num_vertices]],
            dtype=np.float64,
        ).reshape(num_vertices, len(properties))
        column = {name: idx for idx, name in enumerate(properties)}
        points = table[:, [column["x"], column["y"], column["z"]]]

        colors = None
        if "intensity" in column:
            colors = table[:, column["intensity"]]
        elif all(c in column for c in ("red", "green", "blue")):
            rgb = table[:, [column["red"], column["green"], column["blue"]]]
            colors = rgb @ np.array([0.299, 0.587, 0.114])

        faces = []
        for line in body[num_vertices:num_vertices + num_faces]:
            parts = line.split()
            if len(parts) >= 4 and parts[0] == "3":
                faces.append([int(parts[1]), int(parts[2]), int(parts[3])])

        return cls(points, colors, np.array(faces, dtype=np.int64).reshape(-1, 3))

    def write_ply(self, filepath: PathLike) -> None:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, "w", encoding="utf-8") as f:
            f.write("ply\n")
            f.write("format ascii 1.0\n")
            f.write(f"element vertex {len(self.points)}\n")
            f.write("property float x\nproperty float y\nproperty float z\n")
            if self.colors is not None:
                f.write("property float intensity\n")
            f.write(f"element face {len(self.triangles)}\n")
            f.write("property list uchar int vertex_indices\n")
            f.write("end_header\n")
            for i, p in enumerate(self.points):
                if self.colors is not None:
                    f.write(f"{p[0]:.6f} {p[1]:.6f} {p[2]:.6f} {self.colors[i]:.6f}\n")
                else:
                    f.write(f"{p[0]:.6f} {p[1]:.6f} {p[2]:.6f}\n")
            for t in self.triangles:
                f.write(f"3 {t[0]} {t[1]} {t[2]}\n")
