"""
Shared fixtures: synthetic face scans, landmarks and isocurves.

The synthetic face is a height field z(x, y) over a regular 1 mm grid: a
spherical cap with a Gaussian "nose" bump whose height varies per subject,
plus a texture ramp whose slope varies per subject.
"""

import numpy as np
import pytest

from facebio.isocurves import SubjectIsoCurves
from facebio.landmarks import (
    LEFT_INNER_EYE,
    LEFT_MOUTH_CORNER,
    NOSETIP,
    RIGHT_INNER_EYE,
    RIGHT_MOUTH_CORNER,
    Landmarks,
)
from facebio.mesh import Mesh
from facebio.surface import GridLayout

LANDMARK_XY = {
    LEFT_INNER_EYE: (-8.0, 8.0),
    RIGHT_INNER_EYE: (8.0, 8.0),
    NOSETIP: (0.0, 0.0),
    LEFT_MOUTH_CORNER: (-10.0, -12.0),
    RIGHT_MOUTH_CORNER: (10.0, -12.0),
}


def face_height(x, y, bump):
    return 40.0 - (x ** 2 + y ** 2) / 40.0 + bump * np.exp(-(x ** 2 + y ** 2) / 30.0)


def face_texture(x, y, slope):
    return 100.0 + slope * x + 0.5 * y


def rotation_z(degrees):
    a = np.radians(degrees)
    return np.array([[np.cos(a), -np.sin(a), 0.0], [np.sin(a), np.cos(a), 0.0], [0.0, 0.0, 1.0]])


def build_face(bump=5.0, slope=1.0, half_size=20, rotation=None, translation=None):
    """Triangulated height-field face and its landmarks."""
    coords = np.arange(-half_size, half_size + 1, dtype=np.float64)
    X, Y = np.meshgrid(coords, coords)
    x, y = X.ravel(), Y.ravel()
    points = np.column_stack([x, y, face_height(x, y, bump)])
    colors = face_texture(x, y, slope)

    n = len(coords)
    idx = np.arange(n * n).reshape(n, n)
    a, b = idx[:-1, :-1].ravel(), idx[:-1, 1:].ravel()
    c, d = idx[1:, :-1].ravel(), idx[1:, 1:].ravel()
    triangles = np.vstack([np.column_stack([a, b, c]), np.column_stack([b, d, c])])

    names = list(LANDMARK_XY)
    lm_points = np.array([[lx, ly, face_height(lx, ly, bump)] for lx, ly in LANDMARK_XY.values()])

    if rotation is not None:
        points = points @ rotation.T
        lm_points = lm_points @ rotation.T
    if translation is not None:
        points = points + translation
        lm_points = lm_points + translation

    return Mesh(points, colors, triangles), Landmarks(names, lm_points)


@pytest.fixture
def make_face():
    return build_face


@pytest.fixture
def small_layout():
    return GridLayout(-12.0, -12.0, 12.0, 12.0, 1.0)


@pytest.fixture
def training_set():
    """Three posed scans with different bump heights and texture slopes."""
    meshes, control_points = [], []
    for bump, slope, angle, shift in [
        (2.0, 0.5, 0.0, (0.0, 0.0, 0.0)),
        (4.0, 1.0, 3.0, (1.0, -1.0, 2.0)),
        (6.0, 1.5, -3.0, (-2.0, 0.5, -1.0)),
    ]:
        mesh, landmarks = build_face(bump, slope, rotation=rotation_z(angle), translation=np.array(shift))
        meshes.append(mesh)
        control_points.append(landmarks.points.copy())
    return meshes, control_points


def ring(radius, samples, z=0.0):
    t = np.linspace(0.0, 2.0 * np.pi, samples, endpoint=False)
    return np.column_stack([radius * np.cos(t), radius * np.sin(t), np.full(samples, z)])


@pytest.fixture
def isocurve_subjects():
    """Three subjects with four circular isocurves of six samples each."""
    return [
        SubjectIsoCurves(subject_id, [ring(10.0 * (c + 1) + subject_id, 6) for c in range(4)])
        for subject_id in (1, 2, 3)
    ]
