"""
facebio: 3D face biometrics.

Masked grids for depth/texture/curvature maps, isocurve templates and a
PCA-based morphable face model.
"""

from .errors import (
    CannotFitError,
    DegenerateAlignmentError,
    DimensionMismatchError,
    EmptyGridError,
    FaceBioError,
    IsoCurveFormatError,
    NonFiniteSampleError,
)
from .isocurves import IsoCurveTemplateExtractor, SubjectIsoCurves, Template
from .landmarks import Landmarks
from .masked_grid import MaskedGrid
from .masked_vector import MaskedVector
from .mesh import Mesh
from .morphable_model import MorphableFaceModel
from .pca import PCA
from .procrustes import ProcrustesResult, RigidTransform
from .surface import CurvatureStruct, GridLayout

__version__ = "0.1.0"

__all__ = [
    "CannotFitError",
    "CurvatureStruct",
    "DegenerateAlignmentError",
    "DimensionMismatchError",
    "EmptyGridError",
    "FaceBioError",
    "GridLayout",
    "IsoCurveFormatError",
    "IsoCurveTemplateExtractor",
    "Landmarks",
    "MaskedGrid",
    "MaskedVector",
    "Mesh",
    "MorphableFaceModel",
    "NonFiniteSampleError",
    "PCA",
    "ProcrustesResult",
    "RigidTransform",
    "SubjectIsoCurves",
    "Template",
]
