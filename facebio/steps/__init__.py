"""
Pipeline step implementations.
"""

from .templates import TemplateExtractionStep
from .training import ModelTrainingStep
from .fitting import ModelFittingStep

__all__ = [
    "TemplateExtractionStep",
    "ModelTrainingStep",
    "ModelFittingStep",
]
