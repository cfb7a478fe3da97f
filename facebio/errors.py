"""
Exception types raised by the facebio core.

Invariant violations, data-quality conditions and archive problems each get a
named type so callers can tell "bad call" from "bad scan" from "bad file".
"""


class FaceBioError(Exception):
    """Base class for all facebio errors."""


class DimensionMismatchError(FaceBioError, ValueError):
    """Operands or coefficient vectors do not have the expected shape."""


class EmptyGridError(FaceBioError, ValueError):
    """An aggregate was requested over a grid or vector with no valid cells."""

    def __init__(self, message: str = "no valid cells"):
        super().__init__(message)


class NonFiniteSampleError(FaceBioError, ValueError):
    """An isocurve sample contains a NaN or infinite coordinate."""

    def __init__(self, subject_id: int, curve_index: int, sample_index: int):
        self.subject_id = subject_id
        self.curve_index = curve_index
        self.sample_index = sample_index
        super().__init__(
            f"sample contains non-finite value (subject={subject_id}, "
            f"curve={curve_index}, sample={sample_index})"
        )


class DegenerateAlignmentError(FaceBioError, ValueError):
    """A point set has no spread, so no rotation or scale is defined."""


class CannotFitError(FaceBioError, RuntimeError):
    """A scan carries too little information to be fitted to the model."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"cannot fit: {reason}")


class IsoCurveFormatError(FaceBioError, ValueError):
    """An isocurve archive or its file name could not be parsed."""

    def __init__(self, path, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")
