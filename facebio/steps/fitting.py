"""
Model fitting step: register a scan to a trained model and morph the model
to it.
"""

from __future__ import annotations

import json
from pathlib import Path

from ..errors import CannotFitError
from ..landmarks import Landmarks
from ..main import PipelineStep, StepResult, StepStatus
from ..mesh import Mesh
from ..morphable_model import DEFAULT_ICP_MAX_DISTANCE, MorphableFaceModel


class ModelFittingStep(PipelineStep):
    """
    Writes to ``output_dir``:
    - ``<scan>_aligned.ply``: the input scan in the model frame
    - ``<scan>_fitted.ply``: the model instance fitted to the scan
    - ``<scan>_fit.json``: alignment error, coverage and coefficients
    """

    @property
    def name(self) -> str:
        return "Model Fitting"

    @property
    def description(self) -> str:
        return "Align a scan to the model and estimate its coefficients"

    def execute(self) -> StepResult:
        model_path = self.config.get("model_path")
        if not model_path:
            return StepResult(StepStatus.FAILED, "No model archive configured", error="missing model")
        input_mesh = Path(self.config["input_mesh"])
        input_landmarks = self.config.get("input_landmarks")
        output_dir = Path(self.config.get("output_dir", "outputs/fitting"))
        iterations = int(self.config.get("iterations", 10))

        if input_landmarks is None:
            return StepResult(StepStatus.FAILED, f"No landmark file given for {input_mesh}",
                              error="missing landmarks")

        model = MorphableFaceModel.load(model_path)
        mesh = Mesh.from_ply(input_mesh)
        landmarks = Landmarks.load(input_landmarks)
        self.logger.info(f"Fitting {input_mesh.name} ({mesh.vertex_count} vertices) to {model}")

        try:
            alignment = model.align(
                mesh, landmarks, iterations,
                scale=bool(self.config.get("scale", False)),
                max_distance=self.config.get("max_distance", DEFAULT_ICP_MAX_DISTANCE),
            )
            zcoord_params, texture_params = model.morph_model(
                mesh,
                sigmas=float(self.config.get("sigmas", 3.0)),
                regularization=float(self.config.get("regularization", 0.0)),
            )
        except CannotFitError as exc:
            return StepResult(StepStatus.FAILED, str(exc), error=exc.reason)

        self.logger.info(f"Alignment error {alignment.error:.3f} on {alignment.correspondences} "
                         f"correspondences, coverage {model.coverage:.1%}")

        stem = input_mesh.stem
        aligned_path = output_dir / f"{stem}_aligned.ply"
        fitted_path = output_dir / f"{stem}_fitted.ply"
        report_path = output_dir / f"{stem}_fit.json"
        mesh.write_ply(aligned_path)
        model.mesh.write_ply(fitted_path)

        report = {
            "input_mesh": str(input_mesh),
            "model": str(model_path),
            "alignment_error": alignment.error,
            "alignment_errors": alignment.errors,
            "correspondences": alignment.correspondences,
            "rotation": alignment.transform.rotation.tolist(),
            "scale": alignment.transform.scale,
            "translation": alignment.transform.translation.tolist(),
            "coverage": model.coverage,
            "zcoord_params": zcoord_params.tolist(),
            "texture_params": texture_params.tolist(),
        }
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)

        return StepResult(
            StepStatus.SUCCESS,
            f"Fitted model written to {fitted_path}",
            {
                "aligned_mesh": str(aligned_path),
                "fitted_mesh": str(fitted_path),
                "report": str(report_path),
                "alignment_error": alignment.error,
                "coverage": model.coverage,
            },
        )
