"""
Template extraction step: isocurve archives -> biometric templates.
"""

from __future__ import annotations

from pathlib import Path

from ..isocurves import IsoCurveTemplateExtractor, read_directory, save_templates
from ..main import PipelineStep, StepResult, StepStatus


class TemplateExtractionStep(PipelineStep):
    """
    Read every isocurve archive of a directory, normalize the curves and
    write one template per subject to ``<output_dir>/templates.h5``.
    """

    @property
    def name(self) -> str:
        return "Template Extraction"

    @property
    def description(self) -> str:
        return "Build isocurve templates for every subject"

    def execute(self) -> StepResult:
        isocurve_dir = Path(self.config["isocurve_dir"])
        output_dir = Path(self.config.get("output_dir", "outputs/templates"))
        select_range = self.config.get("select_range")

        extractor = IsoCurveTemplateExtractor(
            separator=self.config.get("separator", "_"),
            file_filter=self.config.get("file_filter", "*"),
            curve_modulo=int(self.config.get("curve_modulo", 1)),
            point_modulo=int(self.config.get("point_modulo", 1)),
            select_range=select_range,
            mode=self.config.get("mode", "coordinates"),
        )

        data = read_directory(isocurve_dir, extractor.separator, extractor.file_filter)
        if not data:
            return StepResult(
                StepStatus.FAILED,
                f"No isocurve archives matching '{extractor.file_filter}' in {isocurve_dir}",
                error="no input files",
            )
        self.logger.info(f"Loaded {len(data)} subjects from {isocurve_dir}")

        curve_validity = extractor.prepare(data)
        invalid_curves = [i for i, valid in enumerate(curve_validity) if not valid]
        if invalid_curves:
            self.logger.warning(f"Curves with non-finite samples: {invalid_curves}")

        templates = extractor.reduce(data)
        output_path = output_dir / "templates.h5"
        save_templates(output_path, templates)

        length = len(templates[0]) if templates else 0
        return StepResult(
            StepStatus.SUCCESS,
            f"{len(templates)} templates of length {length} written to {output_path}",
            {
                "templates_path": str(output_path),
                "subjects": len(templates),
                "template_length": length,
                "curve_validity": curve_validity,
                "mode": extractor.mode,
            },
        )
