"""
Model training step: textured scans + landmark files -> morphable model.

Every ``<name>.ply`` of the mesh directory needs a landmark file
``<name>.json`` (or ``.yml``/``.yaml``/``.xml``) in the landmark directory.
The control points are the landmarks that are finite in every training scan.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from ..landmarks import Landmarks
from ..main import PipelineStep, StepResult, StepStatus
from ..masked_grid import MaskedGrid
from ..mesh import Mesh
from ..morphable_model import create
from ..surface import GridLayout

LANDMARK_SUFFIXES = (".json", ".yml", ".yaml", ".xml")


def find_landmark_file(landmarks_dir: Path, stem: str) -> Optional[Path]:
    """Landmark file for the scan ``stem``, or None."""
    for suffix in LANDMARK_SUFFIXES:
        candidate = landmarks_dir / f"{stem}{suffix}"
        if candidate.exists():
            return candidate
    return None


def common_landmark_names(landmark_sets: List[Landmarks]) -> List[str]:
    """Names valid in every set, in the order of the first set."""
    if not landmark_sets:
        return []
    return [name for name in landmark_sets[0].names
            if all(lm.is_valid(name) for lm in landmark_sets)]


class ModelTrainingStep(PipelineStep):
    """
    Align the training scans, rasterize them on the grid layout and fit the
    depth, texture and combined PCA sub-models.
    """

    @property
    def name(self) -> str:
        return "Model Training"

    @property
    def description(self) -> str:
        return "Train a morphable face model from textured scans"

    def execute(self) -> StepResult:
        mesh_dir = Path(self.config["mesh_dir"])
        landmarks_dir = Path(self.config.get("landmarks_dir") or mesh_dir)
        model_dir = Path(self.config.get("model_dir", "outputs/model"))
        iterations = int(self.config.get("iterations", 5))
        layout = GridLayout(**self.config["layout"]) if self.config.get("layout") else GridLayout()

        if not mesh_dir.is_dir():
            return StepResult(StepStatus.FAILED, f"Mesh directory not found: {mesh_dir}",
                              error="missing mesh directory")

        mesh_files = sorted(mesh_dir.glob("*.ply"))
        meshes: List[Mesh] = []
        landmark_sets: List[Landmarks] = []
        for i, mesh_file in enumerate(mesh_files, 1):
            landmark_file = find_landmark_file(landmarks_dir, mesh_file.stem)
            if landmark_file is None:
                self.logger.warning(f"No landmarks for {mesh_file.name}, skipping")
                continue
            landmarks = Landmarks.load(landmark_file)
            if not landmarks.check():
                self.logger.warning(f"Landmarks of {mesh_file.name} failed the sanity check, skipping")
                continue
            meshes.append(Mesh.from_ply(mesh_file))
            landmark_sets.append(landmarks)
            self.logger.progress(i, len(mesh_files), "scans")

        if len(meshes) < 2:
            return StepResult(
                StepStatus.FAILED,
                f"Need at least 2 usable training scans, found {len(meshes)} in {mesh_dir}",
                error="not enough training data",
            )

        names = common_landmark_names(landmark_sets)
        if len(names) < 3:
            return StepResult(
                StepStatus.FAILED,
                f"Only {len(names)} landmarks are valid in every scan, at least 3 required",
                error="not enough control points",
            )
        control_points = [lm.points[[lm.index(n) for n in names]] for lm in landmark_sets]
        self.logger.info(f"Training on {len(meshes)} scans with control points: {', '.join(names)}")

        if self.config.get("mask"):
            map_mask = MaskedGrid.load(self.config["mask"])
        else:
            map_mask = layout.empty_grid()
            map_mask.set_all(1.0)

        paths = {
            "pca_zcoord_path": model_dir / "pca_zcoord.h5",
            "pca_texture_path": model_dir / "pca_texture.h5",
            "pca_path": model_dir / "pca.h5",
            "flags_path": model_dir / "flags.h5",
            "mean_control_points_path": model_dir / "landmarks.json",
        }
        model = create(
            meshes,
            control_points,
            iterations,
            map_mask=map_mask,
            layout=layout,
            control_point_names=names,
            scale=bool(self.config.get("scale", False)),
            max_gap=self.config.get("max_gap"),
            **paths,
        )

        model_path = model_dir / "model.h5"
        model.save(model_path)

        data = {key: str(value) for key, value in paths.items()}
        data.update({
            "model_path": str(model_path),
            "training_scans": len(meshes),
            "cells": model.cell_count,
            "zcoord_modes": model.pca_zcoord.modes,
            "texture_modes": model.pca_texture.modes,
            "combined_modes": model.pca.modes,
        })
        return StepResult(StepStatus.SUCCESS, f"Model with {model.cell_count} cells saved to {model_path}", data)
