"""
Tests for morphable model training, synthesis and fitting.
"""

import numpy as np
import pytest

from facebio.errors import CannotFitError, DimensionMismatchError
from facebio.landmarks import Landmarks
from facebio.masked_grid import MaskedGrid
from facebio.mesh import Mesh
from facebio.morphable_model import MorphableFaceModel, align_training_set, create
from facebio.procrustes import rmse

from conftest import LANDMARK_XY, build_face, rotation_z


def full_mask(layout):
    mask = layout.empty_grid()
    mask.set_all(1.0)
    return mask


def model_paths(directory):
    return {
        "pca_zcoord_path": directory / "pca_zcoord.h5",
        "pca_texture_path": directory / "pca_texture.h5",
        "pca_path": directory / "pca.h5",
        "flags_path": directory / "flags.h5",
        "mean_control_points_path": directory / "landmarks.json",
    }


@pytest.fixture
def trained(tmp_path, training_set, small_layout):
    meshes, control_points = training_set
    paths = model_paths(tmp_path)
    model = create(meshes, control_points, 5, map_mask=full_mask(small_layout), layout=small_layout,
                   control_point_names=list(LANDMARK_XY), **paths)
    return model, paths


class TestTrainingAlignment:

    def test_converges_to_common_frame(self, training_set):
        meshes, control_points = training_set
        mean = align_training_set(meshes, control_points, 5)
        assert np.allclose(mean.mean(axis=0), 0.0, atol=1e-9)
        for cp in control_points:
            assert rmse(cp, mean) < 1.5

    def test_meshes_follow_control_points(self, training_set):
        meshes, control_points = training_set
        nose = list(LANDMARK_XY).index("nosetip")
        apex = [int(np.argmax(m.points[:, 2])) for m in meshes]
        align_training_set(meshes, control_points, 3)
        for mesh, cp, i in zip(meshes, control_points, apex):
            assert np.allclose(mesh.points[i], cp[nose], atol=1e-6)

    def test_count_mismatch(self, training_set):
        meshes, control_points = training_set
        with pytest.raises(ValueError):
            align_training_set(meshes, control_points[:2], 1)

    def test_too_few_control_points(self, training_set):
        meshes, control_points = training_set
        with pytest.raises(ValueError):
            align_training_set(meshes, [cp[:2] for cp in control_points], 1)

    def test_non_finite_control_points(self, training_set):
        meshes, control_points = training_set
        control_points[1][0, 0] = np.nan
        with pytest.raises(ValueError):
            align_training_set(meshes, control_points, 1)


class TestCreate:

    def test_mean_mesh_has_one_vertex_per_mask_cell(self, trained, small_layout):
        model, _ = trained
        assert model.cell_count == model.mask.valid_count()
        assert model.mesh.vertex_count == model.cell_count
        assert model.cell_count == small_layout.width * small_layout.height
        assert model.pca_zcoord.dim == model.pca_texture.dim == model.cell_count
        assert model.pca.dim == 2 * model.cell_count
        assert len(model.mesh.triangles) == 2 * (small_layout.width - 1) * (small_layout.height - 1)

    def test_outputs_are_written(self, trained):
        _, paths = trained
        for path in paths.values():
            assert path.exists()

    def test_mask_restricts_cells(self, tmp_path, training_set, small_layout):
        meshes, control_points = training_set
        mask = small_layout.empty_grid()
        mask.set(3, 4, 1.0)
        mask.set(10, 10, 1.0)
        model = create(meshes, control_points, 2, map_mask=mask, layout=small_layout, **model_paths(tmp_path))
        assert model.cell_count == 2
        assert len(model.mesh.triangles) == 0

    def test_empty_mask(self, tmp_path, training_set, small_layout):
        meshes, control_points = training_set
        with pytest.raises(ValueError):
            create(meshes, control_points, 1, map_mask=small_layout.empty_grid(), layout=small_layout,
                   **model_paths(tmp_path))

    def test_requires_texture(self, tmp_path, training_set, small_layout):
        meshes, control_points = training_set
        meshes[0] = Mesh(meshes[0].points, None, meshes[0].triangles)
        with pytest.raises(ValueError):
            create(meshes, control_points, 1, map_mask=full_mask(small_layout), layout=small_layout,
                   **model_paths(tmp_path))

    def test_mask_layout_mismatch(self, tmp_path, training_set, small_layout):
        meshes, control_points = training_set
        with pytest.raises(DimensionMismatchError):
            create(meshes, control_points, 1, map_mask=MaskedGrid(3, 3), layout=small_layout,
                   **model_paths(tmp_path))


class TestSynthesis:

    def test_mean_mesh_lies_on_cell_centers(self, trained, small_layout):
        model, _ = trained
        x, y = small_layout.map_to_mesh(0, 0)
        assert model.mesh.points[0, :2].tolist() == [x, y]
        assert np.allclose(model.mesh.points[:, 2], model.pca_zcoord.mean)
        assert np.allclose(model.mesh.colors, model.pca_texture.mean)

    def test_set_model_params(self, trained):
        model, _ = trained
        params = np.zeros(model.pca_zcoord.modes)
        params[0] = 2.0
        model.set_model_params(params, model.pca_texture.zero_params())
        expected = model.pca_zcoord.mean + 2.0 * model.pca_zcoord.eigenvectors[0]
        assert np.allclose(model.mesh.points[:, 2], expected)

    def test_set_common_params(self, trained):
        model, _ = trained
        params = np.zeros(model.pca.modes)
        params[0] = 1.0
        model.set_common_params(params)
        vector = model.pca.back_project(params)
        assert np.allclose(model.mesh.points[:, 2], vector[:model.cell_count])
        assert np.allclose(model.mesh.colors, vector[model.cell_count:])

    def test_length_mismatch(self, trained):
        model, _ = trained
        with pytest.raises(DimensionMismatchError):
            model.set_model_params(np.zeros(model.pca_zcoord.modes + 1), model.pca_texture.zero_params())
        with pytest.raises(DimensionMismatchError):
            model.set_common_params(np.zeros(model.pca.modes + 2))


class TestFitting:

    def test_align_recovers_pose(self, trained):
        model, _ = trained
        mesh, landmarks = build_face(4.0, 1.0, rotation=rotation_z(15.0), translation=np.array([30.0, -5.0, 8.0]))
        result = model.align(mesh, landmarks, 0)
        assert result.correspondences == 5
        assert result.error < 1.0
        assert np.allclose(result.transform.apply(landmarks.points), model.landmarks.points, atol=1.0)

    def test_refinement_rounds(self, trained):
        model, _ = trained
        mesh, landmarks = build_face(4.0, 1.0, rotation=rotation_z(-8.0))
        result = model.align(mesh, landmarks, 3)
        assert len(result.errors) == 4
        assert np.isfinite(result.error)
        assert result.correspondences > 100

    def test_no_correspondences_reports_infinite_error(self, trained):
        model, _ = trained
        mesh, landmarks = build_face(4.0, 1.0)
        result = model.align(mesh, landmarks, 2, max_distance=1e-9)
        assert result.error == float("inf")

    def test_too_few_landmarks(self, trained):
        model, _ = trained
        mesh, landmarks = build_face()
        partial = Landmarks(landmarks.names[:2], landmarks.points[:2])
        with pytest.raises(CannotFitError):
            model.align(mesh, partial, 1)

    def test_coincident_landmarks_cannot_fit(self, trained):
        model, _ = trained
        mesh, landmarks = build_face()
        before = mesh.points.copy()
        collapsed = Landmarks(landmarks.names, np.tile(landmarks.points[:1], (len(landmarks), 1)))
        with pytest.raises(CannotFitError) as exc_info:
            model.align(mesh, collapsed, 1)
        assert "zero spread" in exc_info.value.reason
        assert np.array_equal(mesh.points, before)

    def test_morph_recovers_model_instance(self, trained):
        model, _ = trained
        zcoord = np.sqrt(model.pca_zcoord.eigenvalues) * 0.5
        texture = -np.sqrt(model.pca_texture.eigenvalues) * 0.5
        model.set_model_params(zcoord, texture)
        scan = model.mesh.copy()

        model.set_model_params(model.pca_zcoord.zero_params(), model.pca_texture.zero_params())
        found_zcoord, found_texture = model.morph_model(scan)
        assert model.coverage > 0.9
        assert np.allclose(found_zcoord, zcoord, atol=1e-6 * max(1.0, np.abs(zcoord).max()))
        assert np.allclose(found_texture, texture, atol=1e-6 * max(1.0, np.abs(texture).max()))
        assert model.mesh.vertex_count == model.cell_count

    def test_morph_aligned_scan(self, trained):
        model, _ = trained
        mesh, landmarks = build_face(3.0, 0.8, rotation=rotation_z(5.0), translation=np.array([2.0, 1.0, 0.0]))
        model.align(mesh, landmarks, 0)
        model.morph_model(mesh)
        assert model.coverage == pytest.approx(1.0)
        assert np.all(np.isfinite(model.mesh.points))

    def test_morph_without_texture_keeps_mean_texture(self, trained):
        model, _ = trained
        scan = model.mesh.copy()
        scan.colors = None
        _, texture = model.morph_model(scan)
        assert np.array_equal(texture, model.pca_texture.zero_params())

    def test_scan_outside_model_cannot_fit(self, trained):
        model, _ = trained
        far = model.mesh.copy()
        far.translate(np.array([500.0, 0.0, 0.0]))
        with pytest.raises(CannotFitError):
            model.morph_model(far)
        assert model.coverage == 0.0

    def test_morph_does_not_touch_sub_models(self, trained):
        model, _ = trained
        mean = model.pca_zcoord.mean.copy()
        mask = model.mask.copy()
        model.morph_model(model.mesh.copy())
        assert np.array_equal(model.pca_zcoord.mean, mean)
        assert model.mask == mask


class TestPersistence:

    def test_from_files(self, trained, small_layout):
        model, paths = trained
        loaded = MorphableFaceModel.from_files(
            paths["pca_zcoord_path"], paths["pca_texture_path"], paths["pca_path"],
            paths["flags_path"], paths["mean_control_points_path"], small_layout,
        )
        assert loaded.landmarks.names == list(LANDMARK_XY)
        assert np.allclose(loaded.mesh.points, model.mesh.points)

    def test_single_archive_round_trip(self, tmp_path, trained):
        model, _ = trained
        path = tmp_path / "model.h5"
        model.save(path)
        loaded = MorphableFaceModel.load(path)
        assert loaded.layout == model.layout
        assert loaded.mask == model.mask
        assert loaded.landmarks.names == model.landmarks.names
        assert np.array_equal(loaded.pca.eigenvectors, model.pca.eigenvectors)
        assert np.array_equal(loaded.mesh.points, model.mesh.points)

    def test_inconsistent_parts(self, trained):
        model, _ = trained
        with pytest.raises(DimensionMismatchError):
            MorphableFaceModel(model.pca_zcoord, model.pca_texture, model.pca_zcoord,
                               model.mask, model.landmarks, model.layout)
