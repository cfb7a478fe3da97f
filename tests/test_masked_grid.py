"""
Tests for MaskedGrid.
"""

import numpy as np
import pytest

from facebio.errors import DimensionMismatchError, EmptyGridError
from facebio.masked_grid import MaskedGrid


def random_grid(seed, w=9, h=7, fill=0.6):
    rng = np.random.default_rng(seed)
    return MaskedGrid.from_arrays(rng.normal(size=(h, w)), rng.random((h, w)) < fill)


def uniform_grid(w, h, value):
    grid = MaskedGrid(w, h)
    grid.set_all(value)
    return grid


class TestCellAccess:

    def test_new_grid_is_empty(self):
        grid = MaskedGrid(3, 2)
        assert grid.valid_count() == 0
        assert grid.shape == (2, 3)

    def test_set_and_unset_touch_only_target_cell(self):
        grid = MaskedGrid(3, 2)
        grid.set(2, 1, 4.5)
        assert grid.is_set(2, 1)
        assert grid.get(2, 1) == 4.5
        assert grid.flags[1 * 3 + 2]
        assert grid.valid_count() == 1
        grid.unset(2, 1)
        assert grid.valid_count() == 0

    def test_out_of_range_coordinate(self):
        grid = MaskedGrid(3, 2)
        with pytest.raises(IndexError):
            grid.set(3, 0, 1.0)

    def test_set_all_and_unset_all(self):
        grid = MaskedGrid(4, 4)
        grid.set_all(2.0)
        assert grid.valid_count() == 16
        grid.unset_all()
        assert grid.valid_count() == 0

    def test_used_values_row_major(self):
        grid = MaskedGrid(2, 2)
        grid.set(1, 1, 4.0)
        grid.set(0, 0, 1.0)
        assert grid.used_values().tolist() == [1.0, 4.0]

    def test_equality_ignores_invalid_values(self):
        a = MaskedGrid(2, 2)
        b = MaskedGrid(2, 2)
        a.values[0] = 10.0
        assert a == b
        a.set(1, 1, 3.0)
        assert a != b


class TestPointwise:

    def test_level_select_only_invalidates(self):
        grid = MaskedGrid(3, 1)
        grid.set(0, 0, 1.0)
        grid.set(1, 0, 5.0)
        grid.values[2] = 10.0
        grid.level_select(2.0)
        assert not grid.is_set(0, 0)
        assert grid.is_set(1, 0)
        assert not grid.is_set(2, 0)

    def test_linear_scale_leaves_invalid_cells(self):
        grid = MaskedGrid(2, 1)
        grid.set(0, 0, 2.0)
        grid.values[1] = 7.0
        grid.linear_scale(3.0, 1.0)
        assert grid.get(0, 0) == 7.0
        assert grid.values[1] == 7.0

    def test_add_intersects_validity(self):
        a = MaskedGrid(2, 1)
        b = MaskedGrid(2, 1)
        a.set(0, 0, 1.0)
        a.set(1, 0, 2.0)
        b.set(0, 0, 10.0)
        a.add(b)
        assert a.get(0, 0) == 11.0
        assert not a.is_set(1, 0)

    def test_add_dimension_mismatch(self):
        with pytest.raises(DimensionMismatchError):
            MaskedGrid(2, 2).add(MaskedGrid(3, 2))

    def test_uniform_min_max(self):
        grid = uniform_grid(4, 4, 5.0)
        assert grid.min_value() == 5.0
        assert grid.max_value() == 5.0

    def test_empty_aggregates_are_explicit(self):
        grid = MaskedGrid(3, 3)
        with pytest.raises(EmptyGridError):
            grid.min_value()
        with pytest.raises(EmptyGridError):
            grid.max_value()
        assert grid.max_index() is None

    def test_max_index(self):
        grid = MaskedGrid(3, 2)
        grid.set(0, 0, 1.0)
        grid.set(2, 1, 9.0)
        grid.values[1] = 100.0
        assert grid.max_index() == 5


class TestErode:

    @pytest.mark.parametrize("seed", range(5))
    @pytest.mark.parametrize("kernel_size", [3, 5])
    def test_result_is_subset(self, seed, kernel_size):
        grid = random_grid(seed)
        before = grid.flags.copy()
        grid.erode(kernel_size)
        assert not np.any(grid.flags & ~before)

    def test_single_hole_removes_neighborhood(self):
        grid = uniform_grid(5, 5, 1.0)
        grid.unset(2, 2)
        grid.erode(3)
        flags = grid.flags2d()
        assert not flags[1:4, 1:4].any()
        assert flags[0, 0] and flags[4, 4]

    def test_border_is_clipped_not_invalid(self):
        grid = uniform_grid(4, 4, 1.0)
        grid.erode(3)
        assert grid.valid_count() == 16

    def test_even_kernel_rejected(self):
        with pytest.raises(ValueError):
            MaskedGrid(3, 3).erode(4)


class TestDensityMap:

    @pytest.mark.parametrize("seed", range(5))
    @pytest.mark.parametrize("kernel_size", [3, 5, 7])
    def test_values_in_unit_interval(self, seed, kernel_size):
        density = random_grid(seed).density_map(kernel_size)
        assert density.valid_count() == density.w * density.h
        assert density.values.min() >= 0.0
        assert density.values.max() <= 1.0

    def test_full_grid_interior_is_one(self):
        density = uniform_grid(5, 5, 1.0).density_map(3)
        assert density.get(2, 2) == 1.0
        assert density.get(0, 0) == pytest.approx(4.0 / 9.0)

    def test_from_center_attenuates(self):
        density = uniform_grid(5, 5, 1.0).density_map(3, from_center=True)
        assert density.get(2, 2) == 1.0
        assert density.get(0, 0) == pytest.approx(0.0)
        assert density.get(1, 2) == pytest.approx(1.0 - 1.0 / np.hypot(2, 2))


class TestProfiles:

    def test_horizontal_and_vertical(self):
        grid = MaskedGrid(3, 2)
        grid.set(1, 0, 2.0)
        grid.set(1, 1, 3.0)
        row = grid.horizontal_profile(0)
        assert row.flag_count() == 1 and row.get(1) == 2.0
        col = grid.vertical_profile(1)
        assert col.used_values().tolist() == [2.0, 3.0]

    def test_row_aggregates_keep_empty_rows_invalid(self):
        grid = MaskedGrid(3, 3)
        grid.set(0, 0, 1.0)
        grid.set(1, 0, 2.0)
        grid.set(2, 0, 6.0)
        grid.set(0, 2, 4.0)
        mean = grid.mean_vertical_profile()
        assert mean.get(0) == pytest.approx(3.0)
        assert not mean.is_set(1)
        assert grid.max_vertical_profile().get(0) == 6.0
        assert grid.median_vertical_profile().get(0) == 2.0
        assert grid.median_vertical_profile().get(2) == 4.0

    def test_horizontal_point_density(self):
        grid = MaskedGrid(2, 5)
        grid.set(0, 0, 1.0)
        grid.set(0, 2, 1.0)
        grid.set(1, 4, 1.0)
        density = grid.horizontal_point_density(1, 1)
        assert density.flag_count() == 2
        assert density.to_array().tolist() == [2.0, 0.0]


class TestMatrix:

    def test_uniform_grid_maps_to_zeros(self):
        matrix = uniform_grid(4, 4, 5.0).to_matrix(void_value=-1, min_value=0, max_value=0)
        assert matrix.shape == (4, 4)
        assert np.all(matrix == 0.0)

    def test_void_value_and_normalization(self):
        grid = MaskedGrid(2, 2)
        grid.set(0, 0, 10.0)
        grid.set(1, 1, 20.0)
        matrix = grid.to_matrix(void_value=-1)
        assert matrix.tolist() == [[0.0, -1.0], [-1.0, 1.0]]

    def test_explicit_range(self):
        grid = MaskedGrid(1, 1)
        grid.set(0, 0, 5.0)
        assert grid.to_matrix(min_value=0.0, max_value=10.0)[0, 0] == 0.5

    def test_empty_grid_is_all_void(self):
        assert np.all(MaskedGrid(2, 3).to_matrix(void_value=7.0) == 7.0)

    def test_from_matrix(self):
        grid = MaskedGrid.from_matrix(np.array([[0.0, 2.0], [3.0, 0.0]]))
        assert grid.valid_count() == 2
        assert grid.get(1, 0) == 2.0

    def test_from_matrix_nan_void(self):
        grid = MaskedGrid.from_matrix(np.array([[np.nan, 0.0]]), void_value=np.nan)
        assert not grid.is_set(0, 0)
        assert grid.is_set(1, 0)


class TestCrop:

    @pytest.mark.parametrize("seed", range(5))
    def test_cropped_border_rows_and_columns_are_used(self, seed):
        grid = random_grid(seed, w=12, h=10, fill=0.2)
        cropped = grid.crop()
        flags = cropped.flags2d()
        assert flags[0].any() and flags[-1].any()
        assert flags[:, 0].any() and flags[:, -1].any()
        assert cropped.valid_count() == grid.valid_count()

    def test_crop_params_are_inclusive(self):
        grid = MaskedGrid(6, 6)
        grid.set(1, 2, 1.0)
        grid.set(3, 4, 1.0)
        assert grid.get_crop_params() == (1, 3, 2, 3)

    def test_empty_grid_cannot_crop(self):
        with pytest.raises(EmptyGridError):
            MaskedGrid(3, 3).get_crop_params()

    def test_single_row_is_degenerate(self):
        grid = MaskedGrid(4, 4)
        grid.set(0, 1, 1.0)
        grid.set(3, 1, 1.0)
        with pytest.raises(ValueError):
            grid.get_crop_params()

    def test_sub_map_outside_source_is_invalid(self):
        grid = uniform_grid(2, 2, 1.0)
        sub = grid.sub_map(1, 3, 1, 3)
        assert sub.valid_count() == 1
        assert sub.is_set(0, 0)


class TestApplyFilter:

    def test_check_sum_compensates_missing_neighbors(self):
        grid = uniform_grid(5, 5, 3.0)
        grid.unset(2, 2)
        grid.apply_filter(np.ones((3, 3)), times=2, check_sum=True)
        assert np.allclose(grid.used_values(), 3.0)

    def test_only_valid_cells_change(self):
        grid = MaskedGrid(3, 1)
        grid.set(0, 0, 1.0)
        grid.set(1, 0, 2.0)
        grid.values[2] = 50.0
        grid.apply_filter(np.array([[1.0, 1.0, 1.0]]))
        assert grid.get(0, 0) == 3.0
        assert grid.get(1, 0) == 3.0
        assert grid.values[2] == 50.0

    def test_correlation_orientation(self):
        grid = MaskedGrid(3, 1)
        grid.set(0, 0, 1.0)
        grid.set(1, 0, 10.0)
        grid.set(2, 0, 100.0)
        grid.apply_filter(np.array([[0.0, 0.0, 1.0]]))
        assert grid.get(1, 0) == 100.0

    def test_even_kernel_rejected(self):
        with pytest.raises(ValueError):
            uniform_grid(3, 3, 1.0).apply_filter(np.ones((2, 2)))


class TestSerialization:

    @pytest.mark.parametrize("seed", range(3))
    def test_round_trip(self, tmp_path, seed):
        grid = random_grid(seed)
        path = tmp_path / "grid.h5"
        grid.serialize(path)
        restored = MaskedGrid.load(path)
        assert restored == grid
        assert np.array_equal(restored.flags, grid.flags)
        assert np.array_equal(restored.values, grid.values)

    def test_valid_nan_cell_round_trip(self, tmp_path):
        grid = uniform_grid(3, 2, 1.0)
        grid.set(1, 1, np.nan)
        assert grid == grid.copy()
        grid.serialize(tmp_path / "nan.h5")
        assert MaskedGrid.load(tmp_path / "nan.h5") == grid

    def test_missing_key(self, tmp_path):
        import h5py

        path = tmp_path / "broken.h5"
        with h5py.File(path, "w") as f:
            f.create_dataset("w", data=2)
        with pytest.raises(ValueError):
            MaskedGrid.load(path)
