import numpy as np
import pytest

from facebio.mesh import Mesh


class TestMesh:

    def test_ply_round_trip(self, tmp_path, make_face):
        mesh, _ = make_face(half_size=3)
        path = tmp_path / "face.ply"
        mesh.write_ply(path)
        restored = Mesh.from_ply(path)
        assert restored.vertex_count == mesh.vertex_count
        assert np.allclose(restored.points, mesh.points, atol=1e-5)
        assert np.allclose(restored.colors, mesh.colors, atol=1e-5)
        assert np.array_equal(restored.triangles, mesh.triangles)

    def test_rgb_becomes_intensity(self, tmp_path):
        path = tmp_path / "rgb.ply"
        path.write_text(
            "ply\nformat ascii 1.0\nelement vertex 1\n"
            "property float x\nproperty float y\nproperty float z\n"
            "property uchar red\nproperty uchar green\nproperty uchar blue\n"
            "end_header\n0 0 0 100 100 100\n"
        )
        mesh = Mesh.from_ply(path)
        assert mesh.colors[0] == pytest.approx(100.0)
        assert len(mesh.triangles) == 0

    def test_binary_rejected(self, tmp_path):
        path = tmp_path / "bin.ply"
        path.write_text("ply\nformat binary_little_endian 1.0\nend_header\n")
        with pytest.raises(ValueError):
            Mesh.from_ply(path)

    def test_color_count_mismatch(self):
        with pytest.raises(ValueError):
            Mesh(np.zeros((3, 3)), np.zeros(2))

    def test_transforms(self):
        mesh = Mesh(np.array([[1.0, 0.0, 0.0]]))
        mesh.rotate(np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]]))
        mesh.scale(2.0)
        mesh.translate(np.array([0.0, 0.0, 1.0]))
        assert np.allclose(mesh.points, [[0.0, 2.0, 1.0]])
