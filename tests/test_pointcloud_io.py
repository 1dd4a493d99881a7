from pathlib import Path

import numpy as np
import pytest

from kissloop import pointcloud_io as io


@pytest.fixture
def cloud():
    return np.array([[1.0, 2.0, 3.0], [-4.5, 0.25, 8.0], [0.0, -1.0, 2.5]])


def test_read_bin_returns_xyz(tmp_path, cloud):
    records = np.hstack([cloud, np.ones((3, 1))]).astype("<f4")
    path = tmp_path / "scan.bin"
    path.write_bytes(records.tobytes())
    assert np.allclose(io.read_bin(path), cloud)


def test_read_bin_ignores_trailing_partial_record(tmp_path, cloud):
    records = np.hstack([cloud, np.ones((3, 1))]).astype("<f4")
    path = tmp_path / "scan.bin"
    path.write_bytes(records.tobytes() + b"\x00\x01\x02")
    assert io.read_bin(path).shape == (3, 3)


def test_read_bin_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        io.read_bin(tmp_path / "missing.bin")


def test_pcd_ascii_round_trip(tmp_path, cloud):
    path = tmp_path / "cloud.pcd"
    io.write_pcd_ascii(path, cloud)
    text = path.read_text()
    assert text.startswith("# .PCD v0.7 - Point Cloud Data file format\nVERSION 0.7\n")
    assert "FIELDS x y z\n" in text
    assert "DATA ascii\n" in text
    assert np.allclose(io.read_pcd(path), cloud)


def test_pcd_ascii_with_intensity(tmp_path, cloud):
    path = tmp_path / "cloud.pcd"
    io.write_pcd_ascii(path, np.hstack([cloud, np.full((3, 1), 5.0)]))
    assert "FIELDS x y z intensity\n" in path.read_text()
    assert np.allclose(io.read_pcd(path), cloud)


def test_write_pcd_rejects_bad_columns(tmp_path):
    with pytest.raises(ValueError):
        io.write_pcd_ascii(tmp_path / "bad.pcd", np.zeros((2, 5)))


def test_read_binary_pcd(tmp_path, cloud):
    header = (
        "VERSION 0.7\nFIELDS x y z intensity\nSIZE 4 4 4 4\nTYPE F F F F\n"
        "COUNT 1 1 1 1\nWIDTH 3\nHEIGHT 1\nVIEWPOINT 0 0 0 1 0 0 0\nPOINTS 3\nDATA binary\n"
    ).encode()
    records = np.hstack([cloud, np.zeros((3, 1))]).astype("<f4")
    path = tmp_path / "cloud.pcd"
    path.write_bytes(header + records.tobytes())
    assert np.allclose(io.read_pcd(path), cloud)


def test_read_compressed_pcd_is_rejected(tmp_path):
    path = tmp_path / "cloud.pcd"
    path.write_bytes(b"FIELDS x y z\nSIZE 4 4 4\nTYPE F F F\nPOINTS 0\nDATA binary_compressed\n")
    with pytest.raises(ValueError):
        io.read_pcd(path)


def test_read_ascii_ply(tmp_path, cloud):
    lines = ["ply", "format ascii 1.0", "element vertex 3", "property float x",
             "property float y", "property float z", "property uchar red", "end_header"]
    lines += [f"{x} {y} {z} 7" for x, y, z in cloud]
    path = tmp_path / "cloud.ply"
    path.write_text("\n".join(lines) + "\n")
    assert np.allclose(io.read_ply(path), cloud)


def test_read_binary_ply(tmp_path, cloud):
    header = (
        "ply\nformat binary_little_endian 1.0\nelement vertex 3\n"
        "property float x\nproperty float y\nproperty float z\nend_header\n"
    ).encode()
    path = tmp_path / "cloud.ply"
    path.write_bytes(header + cloud.astype("<f4").tobytes())
    assert np.allclose(io.read_ply(path), cloud)


def test_load_point_cloud_dispatches_by_extension(tmp_path, cloud):
    path = tmp_path / "cloud.pcd"
    io.write_pcd_ascii(path, cloud)
    assert np.allclose(io.load_point_cloud(path), cloud)


def test_load_point_cloud_unsupported_extension(tmp_path):
    path = tmp_path / "cloud.xyz"
    path.write_text("1 2 3\n")
    with pytest.raises(ValueError, match="Unsupported file format: .xyz"):
        io.load_point_cloud(path)


def test_colorize(cloud):
    colored = io.colorize(cloud, (195, 195, 195))
    assert colored.shape == (3, 6)
    assert np.allclose(colored[:, :3], cloud)
    assert (colored[:, 3:] == 195).all()


def test_colorize_rejects_bad_color(cloud):
    with pytest.raises(ValueError):
        io.colorize(cloud, (300, 0, 0))


def test_warped_output_path():
    assert io.warped_output_path("/data/scans/000123.pcd") == Path("/data/scans/000123_warped.pcd")


def test_augmentation_rotation_identity_and_orthonormal():
    assert np.allclose(io.augmentation_rotation(0.0, 0.0), np.eye(4))
    transform = io.augmentation_rotation(37.0, -12.0)
    rotation = transform[:3, :3]
    assert np.allclose(rotation @ rotation.T, np.eye(3))
    assert np.linalg.det(rotation) == pytest.approx(1.0)
    assert np.allclose(transform[:3, 3], 0.0)


def test_augmentation_yaw_rotates_x_into_y():
    transform = io.augmentation_rotation(90.0, 0.0)
    assert np.allclose(transform @ np.array([1.0, 0.0, 0.0, 1.0]), [0.0, 1.0, 0.0, 1.0])