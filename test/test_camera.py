import os
import numpy as np
import pytest
import torch

from gstrain.camera import Camera
from conftest import write_png


def make_camera(path, width=32, height=24, fx=30.0, fy=30.0, cx=16.0, cy=12.0, **dist):
    coeffs = dict(k1=0.0, k2=0.0, k3=0.0, p1=0.0, p2=0.0)
    coeffs.update(dist)
    return Camera(width, height, fx, fy, cx, cy, cam_to_world=torch.eye(4), file_path=str(path), **coeffs)


class TestLoadImage:
    def test_load_sets_image_and_size(self, tmp_path):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path)

        cam.load_image()

        assert cam.image.shape == (24, 32, 3)
        assert cam.image.dtype == torch.float32
        assert 0.0 <= cam.image.min() and cam.image.max() <= 1.0
        assert (cam.width, cam.height) == (32, 24)
        assert cam.fx == pytest.approx(30.0)

    def test_second_load_raises(self, tmp_path):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path)
        cam.load_image()

        with pytest.raises(RuntimeError):
            cam.load_image()

    def test_missing_image(self, tmp_path):
        cam = make_camera(tmp_path / "missing.png")
        with pytest.raises(FileNotFoundError):
            cam.load_image()

    def test_intrinsics_rescaled_to_actual_resolution(self, tmp_path):
        # Manifest written for 64x48, file on disk is 32x24
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path, width=64, height=48, fx=60.0, fy=60.0, cx=32.0, cy=24.0)

        cam.load_image()

        assert (cam.width, cam.height) == (32, 24)
        assert cam.fx == pytest.approx(30.0)
        assert cam.cx == pytest.approx(16.0)
        assert cam.cy == pytest.approx(12.0)

    def test_unknown_size_adopts_image_size(self, tmp_path):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path, width=0, height=0)

        cam.load_image()

        assert (cam.width, cam.height) == (32, 24)
        assert cam.fx == pytest.approx(30.0)

    def test_downscale_factor(self, tmp_path):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path)

        cam.load_image(2.0)

        assert cam.image.shape == (12, 16, 3)
        assert cam.fx == pytest.approx(15.0)
        assert cam.cy == pytest.approx(6.0)

    def test_downscale_below_one_keeps_full_resolution(self, tmp_path):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path)

        cam.load_image(0.5)

        assert cam.image.shape == (24, 32, 3)
        assert (cam.width, cam.height) == (32, 24)
        assert cam.fx == pytest.approx(30.0)
        assert cam.cx == pytest.approx(16.0)

    @pytest.mark.parametrize("factor", [0.0, -2.0])
    def test_non_positive_downscale_raises(self, tmp_path, factor):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path)

        with pytest.raises(ValueError):
            cam.load_image(factor)
        assert cam.image is None

    def test_distorted_image_is_undistorted_and_cropped(self, tmp_path):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path, k1=-0.2)

        cam.load_image()

        assert cam.image.shape[0] == cam.height
        assert cam.image.shape[1] == cam.width
        assert 0 < cam.width <= 32 and 0 < cam.height <= 24


class TestGetImage:
    def test_get_image_before_load_raises(self, tmp_path):
        cam = make_camera(tmp_path / "img.png")
        with pytest.raises(RuntimeError):
            cam.get_image(1)

    def test_factor_one_returns_loaded_image(self, tmp_path):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path)
        cam.load_image()

        assert cam.get_image(1) is cam.image
        assert cam.get_image(0) is cam.image

    def test_downscaled_copies_are_cached(self, tmp_path):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path)
        cam.load_image()

        half = cam.get_image(2)
        quarter = cam.get_image(4)

        assert half.shape == (12, 16, 3)
        assert quarter.shape == (6, 8, 3)
        assert cam.get_image(2) is half
        assert set(cam.image_pyramids) == {2, 4}

    def test_downscaled_image_is_area_average(self, tmp_path):
        path = tmp_path / "img.png"
        write_png(path, 32, 24)
        cam = make_camera(path)
        cam.load_image()

        half = cam.get_image(2)
        expected = cam.image.reshape(12, 2, 16, 2, 3).mean(dim=(1, 3))
        assert torch.allclose(half, expected, atol=1.0 / 255.0 + 1e-6)
