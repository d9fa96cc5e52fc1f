import os
import pytest
import torch

from gstrain.camera import Camera
from gstrain.input_data import input_data_from_project
from gstrain.train import InfiniteRandomIterator, checkpoint_path, train, write_losses
from conftest import CAMERA_POSITIONS, fake_rasterize, make_colmap_project, make_nerfstudio_project


def run(project_root, output, **overrides):
    settings = dict(
        output=str(output),
        num_iters=10,
        device=torch.device("cpu"),
        rasterize_fn=fake_rasterize,
        log_every=5,
    )
    settings.update(overrides)
    return train(str(project_root), **settings)


class TestInfiniteRandomIterator:
    def test_each_item_once_per_pass(self):
        it = InfiniteRandomIterator(list(range(5)))
        for _ in range(4):
            assert sorted(it.next() for _ in range(5)) == [0, 1, 2, 3, 4]

    def test_seeded(self):
        a = InfiniteRandomIterator("abcdef", seed=3)
        b = InfiniteRandomIterator("abcdef", seed=3)
        assert [a.next() for _ in range(12)] == [b.next() for _ in range(12)]

    def test_empty(self):
        with pytest.raises(ValueError):
            InfiniteRandomIterator([])


def test_checkpoint_path():
    assert checkpoint_path(os.path.join("out", "splat.ply"), 100) == os.path.join("out", "splat_100.ply")
    assert checkpoint_path("scene.ply", 5) == "scene_5.ply"


def test_write_losses(tmp_path):
    path = tmp_path / "losses.txt"
    write_losses(str(path), [[1.0, 2.0, 3.0], [3.0]], num_iters=4)

    lines = path.read_text().splitlines()
    assert lines[0] == "2"
    assert lines[1].split() == ["1.0", "2.0", "3.0"]
    assert lines[2].split() == ["3.0"]
    # Averages over the cameras that reached each index; stops at index 3
    assert [float(x) for x in lines[3].split()] == [2.0, 2.0, 3.0]


class TestTrain:
    def test_outputs(self, tmp_path):
        root, _ = make_nerfstudio_project(tmp_path / "ns")
        output = tmp_path / "out" / "splat.ply"
        os.makedirs(output.parent)

        result = run(root, output, save_every=5)

        assert output.exists()
        assert (tmp_path / "out" / "splat_5.ply").exists()
        assert (tmp_path / "out" / "splat_10.ply").exists()
        assert len(result['checkpoints']) == 2
        assert sorted(os.listdir(tmp_path / "out")) == ["losses.txt", "splat.ply", "splat_10.ply", "splat_5.ply"]

    def test_losses_by_camera(self, tmp_path):
        root, _ = make_nerfstudio_project(tmp_path / "ns")
        output = tmp_path / "splat.ply"

        result = run(root, output, num_iters=9)

        # Every camera once per pass
        assert [len(x) for x in result['losses_by_camera']] == [3, 3, 3]
        lines = (tmp_path / "losses.txt").read_text().splitlines()
        assert lines[0] == "3"
        assert len(lines[4].split()) == 3
        assert result['val_loss'] is None

    def test_validation_camera_is_withheld(self, tmp_path):
        root, _ = make_nerfstudio_project(tmp_path / "ns")

        result = run(root, tmp_path / "splat.ply", validate=True, val_image="frame_b.png")

        assert len(result['losses_by_camera']) == 2
        assert [len(x) for x in result['losses_by_camera']] == [5, 5]
        assert result['val_loss'] is not None
        assert (tmp_path / "losses.txt").read_text().splitlines()[0] == "2"

    def test_validation_render_dumps(self, tmp_path):
        root, _ = make_nerfstudio_project(tmp_path / "ns")
        render_dir = tmp_path / "renders"

        result = run(root, tmp_path / "splat.ply", val_render=str(render_dir), val_every=5)

        # --val-render implies validation; 2 training cameras, dumps at 5 and 10
        assert result['val_loss'] is not None
        files = sorted(os.listdir(render_dir))
        assert files == sorted([
            "5_0.png", "5_1.png", "5_gt_0.png", "5_gt_1.png",
            "10_0.png", "10_1.png", "10_gt_0.png", "10_gt_1.png",
        ])

    def test_random_validation_camera_read_only_at_the_end(self, tmp_path, monkeypatch):
        root, _ = make_nerfstudio_project(tmp_path / "ns")
        _, expected_val = input_data_from_project(str(root)).get_cameras(True, "random", seed=42)
        val_name = os.path.basename(expected_val.file_path)

        reads = []
        get_image = Camera.get_image

        def recording_get_image(cam, downscale_factor=1):
            reads.append(os.path.basename(cam.file_path))
            return get_image(cam, downscale_factor)

        monkeypatch.setattr(Camera, "get_image", recording_get_image)

        result = run(root, tmp_path / "splat.ply", validate=True, val_image="random", num_iters=8)

        assert len(reads) == 9
        assert reads[-1] == val_name
        assert val_name not in reads[:-1]
        assert sorted(set(reads[:-1])) == sorted(set(CAMERA_POSITIONS) - {val_name})
        assert result['val_loss'] is not None

    def test_downscale_below_one_is_clamped(self, tmp_path, monkeypatch):
        root, _ = make_nerfstudio_project(tmp_path / "ns")

        factors = []
        load_image = Camera.load_image

        def recording_load_image(cam, downscale_factor=1.0):
            factors.append(downscale_factor)
            return load_image(cam, downscale_factor)

        monkeypatch.setattr(Camera, "load_image", recording_load_image)

        run(root, tmp_path / "splat.ply", downscale_factor=0.0, num_iters=2)

        assert factors == [1.0, 1.0, 1.0]

    def test_unknown_validation_image(self, tmp_path):
        root, _ = make_nerfstudio_project(tmp_path / "ns")
        with pytest.raises(ValueError):
            run(root, tmp_path / "splat.ply", validate=True, val_image="missing.png")

    def test_fixed_keeps_gaussian_count(self, tmp_path):
        root, _ = make_nerfstudio_project(tmp_path / "ns")

        result = run(root, tmp_path / "splat.ply", fixed=True, num_iters=20,
                     warmup_length=0, refine_every=5)

        assert result['num_gaussians'] == 20

    def test_colmap_project(self, tmp_path):
        root, _ = make_colmap_project(tmp_path / "colmap")

        result = run(root, tmp_path / "splat.ply", num_iters=3, ssim_weight=0.0)

        assert sum(len(x) for x in result['losses_by_camera']) == 3
        assert (tmp_path / "splat.ply").exists()

    def test_invalid_project(self, tmp_path):
        with pytest.raises(ValueError):
            run(tmp_path, tmp_path / "splat.ply")
