"""
Shared fixtures: small synthetic projects on disk and a CPU rasterizer.
"""

import json
import os
import struct
import numpy as np
import plyfile
import pytest
import torch
from PIL import Image

from gstrain.input_data import SH_C0
from gstrain.model import GaussianModel


# ============================================================================
# Builders
# ============================================================================

def write_png(path, width, height, color=(128, 64, 32), seed=0):
    """Write a noisy RGB image around `color`."""
    rng = np.random.default_rng(seed)
    noise = rng.integers(-20, 20, size=(height, width, 3))
    img = np.clip(np.array(color)[None, None, :] + noise, 0, 255).astype(np.uint8)
    Image.fromarray(img).save(path)
    return img


def write_point_ply(path, xyz, rgb=None):
    fields = [('x', 'f4'), ('y', 'f4'), ('z', 'f4')]
    if rgb is not None:
        fields += [('red', 'u1'), ('green', 'u1'), ('blue', 'u1')]
    vertices = np.empty(xyz.shape[0], dtype=fields)
    vertices['x'], vertices['y'], vertices['z'] = xyz[:, 0], xyz[:, 1], xyz[:, 2]
    if rgb is not None:
        vertices['red'], vertices['green'], vertices['blue'] = rgb[:, 0], rgb[:, 1], rgb[:, 2]
    plyfile.PlyData([plyfile.PlyElement.describe(vertices, 'vertex')]).write(str(path))


def random_points(n=20, seed=0):
    rng = np.random.default_rng(seed)
    xyz = rng.uniform(-1.0, 1.0, size=(n, 3)).astype(np.float32)
    rgb = rng.integers(0, 256, size=(n, 3)).astype(np.uint8)
    return xyz, rgb


def translation_pose(position):
    pose = np.eye(4)
    pose[:3, 3] = position
    return pose


# Deliberately unsorted; loaders sort by file path
CAMERA_POSITIONS = {
    "frame_c.png": (0.0, 0.0, 4.0),
    "frame_a.png": (2.0, 0.0, 4.0),
    "frame_b.png": (0.0, 2.0, 4.0),
}


def make_nerfstudio_project(root, width=32, height=24, names=None, intrinsics=None, extra=None):
    """
    Create <root>/transforms.json, <root>/images/*.png and <root>/points.ply.

    Returns:
        (project root, original point positions)
    """
    root = str(root)
    os.makedirs(os.path.join(root, "images"), exist_ok=True)
    names = names or list(CAMERA_POSITIONS)

    frames = []
    for i, name in enumerate(names):
        write_png(os.path.join(root, "images", name), width, height, seed=i)
        frames.append({
            "file_path": f"images/{name}",
            "transform_matrix": translation_pose(CAMERA_POSITIONS.get(name, (i, 0.0, 4.0))).tolist(),
        })

    xyz, rgb = random_points()
    write_point_ply(os.path.join(root, "points.ply"), xyz, rgb)

    data = {
        "camera_model": "OPENCV",
        "w": width,
        "h": height,
        "fl_x": 30.0,
        "fl_y": 30.0,
        "cx": width / 2,
        "cy": height / 2,
        "frames": frames,
        "ply_file_path": "points.ply",
    }
    if intrinsics:
        data.update(intrinsics)
    if extra:
        data.update(extra)

    with open(os.path.join(root, "transforms.json"), "w") as f:
        json.dump(data, f)

    return root, xyz


def write_colmap_sparse(sparse_dir, images, points_xyz, points_rgb, width, height, params=(30.0, 30.0, 16.0, 12.0)):
    """
    Write cameras.bin (one PINHOLE camera), images.bin and points3D.bin.

    Args:
        images: List of (image_id, name, qvec, tvec)
    """
    os.makedirs(sparse_dir, exist_ok=True)

    with open(os.path.join(sparse_dir, "cameras.bin"), "wb") as f:
        f.write(struct.pack("<Q", 1))
        f.write(struct.pack("<IiQQ", 1, 1, width, height))
        f.write(struct.pack("<" + "d" * len(params), *params))

    with open(os.path.join(sparse_dir, "images.bin"), "wb") as f:
        f.write(struct.pack("<Q", len(images)))
        for image_id, name, qvec, tvec in images:
            f.write(struct.pack("<I", image_id))
            f.write(struct.pack("<dddd", *qvec))
            f.write(struct.pack("<ddd", *tvec))
            f.write(struct.pack("<I", 1))
            f.write(name.encode("utf-8") + b"\0")
            # Two 2D points: x, y, point3D_id
            f.write(struct.pack("<Q", 2))
            f.write(struct.pack("<ddq", 1.0, 2.0, -1))
            f.write(struct.pack("<ddq", 3.0, 4.0, 0))

    with open(os.path.join(sparse_dir, "points3D.bin"), "wb") as f:
        f.write(struct.pack("<Q", points_xyz.shape[0]))
        for i, (p, c) in enumerate(zip(points_xyz, points_rgb)):
            f.write(struct.pack("<QdddBBBd", i, float(p[0]), float(p[1]), float(p[2]),
                                int(c[0]), int(c[1]), int(c[2]), 0.5))
            # Track of one element: image_id, point2D_idx
            f.write(struct.pack("<Q", 1))
            f.write(struct.pack("<II", 1, 0))


def make_colmap_project(root, width=32, height=24):
    root = str(root)
    os.makedirs(os.path.join(root, "images"), exist_ok=True)

    images = [
        (2, "view_b.jpg", (1.0, 0.0, 0.0, 0.0), (0.0, 0.0, 4.0)),
        (1, "view_a.jpg", (1.0, 0.0, 0.0, 0.0), (1.0, 0.0, 4.0)),
        (3, "view_c.jpg", (1.0, 0.0, 0.0, 0.0), (0.0, 1.0, 4.0)),
    ]
    for i, (_, name, _, _) in enumerate(images):
        write_png(os.path.join(root, "images", name), width, height, seed=i)

    xyz, rgb = random_points()
    write_colmap_sparse(os.path.join(root, "sparse", "0"), images, xyz, rgb, width, height)
    return root, xyz


def write_constraint_ply(path, n=6, seed=0, drop_field=None, extra_element=False):
    rng = np.random.default_rng(seed)
    names = ["x", "y", "z", "f_dc_0", "f_dc_1", "f_dc_2", "opacity",
             "scale_0", "scale_1", "scale_2", "rot_0", "rot_1", "rot_2", "rot_3"]
    names = [n_ for n_ in names if n_ != drop_field]

    vertices = np.empty(n, dtype=[(name, 'f4') for name in names])
    values = {}
    for name in names:
        values[name] = rng.normal(size=n).astype(np.float32)
        vertices[name] = values[name]

    elements = [plyfile.PlyElement.describe(vertices, 'vertex')]
    if extra_element:
        faces = np.array([([0, 1, 2],)], dtype=[('vertex_indices', 'i4', (3,))])
        elements.append(plyfile.PlyElement.describe(faces, 'face'))
    plyfile.PlyData(elements).write(str(path))
    return values


# ============================================================================
# CPU rasterizer
# ============================================================================

def fake_rasterize(means, quats, scales, opacities, colors, viewmat, K, width, height, sh_degree, background=None):
    """
    Differentiable stand-in for gsplat: every pixel gets the opacity-weighted
    mean DC colour of all Gaussians. Every Gaussian is visible.
    """
    means2d = (means[:, :2] * 1.0)[None]
    if means2d.requires_grad:
        means2d.retain_grad()

    rgb_per_gaussian = colors[:, 0, :] * SH_C0 + 0.5
    weights = opacities[:, None]
    mean_color = (rgb_per_gaussian * weights).sum(dim=0) / (weights.sum() + 1e-8)

    rgb = mean_color.expand(height, width, 3) \
        + 0.0 * (means2d.sum() + scales.sum() + quats.sum())
    alpha = torch.ones(height, width)
    radii = torch.ones(means.shape[0], dtype=torch.int32)
    return rgb, alpha, {'means2d': means2d, 'radii': radii}


# ============================================================================
# Model helpers
# ============================================================================

def make_model(input_data, **overrides):
    settings = dict(
        num_cameras=len(input_data.cameras),
        num_downscales=2,
        resolution_schedule=3000,
        sh_degree=3,
        sh_degree_interval=1000,
        refine_every=100,
        warmup_length=500,
        reset_alpha_every=30,
        stop_split_at=15000,
        densify_grad_thresh=0.0002,
        densify_size_thresh=0.01,
        stop_screen_size_at=4000,
        split_screen_size=0.05,
        max_steps=1000,
        background=input_data.background_color,
        device=torch.device("cpu"),
        rasterize_fn=fake_rasterize,
    )
    settings.update(overrides)
    return GaussianModel(input_data, **settings)


def take_optimizer_step(model):
    """One optimizer step on a synthetic loss so every optimizer has state."""
    model.optimizers_zero_grad()
    loss = sum((p ** 2).sum() for p in model.params.values())
    loss.backward()
    model.optimizers_step()


def state(model, name, key="exp_avg"):
    optimizer = model.optimizers[name]
    return optimizer.state[optimizer.param_groups[0]["params"][0]][key]


# ============================================================================
# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def nerfstudio_project(tmp_path):
    root, _ = make_nerfstudio_project(tmp_path / "ns")
    return root


@pytest.fixture
def colmap_project(tmp_path):
    root, _ = make_colmap_project(tmp_path / "colmap")
    return root


@pytest.fixture
def rasterize_fn():
    return fake_rasterize
