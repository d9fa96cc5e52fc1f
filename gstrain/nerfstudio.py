"""
Nerfstudio project loading (transforms.json).

transforms.json layout:
    {
        "camera_model": "OPENCV",
        "fl_x": ..., "fl_y": ..., "cx": ..., "cy": ..., "w": ..., "h": ...,   (optional globals)
        "k1": ..., "k2": ..., "k3": ..., "p1": ..., "p2": ...,                 (optional globals)
        "ply_file_path": "sparse_pc.ply",                                      (optional)
        "background_color": [r, g, b],                                         (optional)
        "frames": [
            {
                "file_path": "images/frame_00001.jpg",
                "transform_matrix": [[...], [...], [...], [...]],              (camera-to-world, OpenGL)
                "fl_x": ..., ...                                               (optional per-frame overrides)
            },
            ...
        ]
    }

A per-frame intrinsic that is absent falls back to the global value. A value
that is present is used as-is, including an explicit 0.
"""

import os
import json
import numpy as np
import torch
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from gstrain.camera import Camera
from gstrain.input_data import (
    DEFAULT_BACKGROUND_COLOR, InputData, auto_scale_and_center_poses,
    load_initial_points, normalize_points
)


# JSON key -> Frame attribute
INTRINSIC_KEYS = {
    "w": "width",
    "h": "height",
    "fl_x": "fx",
    "fl_y": "fy",
    "cx": "cx",
    "cy": "cy",
    "k1": "k1",
    "k2": "k2",
    "k3": "k3",
    "p1": "p1",
    "p2": "p2",
}

REQUIRED_INTRINSICS = ("fl_x", "fl_y", "cx", "cy")


@dataclass
class Frame:
    file_path: str
    transform_matrix: np.ndarray
    width: Optional[int] = None
    height: Optional[int] = None
    fx: Optional[float] = None
    fy: Optional[float] = None
    cx: Optional[float] = None
    cy: Optional[float] = None
    k1: Optional[float] = None
    k2: Optional[float] = None
    k3: Optional[float] = None
    p1: Optional[float] = None
    p2: Optional[float] = None


@dataclass
class Transforms:
    camera_model: str
    frames: List[Frame] = field(default_factory=list)
    ply_file_path: str = ""
    background_color: Tuple[float, float, float] = DEFAULT_BACKGROUND_COLOR


def _require(data: Dict, key: str, where: str):
    if key not in data:
        raise ValueError(f"Missing required field '{key}' in {where}")
    return data[key]


def frame_from_json(data: Dict) -> Frame:
    file_path = _require(data, "file_path", "frame")
    matrix = np.asarray(_require(data, "transform_matrix", f"frame {file_path}"), dtype=np.float32)
    if matrix.shape != (4, 4):
        raise ValueError(f"transform_matrix of frame {file_path} must be 4x4, got {matrix.shape}")

    frame = Frame(file_path=file_path, transform_matrix=matrix)
    for key, attr in INTRINSIC_KEYS.items():
        if data.get(key) is not None:
            setattr(frame, attr, data[key])
    return frame


def transforms_from_json(data: Dict) -> Transforms:
    """
    Parse a transforms.json document.

    Frames are sorted by file path and per-frame intrinsics that were not
    given are filled from the globals.
    """
    t = Transforms(camera_model=_require(data, "camera_model", "transforms.json"))
    t.frames = [frame_from_json(f) for f in _require(data, "frames", "transforms.json")]
    t.ply_file_path = data.get("ply_file_path") or ""
    if data.get("background_color") is not None:
        t.background_color = tuple(float(c) for c in data["background_color"])

    for frame in t.frames:
        for key, attr in INTRINSIC_KEYS.items():
            if getattr(frame, attr) is None and data.get(key) is not None:
                setattr(frame, attr, data[key])

    t.frames.sort(key=lambda f: f.file_path)
    return t


def read_transforms(filename: str) -> Transforms:
    with open(filename, 'r') as f:
        return transforms_from_json(json.load(f))


def poses_from_transforms(t: Transforms) -> np.ndarray:
    """Stack frame transforms into [C, 4, 4]."""
    if not t.frames:
        return np.zeros((0, 4, 4), dtype=np.float32)
    return np.stack([f.transform_matrix for f in t.frames]).astype(np.float32)


def _camera_from_frame(frame: Frame, pose: np.ndarray, project_root: str) -> Camera:
    for key in REQUIRED_INTRINSICS:
        if getattr(frame, INTRINSIC_KEYS[key]) is None:
            raise ValueError(f"Missing required field '{key}' for frame {frame.file_path}")

    def opt(value, default=0.0):
        return default if value is None else value

    return Camera(
        width=opt(frame.width, 0), height=opt(frame.height, 0),
        fx=frame.fx, fy=frame.fy, cx=frame.cx, cy=frame.cy,
        k1=opt(frame.k1), k2=opt(frame.k2), k3=opt(frame.k3),
        p1=opt(frame.p1), p2=opt(frame.p2),
        cam_to_world=torch.from_numpy(pose.copy()),
        file_path=os.path.join(project_root, frame.file_path)
    )


def input_data_from_nerfstudio(project_root: str, constraint_path: str = "") -> InputData:
    """
    Load a nerfstudio project.

    Args:
        project_root: Directory containing transforms.json
        constraint_path: Optional structure constraint PLY; replaces the
                         project point cloud when given

    Returns:
        InputData with normalized poses and points
    """
    transforms_path = os.path.join(project_root, "transforms.json")
    if not os.path.exists(transforms_path):
        raise FileNotFoundError(f"{transforms_path} does not exist")

    t = read_transforms(transforms_path)
    if not t.ply_file_path and not constraint_path:
        raise ValueError("ply_file_path is empty (and no mesh input)")

    ply_path = os.path.join(project_root, t.ply_file_path) if t.ply_file_path else None
    points = load_initial_points(ply_path, constraint_path)

    poses, translation, scale = auto_scale_and_center_poses(poses_from_transforms(t))
    cameras = [_camera_from_frame(f, poses[i], project_root) for i, f in enumerate(t.frames)]

    print(f"Found {len(cameras)} cameras, {len(points)} points")

    return InputData(
        cameras=cameras,
        points=normalize_points(points, translation, scale),
        scale=scale,
        translation=translation,
        background_color=t.background_color
    )
