"""
Canonical scene input for training.

Every supported project layout is converted into an InputData:
- cameras sorted by image path, with camera-to-world poses normalized so that
  all camera centers lie in [-1, 1]
- the initial point set, transformed with the same translation / scale
- the translation and scale themselves, so trained scenes can be written back
  in the original coordinate frame
- the background colour to render against

Supported layouts (detected from the directory contents):
    NERFSTUDIO: <root>/transforms.json
    COLMAP:     <root>/sparse/ or <root>/cameras.bin
"""

import os
import random
import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from gstrain.camera import Camera
from gstrain.point_io import PointSet, StructureConstraint, read_point_set, load_structure_constraint


DEFAULT_BACKGROUND_COLOR = (0.6130, 0.0101, 0.3984)

# SH(0) constant
SH_C0 = 0.28209479177387814


@dataclass
class InputData:
    """
    Scene input shared by all project formats.

    Attributes:
        cameras: Cameras sorted by file path, idx assigned in that order
        points: Initial points in the normalized frame
        scale: Uniform scale from the original to the normalized frame
        translation: [3] translation (original frame) removed before scaling
        background_color: RGB in [0, 1]

    Invariant:
        points.xyz == (original_xyz - translation) * scale
    """
    cameras: List[Camera]
    points: PointSet
    scale: float
    translation: np.ndarray
    background_color: Tuple[float, float, float] = DEFAULT_BACKGROUND_COLOR

    def get_cameras(
        self,
        validate: bool,
        val_image: str = "random",
        seed: int = 42
    ) -> Tuple[List[Camera], Optional[Camera]]:
        """
        Split cameras into training cameras and an optional validation camera.

        Args:
            validate: Whether to withhold a camera
            val_image: "random" for a seeded random pick, otherwise the file
                       name (basename) of the image to withhold
            seed: Seed for the random pick

        Returns:
            (training cameras, validation camera or None)

        Raises:
            ValueError: If val_image does not name any camera image
        """
        if not validate:
            return list(self.cameras), None

        if val_image == "random":
            val_idx = random.Random(seed).randrange(len(self.cameras))
        else:
            names = [os.path.basename(cam.file_path) for cam in self.cameras]
            if val_image not in names:
                raise ValueError(f"{val_image} not in the list of cameras")
            val_idx = names.index(val_image)

        cams = [cam for i, cam in enumerate(self.cameras) if i != val_idx]
        return cams, self.cameras[val_idx]


def auto_scale_and_center_poses(poses: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Center camera positions at the origin and scale them into [-1, 1].

    translation = mean camera position
    scale = 1 / max(|centered coordinate|)

    Args:
        poses: Camera-to-world transforms [C, 4, 4]

    Returns:
        (normalized poses [C, 4, 4], translation [3], scale)
    """
    poses = np.asarray(poses, dtype=np.float32)
    if poses.shape[0] == 0:
        raise ValueError("No camera poses found in project")

    origins = poses[:, :3, 3]
    translation = origins.mean(axis=0)
    centered = origins - translation

    # A single camera (or coincident cameras) gives no extent to normalize by
    max_extent = float(np.abs(centered).max())
    scale = 1.0 / max_extent if max_extent > 0.0 else 1.0

    normalized = poses.copy()
    normalized[:, :3, 3] = centered * scale
    return normalized, translation.astype(np.float32), scale


def point_set_from_constraint(constraint: StructureConstraint) -> PointSet:
    """Point set whose positions and preview colours come from a structure constraint."""
    rgb = np.clip((constraint.features_dc * SH_C0 + 0.5) * 255.0, 0, 255).astype(np.uint8)
    return PointSet(xyz=constraint.means.copy(), rgb=rgb, constraint=constraint)


def load_initial_points(ply_path: Optional[str], constraint_path: str = "") -> PointSet:
    """
    Read the points that seed the Gaussians.

    Args:
        ply_path: Point cloud referenced by the project (may be None/empty
                  when a structure constraint is given)
        constraint_path: Structure constraint file, "" if none

    Raises:
        ValueError: If the constraint file is invalid, or if neither a point
                    cloud nor a constraint is available
    """
    if constraint_path:
        constraint = load_structure_constraint(constraint_path)
        if constraint is None:
            raise ValueError(f"Invalid mesh gaussians file: {constraint_path}")
        return point_set_from_constraint(constraint)

    if not ply_path:
        raise ValueError("Point cloud file path is empty (and no mesh input)")
    return read_point_set(ply_path)


def normalize_points(points: PointSet, translation: np.ndarray, scale: float) -> PointSet:
    """Apply (xyz - translation) * scale to a point set."""
    xyz = ((points.xyz - translation) * scale).astype(np.float32)
    return PointSet(xyz=xyz, rgb=points.rgb, constraint=points.constraint)


class ProjectFormat(Enum):
    """Project layouts that can be turned into InputData."""
    NERFSTUDIO = "nerfstudio"
    COLMAP = "colmap"

    def load(self, project_root: str, constraint_path: str = "") -> InputData:
        if self is ProjectFormat.NERFSTUDIO:
            from gstrain.nerfstudio import input_data_from_nerfstudio
            return input_data_from_nerfstudio(project_root, constraint_path)

        from gstrain.colmap import input_data_from_colmap
        return input_data_from_colmap(project_root, constraint_path)


def detect_project_format(project_root: str) -> ProjectFormat:
    """
    Identify the layout of a project directory.

    Raises:
        ValueError: If the directory matches no known layout
    """
    if os.path.exists(os.path.join(project_root, "transforms.json")):
        return ProjectFormat.NERFSTUDIO
    if os.path.exists(os.path.join(project_root, "sparse")) or \
            os.path.exists(os.path.join(project_root, "cameras.bin")):
        return ProjectFormat.COLMAP
    raise ValueError(
        f"Invalid project folder {project_root} "
        f"(must be either a colmap or nerfstudio project folder)"
    )


def input_data_from_project(project_root: str, constraint_path: str = "") -> InputData:
    """Load any supported project into InputData."""
    project_format = detect_project_format(project_root)
    print(f"Reading {project_format.value} project: {project_root}")
    return project_format.load(project_root, constraint_path)
