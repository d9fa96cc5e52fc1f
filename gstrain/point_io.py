"""
PLY I/O for point clouds, structure constraints and trained splats.

Three kinds of PLY files are handled:
- Point clouds (x, y, z, red, green, blue) used to seed the Gaussians.
- Structure constraints: a fixed set of Gaussians (position, SH DC colour,
  opacity, log-scale, rotation) describing a known scene structure.
- Splat exports: the trained scene, one vertex per Gaussian, in the layout
  understood by common splat viewers.
"""

import os
import numpy as np
import plyfile
from dataclasses import dataclass
from typing import Optional


# Fields every structure constraint vertex must carry
REQUIRED_CONSTRAINT_FIELDS = (
    "x", "y", "z",
    "f_dc_0", "f_dc_1", "f_dc_2",
    "opacity",
    "scale_0", "scale_1", "scale_2",
    "rot_0", "rot_1", "rot_2", "rot_3",
)


@dataclass
class StructureConstraint:
    """Fixed Gaussians read from a structure constraint file (float32 arrays)."""
    means: np.ndarray        # [N, 3]
    features_dc: np.ndarray  # [N, 3]
    opacities: np.ndarray    # [N, 1]
    scales: np.ndarray       # [N, 3] log-space
    quats: np.ndarray        # [N, 4]

    def __len__(self) -> int:
        return self.means.shape[0]


@dataclass
class PointSet:
    """
    Initial points of a scene.

    Attributes:
        xyz: Positions [N, 3], float32
        rgb: Colours [N, 3], uint8
        constraint: Structure constraint the points were derived from, if any
    """
    xyz: np.ndarray
    rgb: np.ndarray
    constraint: Optional[StructureConstraint] = None

    def __len__(self) -> int:
        return self.xyz.shape[0]


def read_point_set(ply_path: str) -> PointSet:
    """
    Load a point cloud from a PLY file.

    Args:
        ply_path: Path to a PLY file with a 'vertex' element

    Returns:
        PointSet with float32 positions and uint8 colours (white if the
        file carries no colour)
    """
    if not os.path.exists(ply_path):
        raise FileNotFoundError(f"Point cloud not found: {ply_path}")

    with open(ply_path, 'rb') as f:
        plydata = plyfile.PlyData.read(f)

    vertex = plydata['vertex']
    names = {p.name for p in vertex.properties}

    xyz = np.stack([
        np.asarray(vertex['x'], dtype=np.float32),
        np.asarray(vertex['y'], dtype=np.float32),
        np.asarray(vertex['z'], dtype=np.float32)
    ], axis=1)

    if {'red', 'green', 'blue'} <= names:
        rgb = np.stack([
            np.asarray(vertex['red']),
            np.asarray(vertex['green']),
            np.asarray(vertex['blue'])
        ], axis=1).astype(np.uint8)
    else:
        rgb = np.full((xyz.shape[0], 3), 255, dtype=np.uint8)

    return PointSet(xyz=xyz, rgb=rgb)


def load_structure_constraint(ply_path: str) -> Optional[StructureConstraint]:
    """
    Load and validate a structure constraint file.

    The file must contain exactly one element, 'vertex', carrying all of
    REQUIRED_CONSTRAINT_FIELDS. Values are returned exactly as stored.

    Args:
        ply_path: Path to the constraint PLY

    Returns:
        StructureConstraint, or None if the file does not have the required
        element / fields (the missing item is printed)
    """
    print(f"Opening mesh gaussians file {ply_path}... ", end="")
    if not os.path.exists(ply_path):
        raise FileNotFoundError(f"Mesh gaussians file not found: {ply_path}")

    with open(ply_path, 'rb') as f:
        plydata = plyfile.PlyData.read(f)
    print("OK")

    print("Checking required elements and properties... ", end="")
    if len(plydata.elements) != 1 or plydata.elements[0].name != "vertex":
        print("Incorrect elements format in mesh input file")
        return None

    vertex = plydata.elements[0]
    names = {p.name for p in vertex.properties}
    for field in REQUIRED_CONSTRAINT_FIELDS:
        if field not in names:
            print(f"Required field {field} was not found in mesh input file")
            return None
    print("OK")

    def columns(*fields):
        return np.stack([np.asarray(vertex[n], dtype=np.float32) for n in fields], axis=1)

    constraint = StructureConstraint(
        means=columns("x", "y", "z"),
        features_dc=columns("f_dc_0", "f_dc_1", "f_dc_2"),
        opacities=columns("opacity"),
        scales=columns("scale_0", "scale_1", "scale_2"),
        quats=columns("rot_0", "rot_1", "rot_2", "rot_3")
    )
    print(f"Loaded {len(constraint)} mesh gaussians")
    return constraint


def write_splat_ply(
    ply_path: str,
    means: np.ndarray,
    features_dc: np.ndarray,
    features_rest: np.ndarray,
    opacities: np.ndarray,
    scales: np.ndarray,
    quats: np.ndarray
) -> None:
    """
    Write Gaussians to a binary little-endian splat PLY.

    Args:
        ply_path: Output path
        means: [N, 3]
        features_dc: [N, 3]
        features_rest: [N, K, 3] higher-order SH, written channel-major
        opacities: [N, 1] logit-space
        scales: [N, 3] log-space
        quats: [N, 4]
    """
    num_points = means.shape[0]
    f_rest = np.transpose(features_rest, (0, 2, 1)).reshape(num_points, -1)

    columns = [
        (["x", "y", "z"], means),
        (["nx", "ny", "nz"], np.zeros((num_points, 3), dtype=np.float32)),
        ([f"f_dc_{i}" for i in range(features_dc.shape[1])], features_dc),
        ([f"f_rest_{i}" for i in range(f_rest.shape[1])], f_rest),
        (["opacity"], opacities.reshape(num_points, 1)),
        ([f"scale_{i}" for i in range(3)], scales),
        ([f"rot_{i}" for i in range(4)], quats),
    ]

    dtype = [(name, 'f4') for names, _ in columns for name in names]
    vertices = np.empty(num_points, dtype=dtype)
    for names, values in columns:
        for i, name in enumerate(names):
            vertices[name] = values[:, i]

    el = plyfile.PlyElement.describe(vertices, 'vertex')
    plyfile.PlyData([el], text=False, byte_order='<').write(ply_path)


def write_debug_ply(ply_path: str, xyz: np.ndarray, rgb: np.ndarray) -> None:
    """Write a coloured point cloud (x, y, z, red, green, blue) for previewing."""
    vertices = np.empty(xyz.shape[0], dtype=[
        ('x', 'f4'), ('y', 'f4'), ('z', 'f4'),
        ('red', 'u1'), ('green', 'u1'), ('blue', 'u1')
    ])
    vertices['x'], vertices['y'], vertices['z'] = xyz[:, 0], xyz[:, 1], xyz[:, 2]
    vertices['red'], vertices['green'], vertices['blue'] = rgb[:, 0], rgb[:, 1], rgb[:, 2]

    el = plyfile.PlyElement.describe(vertices, 'vertex')
    plyfile.PlyData([el], text=False).write(ply_path)
