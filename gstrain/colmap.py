"""
COLMAP project loading.

Reads the binary sparse model (cameras.bin, images.bin, points3D.bin) from
one of:
    <root>/sparse/0/
    <root>/sparse/
    <root>/
and images from <root>/images/.

COLMAP stores World-to-Camera poses in OpenCV axes (X right, Y down,
Z forward):
    X_cam = R * X_world + T
They are inverted to Camera-to-World and converted to OpenGL axes (X right,
Y up, Z backward), the convention shared with nerfstudio projects.
"""

import os
import struct
import numpy as np
import torch
from typing import Dict, List, Tuple

from gstrain.camera import Camera
from gstrain.input_data import InputData, auto_scale_and_center_poses, load_initial_points, normalize_points
from gstrain.point_io import PointSet


# ============================================================================
# COLMAP Binary Parsing Functions
# ============================================================================

# Number of parameters per camera model id
CAMERA_MODEL_NUM_PARAMS = {
    0: 3,   # SIMPLE_PINHOLE: f, cx, cy
    1: 4,   # PINHOLE: fx, fy, cx, cy
    2: 4,   # SIMPLE_RADIAL: f, cx, cy, k
    3: 5,   # RADIAL: f, cx, cy, k1, k2
    4: 8,   # OPENCV: fx, fy, cx, cy, k1, k2, p1, p2
    5: 8,   # OPENCV_FISHEYE: fx, fy, cx, cy, k1, k2, k3, k4
    6: 12,  # FULL_OPENCV: fx, fy, cx, cy, k1, k2, p1, p2, k3, k4, k5, k6
    7: 5,   # FOV: fx, fy, cx, cy, omega
    8: 4,   # SIMPLE_RADIAL_FISHEYE: f, cx, cy, k
    9: 5,   # RADIAL_FISHEYE: f, cx, cy, k1, k2
    10: 12  # THIN_PRISM_FISHEYE
}

CAMERA_MODEL_NAMES = {
    0: "SIMPLE_PINHOLE", 1: "PINHOLE", 2: "SIMPLE_RADIAL", 3: "RADIAL",
    4: "OPENCV", 5: "OPENCV_FISHEYE", 6: "FULL_OPENCV", 7: "FOV",
    8: "SIMPLE_RADIAL_FISHEYE", 9: "RADIAL_FISHEYE", 10: "THIN_PRISM_FISHEYE"
}


def read_next_bytes(fid, num_bytes, format_char_sequence, endian_char="<"):
    """Read and unpack bytes from a binary file."""
    bytes_data = fid.read(num_bytes)
    if len(bytes_data) < num_bytes:
        raise ValueError(f"Expected {num_bytes} bytes but only got {len(bytes_data)}")
    return struct.unpack(endian_char + format_char_sequence, bytes_data)


def parse_cameras_bin(path_to_file: str) -> Dict[int, Dict]:
    """
    Parse COLMAP cameras.bin file.

    COLMAP binary format:
        - num_cameras (8 bytes, uint64)
        For each camera:
            - camera_id (4 bytes, uint32)
            - model (4 bytes, uint32)
            - width (8 bytes, uint64)
            - height (8 bytes, uint64)
            - params (N * 8 bytes, doubles)

    Returns:
        Dictionary mapping camera_id to {'model', 'width', 'height', 'params'}
    """
    cameras = {}
    with open(path_to_file, "rb") as fid:
        num_cameras = read_next_bytes(fid, 8, "Q")[0]

        for _ in range(num_cameras):
            camera_id = read_next_bytes(fid, 4, "I")[0]
            camera_model = read_next_bytes(fid, 4, "I")[0]
            camera_width = read_next_bytes(fid, 8, "Q")[0]
            camera_height = read_next_bytes(fid, 8, "Q")[0]

            if camera_model not in CAMERA_MODEL_NUM_PARAMS:
                raise ValueError(f"Unknown camera model id {camera_model} in {path_to_file}")
            num_params = CAMERA_MODEL_NUM_PARAMS[camera_model]
            params = read_next_bytes(fid, num_bytes=8 * num_params, format_char_sequence="d" * num_params)

            cameras[camera_id] = {
                'model': camera_model,
                'width': int(camera_width),
                'height': int(camera_height),
                'params': np.array(params)
            }

    return cameras


def parse_images_bin(path_to_file: str) -> Dict[int, Dict]:
    """
    Parse COLMAP images.bin file.

    COLMAP images.bin format:
        - num_images (8 bytes, uint64)
        For each image:
            - image_id (4 bytes, uint32)
            - qw, qx, qy, qz (4 * 8 bytes, doubles) - quaternion (scalar-first)
            - tx, ty, tz (3 * 8 bytes, doubles) - translation vector
            - camera_id (4 bytes, uint32)
            - image_name (variable length, null-terminated string)
            - num_2d_points (8 bytes, uint64)
            - 2D points data (24 bytes each: x, y, point3d_id)

    Returns:
        Dictionary mapping image_id to {'camera_id', 'name', 'qvec', 'tvec', 'R'}
    """
    images = {}
    with open(path_to_file, "rb") as fid:
        num_images = read_next_bytes(fid, 8, "Q")[0]

        for _ in range(num_images):
            image_id = read_next_bytes(fid, 4, "I")[0]
            qvec = np.array(read_next_bytes(fid, 32, "dddd"))
            tvec = np.array(read_next_bytes(fid, 24, "ddd"))
            camera_id = read_next_bytes(fid, 4, "I")[0]

            name = b""
            while True:
                char = fid.read(1)
                if char == b'\0' or char == b"":
                    break
                name += char

            num_2d_points = read_next_bytes(fid, 8, "Q")[0]
            fid.seek(24 * num_2d_points, 1)

            images[image_id] = {
                'camera_id': camera_id,
                'name': name.decode("utf-8"),
                'qvec': qvec,
                'tvec': tvec,
                'R': quaternion_to_rotation_matrix(qvec)
            }

    return images


def parse_points3d_bin(path_to_file: str) -> PointSet:
    """
    Parse COLMAP points3D.bin file.

    Binary format per point: POINT3D_ID (Q), X, Y, Z (ddd), R, G, B (BBB),
    ERROR (d), track length (Q), track (2 * uint32 per element).
    """
    xyzs = []
    rgbs = []

    with open(path_to_file, "rb") as fid:
        num_points = read_next_bytes(fid, 8, "Q")[0]

        for _ in range(num_points):
            binary_chunk = read_next_bytes(fid, 43, "QdddBBBd")
            xyzs.append(binary_chunk[1:4])
            rgbs.append(binary_chunk[4:7])

            track_length = read_next_bytes(fid, 8, "Q")[0]
            fid.seek(8 * track_length, 1)

    return PointSet(
        xyz=np.array(xyzs, dtype=np.float32).reshape(-1, 3),
        rgb=np.array(rgbs, dtype=np.uint8).reshape(-1, 3)
    )


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion to rotation matrix.

    Args:
        q: Quaternion [qw, qx, qy, qz]

    Returns:
        3x3 rotation matrix
    """
    qw, qx, qy, qz = q
    return np.array([
        [1 - 2 * (qy ** 2 + qz ** 2), 2 * (qx * qy - qw * qz), 2 * (qx * qz + qw * qy)],
        [2 * (qx * qy + qw * qz), 1 - 2 * (qx ** 2 + qz ** 2), 2 * (qy * qz - qw * qx)],
        [2 * (qx * qz - qw * qy), 2 * (qy * qz + qw * qx), 1 - 2 * (qx ** 2 + qy ** 2)]
    ])


def get_intrinsics_from_camera(camera: Dict) -> Dict[str, float]:
    """
    Map COLMAP camera parameters to pinhole + Brown-Conrady intrinsics.

    Args:
        camera: Camera dictionary from parse_cameras_bin

    Returns:
        Dictionary with fx, fy, cx, cy, k1, k2, k3, p1, p2

    Raises:
        ValueError: For camera models without a pinhole/Brown-Conrady equivalent
    """
    model = camera['model']
    p = [float(v) for v in camera['params']]
    out = dict(k1=0.0, k2=0.0, k3=0.0, p1=0.0, p2=0.0)

    if model == 0:  # SIMPLE_PINHOLE
        out.update(fx=p[0], fy=p[0], cx=p[1], cy=p[2])
    elif model == 1:  # PINHOLE
        out.update(fx=p[0], fy=p[1], cx=p[2], cy=p[3])
    elif model == 2:  # SIMPLE_RADIAL
        out.update(fx=p[0], fy=p[0], cx=p[1], cy=p[2], k1=p[3])
    elif model == 3:  # RADIAL
        out.update(fx=p[0], fy=p[0], cx=p[1], cy=p[2], k1=p[3], k2=p[4])
    elif model == 4:  # OPENCV
        out.update(fx=p[0], fy=p[1], cx=p[2], cy=p[3], k1=p[4], k2=p[5], p1=p[6], p2=p[7])
    elif model == 6:  # FULL_OPENCV (k4..k6 dropped)
        out.update(fx=p[0], fy=p[1], cx=p[2], cy=p[3], k1=p[4], k2=p[5], p1=p[6], p2=p[7], k3=p[8])
    else:
        raise ValueError(f"Unsupported camera model: {CAMERA_MODEL_NAMES.get(model, model)}")

    return out


def world_to_camera_to_pose(R: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    """
    Invert a COLMAP World-to-Camera transform and convert it to an OpenGL
    Camera-to-World pose [4, 4].
    """
    R_inv = R.T
    T_inv = -R_inv @ tvec

    pose = np.eye(4, dtype=np.float64)
    pose[:3, :3] = R_inv
    pose[:3, 3] = T_inv

    # OpenCV -> OpenGL camera axes
    pose[:3, 1:3] *= -1.0
    return pose


def find_sparse_dir(project_root: str) -> str:
    for candidate in (os.path.join(project_root, "sparse", "0"),
                      os.path.join(project_root, "sparse"),
                      project_root):
        if os.path.exists(os.path.join(candidate, "cameras.bin")):
            return candidate
    raise FileNotFoundError(f"cameras.bin not found in {project_root} (looked in sparse/0, sparse, root)")


def input_data_from_colmap(project_root: str, constraint_path: str = "") -> InputData:
    """
    Load a COLMAP project.

    Args:
        project_root: Project directory
        constraint_path: Optional structure constraint PLY; replaces
                         points3D.bin when given

    Returns:
        InputData with normalized poses and points
    """
    sparse_dir = find_sparse_dir(project_root)
    print(f"Parsing COLMAP data from: {sparse_dir}")

    images_path = os.path.join(sparse_dir, "images.bin")
    if not os.path.exists(images_path):
        raise FileNotFoundError(f"{images_path} does not exist")

    colmap_cameras = parse_cameras_bin(os.path.join(sparse_dir, "cameras.bin"))
    images_data = parse_images_bin(images_path)

    if constraint_path:
        points = load_initial_points(None, constraint_path)
    else:
        points_path = os.path.join(sparse_dir, "points3D.bin")
        if not os.path.exists(points_path):
            raise FileNotFoundError(f"{points_path} does not exist (and no mesh input)")
        points = parse_points3d_bin(points_path)

    entries: List[Tuple[str, np.ndarray, Dict]] = []
    for image_id, img_data in images_data.items():
        camera_id = img_data['camera_id']
        if camera_id not in colmap_cameras:
            raise ValueError(f"Camera {camera_id} not found for image: {img_data['name']}")
        file_path = os.path.join(project_root, "images", img_data['name'])
        pose = world_to_camera_to_pose(img_data['R'], img_data['tvec'])
        entries.append((file_path, pose, colmap_cameras[camera_id]))

    entries.sort(key=lambda e: e[0])

    unoriented_poses = np.stack([e[1] for e in entries]) if entries else np.zeros((0, 4, 4))
    poses, translation, scale = auto_scale_and_center_poses(unoriented_poses)

    cameras = []
    for i, (file_path, _, colmap_camera) in enumerate(entries):
        intr = get_intrinsics_from_camera(colmap_camera)
        cameras.append(Camera(
            width=colmap_camera['width'], height=colmap_camera['height'],
            cam_to_world=torch.from_numpy(poses[i].copy()),
            file_path=file_path,
            **intr
        ))

    print(f"Found {len(cameras)} cameras, {len(points)} points")

    return InputData(
        cameras=cameras,
        points=normalize_points(points, translation, scale),
        scale=scale,
        translation=translation
    )
