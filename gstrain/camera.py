"""
Camera model for Gaussian splat training.

A Camera owns its intrinsics, its camera-to-world pose (OpenGL axes: X right,
Y up, Z backward), the path of its source photograph and, after
`load_image()`, the full-resolution image plus a lazily filled pyramid of
downscaled copies.

Lifecycle:
    1. Constructed by a project loader with the intrinsics stated in the
       project files (width/height may be 0 when unknown).
    2. `load_image()` is called exactly once. It decodes the photograph,
       reconciles intrinsics with the real image size, applies the global
       downscale factor, undistorts and crops to the valid region. After
       this call intrinsics and pose never change again.
    3. `get_image()` serves the image at any integer downscale factor.
"""

import os
import numpy as np
import torch
import cv2
from typing import Dict, List, Optional

from gstrain.image_utils import imread_rgb, image_to_tensor, tensor_to_image, rescale_area, resize_area


class Camera:
    """
    Pinhole camera with optional Brown-Conrady distortion.

    Attributes:
        idx: Index of the camera in the (sorted) project camera list
        width, height: Image size in pixels
        fx, fy, cx, cy: Pinhole intrinsics
        k1, k2, k3, p1, p2: Radial / tangential distortion coefficients
        cam_to_world: Tensor [4, 4] camera-to-world transform
        file_path: Path to the source image
        image: Tensor [H, W, 3] in [0, 1], None until load_image()
    """

    def __init__(
        self,
        width: int,
        height: int,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        k1: float,
        k2: float,
        k3: float,
        p1: float,
        p2: float,
        cam_to_world: torch.Tensor,
        file_path: str
    ):
        self.idx = -1
        self.width = int(width)
        self.height = int(height)
        self.fx = float(fx)
        self.fy = float(fy)
        self.cx = float(cx)
        self.cy = float(cy)
        self.k1 = float(k1)
        self.k2 = float(k2)
        self.k3 = float(k3)
        self.p1 = float(p1)
        self.p2 = float(p2)
        self.cam_to_world = cam_to_world
        self.file_path = file_path

        self.image: Optional[torch.Tensor] = None
        self.image_pyramids: Dict[int, torch.Tensor] = {}

    def get_intrinsics_matrix(self) -> torch.Tensor:
        """Get the 3x3 intrinsic matrix K."""
        return torch.tensor([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0]
        ], dtype=torch.float32)

    def has_distortion_parameters(self) -> bool:
        return any(c != 0.0 for c in (self.k1, self.k2, self.k3, self.p1, self.p2))

    def undistortion_parameters(self) -> List[float]:
        """Distortion coefficients in OpenCV order (k1, k2, p1, p2, k3, k4, k5, k6)."""
        return [self.k1, self.k2, self.p1, self.p2, self.k3, 0.0, 0.0, 0.0]

    def load_image(self, downscale_factor: float = 1.0) -> None:
        """
        Decode the source image and finalize the intrinsics.

        Destructive: intrinsics, width and height are overwritten with the
        values matching the loaded (downscaled, undistorted, cropped) image.
        Must be called only once per camera.

        Args:
            downscale_factor: Uniform factor by which the source image is
                              shrunk before training; values below 1 load
                              the image at full resolution

        Raises:
            RuntimeError: If the image was already loaded
            ValueError: If downscale_factor is not positive
            FileNotFoundError: If the source image does not exist
        """
        if self.image is not None:
            raise RuntimeError(f"load_image already called for {self.file_path}")
        if downscale_factor <= 0:
            raise ValueError(f"Downscale factor must be positive, got {downscale_factor}")
        downscale_factor = max(downscale_factor, 1.0)
        if not os.path.exists(self.file_path):
            raise FileNotFoundError(f"Image not found: {self.file_path}")

        img = imread_rgb(self.file_path)
        rows, cols = img.shape[:2]

        # Manifests may be written for a different resolution than the files on disk
        rescale = 1.0
        if self.width <= 0 or self.height <= 0:
            self.width, self.height = cols, rows
        elif rows != self.height or cols != self.width:
            rescale = rows / self.height

        scale = rescale / downscale_factor
        self.fx *= scale
        self.fy *= scale
        self.cx *= scale
        self.cy *= scale

        if downscale_factor > 1.0:
            img = rescale_area(img, 1.0 / downscale_factor)
            rows, cols = img.shape[:2]

        K = self.get_intrinsics_matrix().numpy().astype(np.float64)

        if self.has_distortion_parameters():
            dist_coeffs = np.array(self.undistortion_parameters(), dtype=np.float64)
            new_K, roi = cv2.getOptimalNewCameraMatrix(K, dist_coeffs, (cols, rows), 0)
            img = cv2.undistort(img, K, dist_coeffs, None, new_K)
            K = new_K
            x, y, w, h = roi
            if w <= 0 or h <= 0:
                x, y, w, h = 0, 0, cols, rows
        else:
            x, y, w, h = 0, 0, cols, rows

        img = np.ascontiguousarray(img[y:y + h, x:x + w])

        self.image = image_to_tensor(img)
        self.height, self.width = img.shape[:2]
        self.fx = float(K[0, 0])
        self.fy = float(K[1, 1])
        self.cx = float(K[0, 2])
        self.cy = float(K[1, 2])

    def get_image(self, downscale_factor: int = 1) -> torch.Tensor:
        """
        Get the training image at a given downscale factor.

        Downscaled copies are computed from the loaded 1x image on first
        request and cached per factor.

        Args:
            downscale_factor: Integer shrink factor (<= 1 returns the 1x image)

        Returns:
            Tensor [H / f, W / f, 3] in [0, 1]
        """
        if self.image is None:
            raise RuntimeError(f"Image not loaded for {self.file_path}")
        if downscale_factor <= 1:
            return self.image

        if downscale_factor in self.image_pyramids:
            return self.image_pyramids[downscale_factor]

        img = tensor_to_image(self.image)
        img = resize_area(img, img.shape[1] // downscale_factor, img.shape[0] // downscale_factor)
        t = image_to_tensor(img)
        self.image_pyramids[downscale_factor] = t
        return t

    def __repr__(self) -> str:
        return (
            f"Camera(idx={self.idx}, file_path={self.file_path!r}, "
            f"size={self.width}x{self.height}, "
            f"f=({self.fx:.2f}, {self.fy:.2f}), c=({self.cx:.2f}, {self.cy:.2f}))"
        )
