"""
Image I/O and conversion helpers.

Images travel through the pipeline as:
- uint8 numpy arrays [H, W, 3] (RGB) while decoding / resampling with OpenCV
- float32 torch tensors [H, W, 3] in [0, 1] once handed to the model
"""

import numpy as np
import torch
import cv2
from PIL import Image


def imread_rgb(path: str) -> np.ndarray:
    """
    Decode an image file to an RGB uint8 array.

    Args:
        path: Path to the image file

    Returns:
        Array [H, W, 3], dtype uint8
    """
    with Image.open(path) as image:
        return np.array(image.convert("RGB"), dtype=np.uint8)


def imwrite_rgb(path: str, image: np.ndarray) -> None:
    """Encode an RGB uint8 array to disk (format from the file extension)."""
    Image.fromarray(image).save(path)


def image_to_tensor(image: np.ndarray) -> torch.Tensor:
    """uint8 [H, W, 3] -> float32 [H, W, 3] in [0, 1]."""
    return torch.from_numpy(np.ascontiguousarray(image)).to(torch.float32) / 255.0


def tensor_to_image(tensor: torch.Tensor) -> np.ndarray:
    """float [H, W, 3] in [0, 1] -> uint8 [H, W, 3]."""
    image = (tensor.detach().cpu().clamp(0.0, 1.0) * 255.0).round()
    return image.to(torch.uint8).numpy()


def resize_area(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize to an explicit size with area averaging."""
    return cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)


def rescale_area(image: np.ndarray, factor: float) -> np.ndarray:
    """Resize by a uniform factor (< 1 shrinks) with area averaging."""
    return cv2.resize(image, None, fx=factor, fy=factor, interpolation=cv2.INTER_AREA)
