"""
Photometric losses for Gaussian splat training.

Images are [H, W, 3] tensors in [0, 1] unless noted otherwise.
"""

import math
import torch
import torch.nn.functional as F


def l1_loss(pred: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
    """
    L1 loss for RGB reconstruction.

    Args:
        pred: Predicted RGB [H, W, 3]
        target: Ground truth RGB [H, W, 3]

    Returns:
        Scalar loss value
    """
    return torch.abs(pred - target).mean()


def gaussian(window_size: int, sigma: float) -> torch.Tensor:
    gauss = torch.tensor([
        math.exp(-(x - window_size // 2) ** 2 / float(2 * sigma ** 2)) for x in range(window_size)
    ])
    return gauss / gauss.sum()


def create_window(window_size: int, channel: int) -> torch.Tensor:
    _1D_window = gaussian(window_size, 1.5).unsqueeze(1)
    _2D_window = _1D_window.mm(_1D_window.t()).float().unsqueeze(0).unsqueeze(0)
    return _2D_window.expand(channel, 1, window_size, window_size).contiguous()


def ssim(img1: torch.Tensor, img2: torch.Tensor, window_size: int = 11) -> torch.Tensor:
    """
    Structural similarity with an 11x11 Gaussian window (sigma = 1.5).

    Args:
        img1, img2: Images [H, W, C] in [0, 1]

    Returns:
        Mean SSIM (scalar)
    """
    img1 = img1.permute(2, 0, 1).unsqueeze(0)
    img2 = img2.permute(2, 0, 1).unsqueeze(0)
    channel = img1.size(1)
    window = create_window(window_size, channel).to(device=img1.device, dtype=img1.dtype)
    padding = window_size // 2

    mu1 = F.conv2d(img1, window, padding=padding, groups=channel)
    mu2 = F.conv2d(img2, window, padding=padding, groups=channel)

    mu1_sq = mu1.pow(2)
    mu2_sq = mu2.pow(2)
    mu1_mu2 = mu1 * mu2

    sigma1_sq = F.conv2d(img1 * img1, window, padding=padding, groups=channel) - mu1_sq
    sigma2_sq = F.conv2d(img2 * img2, window, padding=padding, groups=channel) - mu2_sq
    sigma12 = F.conv2d(img1 * img2, window, padding=padding, groups=channel) - mu1_mu2

    C1 = 0.01 ** 2
    C2 = 0.03 ** 2

    ssim_map = ((2 * mu1_mu2 + C1) * (2 * sigma12 + C2)) / ((mu1_sq + mu2_sq + C1) * (sigma1_sq + sigma2_sq + C2))
    return ssim_map.mean()


def psnr(pred: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
    """Peak signal-to-noise ratio (dB) for images in [0, 1]."""
    mse = ((pred - target) ** 2).mean()
    return 10.0 * torch.log10(1.0 / mse)


def photometric_loss(pred: torch.Tensor, target: torch.Tensor, ssim_weight: float) -> torch.Tensor:
    """
    (1 - w) * L1 + w * (1 - SSIM); plain L1 when w == 0.

    Args:
        pred: Rendered RGB [H, W, 3]
        target: Ground truth RGB [H, W, 3]
        ssim_weight: Weight w of the structural similarity term
    """
    l1 = l1_loss(pred, target)
    if ssim_weight <= 0.0:
        return l1
    ssim_loss = 1.0 - ssim(pred, target)
    return (1.0 - ssim_weight) * l1 + ssim_weight * ssim_loss
