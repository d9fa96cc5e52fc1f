"""
Rasterization of Gaussians with gsplat.

This is the boundary to the differentiable rasterizer. GaussianModel calls a
function with the signature of `rasterize_gaussians`; any replacement (for
instance a CPU stand-in in tests) must follow the same contract:

    rgb:  [H, W, 3] rendered image (not clamped)
    alpha: [H, W] accumulated opacity
    meta: dict with
        - 'means2d': [1, N, 2] screen-space means, gradient retained when
                     autograd is enabled (drives densification)
        - 'radii':   [N] screen-space radius in pixels, 0 for culled Gaussians
"""

import torch
from typing import Dict, Optional, Tuple
from gsplat.rendering import rasterization


def rasterize_gaussians(
    means: torch.Tensor,
    quats: torch.Tensor,
    scales: torch.Tensor,
    opacities: torch.Tensor,
    colors: torch.Tensor,
    viewmat: torch.Tensor,
    K: torch.Tensor,
    width: int,
    height: int,
    sh_degree: Optional[int],
    background: Optional[torch.Tensor] = None
) -> Tuple[torch.Tensor, torch.Tensor, Dict]:
    """
    Render a single view.

    Args:
        means: Gaussian centers [N, 3]
        quats: Rotations [N, 4] (need not be normalized)
        scales: Scales [N, 3] (linear, not log)
        opacities: Opacities [N] in [0, 1]
        colors: SH coefficients [N, K, 3] (or RGB [N, 3] when sh_degree is None)
        viewmat: World-to-camera matrix [4, 4] (OpenCV axes)
        K: Camera intrinsics [3, 3]
        width: Image width
        height: Image height
        sh_degree: SH degree to evaluate (<= sqrt(K) - 1)
        background: RGB background [3]

    Returns:
        (rgb [H, W, 3], alpha [H, W], meta)
    """
    rgb, alpha, meta = rasterization(
        means=means,
        quats=quats,
        scales=scales,
        opacities=opacities,
        colors=colors,
        viewmats=viewmat[None],  # [1, 4, 4]
        Ks=K[None],  # [1, 3, 3]
        width=width,
        height=height,
        sh_degree=sh_degree,
        backgrounds=background[None] if background is not None else None,
        packed=False  # Keep per-Gaussian [C, N, ...] layout for densification statistics
    )

    means2d = meta['means2d']
    if means2d.requires_grad:
        means2d.retain_grad()

    # Drop camera dimension
    radii = meta['radii'][0]
    # Recent gsplat returns per-axis radii [N, 2]
    if radii.dim() > 1:
        radii = radii.max(dim=-1).values

    return rgb[0], alpha[0, ..., 0], {
        'means2d': means2d,
        'radii': radii,
    }
