"""
gstrain - training orchestration for 3D Gaussian Splatting.

Module structure:
    camera.py      - Camera (lazy image loading, undistortion, downscale pyramid)
    input_data.py  - InputData, project format detection, pose normalization
    nerfstudio.py  - transforms.json projects
    colmap.py      - COLMAP binary projects
    point_io.py    - PLY point clouds, structure constraints, splat export
    model.py       - GaussianModel (parameters + per-parameter optimizers)
    optim.py       - learning-rate scheduler, optimizer state resizing
    density.py     - split / duplicate / prune of Gaussians
    loss.py        - L1, SSIM, PSNR
    render.py      - gsplat rasterization wrapper
    train.py       - main training loop
"""

__version__ = "0.1.0"
