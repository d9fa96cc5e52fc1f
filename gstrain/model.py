"""
Gaussian Model for splat training.

The model owns:
- the Gaussian parameters, stored in an nn.ParameterDict. Row i of every
  tensor describes the same Gaussian:
    - means: Gaussian positions [N, 3]
    - scales: Log-space scales [N, 3]
    - quats: Rotation quaternions (w, x, y, z) [N, 4]
    - features_dc: SH DC component [N, 3]
    - features_rest: SH higher order components [N, K - 1, 3]
    - opacities: Logit-space opacity [N, 1]
- one torch.optim.Adam per parameter and the LR schedule of the means
- the density controller that grows and shrinks the Gaussians

Parameters are only ever resized through `grow` and `prune`, which replace
each parameter together with its optimizer state and check afterwards that
both still have the same number of rows.
"""

import math
import numpy as np
import torch
import torch.nn as nn
from typing import Callable, Dict, List, Optional, Sequence
from scipy.spatial import KDTree

from gstrain.camera import Camera
from gstrain.density import DensityController
from gstrain.input_data import InputData, SH_C0
from gstrain.loss import photometric_loss
from gstrain.optim import (
    OptimScheduler,
    append_optimizer_rows,
    remove_optimizer_rows,
    reset_optimizer_state,
    optimizer_state_rows,
)
from gstrain.point_io import write_splat_ply, write_debug_ply


def random_quat_tensor(n: int) -> torch.Tensor:
    """Uniformly distributed random unit quaternions [n, 4]."""
    u = torch.rand(n)
    v = torch.rand(n)
    w = torch.rand(n)
    return torch.stack([
        torch.sqrt(1 - u) * torch.sin(2 * math.pi * v),
        torch.sqrt(1 - u) * torch.cos(2 * math.pi * v),
        torch.sqrt(u) * torch.sin(2 * math.pi * w),
        torch.sqrt(u) * torch.cos(2 * math.pi * w),
    ], dim=-1)


def rgb_to_sh(rgb: np.ndarray) -> np.ndarray:
    """
    Convert RGB colors (0-1) to Spherical Harmonics DC component.
    SH(0) = 0.28209479177387814
    """
    return (rgb - 0.5) / SH_C0


def sh_to_rgb(sh: np.ndarray) -> np.ndarray:
    return sh * SH_C0 + 0.5


def inverse_sigmoid(x: float) -> float:
    return math.log(x / (1.0 - x))


def knn_log_scales(xyz: np.ndarray) -> np.ndarray:
    """
    Log of the mean distance to the 3 nearest neighbours, per point [N, 3].
    """
    kdtree = KDTree(xyz)
    distances, _ = kdtree.query(xyz, k=4)  # k=4 because first point is itself
    mean_distances = np.mean(distances[:, 1:], axis=1)

    # Coincident points would give log(0)
    mean_distances = np.maximum(mean_distances, 1e-7)
    return np.tile(np.log(mean_distances)[:, np.newaxis], (1, 3)).astype(np.float32)


class GaussianModel(nn.Module):
    """
    Gaussians, their optimizers and the training-time schedules.

    Attributes:
        params: nn.ParameterDict with the six Gaussian parameters
        optimizers: Dict mapping parameter name to its torch.optim.Adam
        means_scheduler: LR decay of the means optimizer
        density: DensityController driving split / duplicate / cull
        xys, radii, last_height, last_width: Outputs of the last forward pass
    """

    PARAM_NAMES = ('means', 'scales', 'quats', 'features_dc', 'features_rest', 'opacities')

    def __init__(
        self,
        input_data: InputData,
        num_cameras: int,
        num_downscales: int,
        resolution_schedule: int,
        sh_degree: int,
        sh_degree_interval: int,
        refine_every: int,
        warmup_length: int,
        reset_alpha_every: int,
        stop_split_at: int,
        densify_grad_thresh: float,
        densify_size_thresh: float,
        stop_screen_size_at: int,
        split_screen_size: float,
        max_steps: int,
        background: Sequence[float],
        device: torch.device,
        rasterize_fn: Optional[Callable] = None,
        seed: int = 42
    ):
        """
        Initialize Gaussians from the scene's initial points.

        With a structure constraint the Gaussians start from the constraint's
        scales, rotations and colours and their geometry is almost frozen
        (tiny learning rates). Otherwise scales come from nearest-neighbour
        distances and rotations are random.

        Args:
            input_data: Normalized scene input
            num_cameras: Number of training cameras
            num_downscales: Number of resolution halvings at the start
            resolution_schedule: Steps between resolution doublings
            sh_degree: Maximum spherical harmonics degree
            sh_degree_interval: Steps between SH degree increases
            max_steps: Total number of training steps (LR schedule length)
            background: RGB background colour in [0, 1]
            device: Device holding parameters and optimizer state
            rasterize_fn: Rasterizer with the signature of
                          gstrain.render.rasterize_gaussians (default: gsplat)
            seed: Seed for random rotations and split samples
            (remaining arguments configure the DensityController)

        Raises:
            ValueError: If resolution_schedule or sh_degree_interval is below 1
        """
        super().__init__()

        if resolution_schedule < 1:
            raise ValueError(f"resolution_schedule must be at least 1, got {resolution_schedule}")
        if sh_degree_interval < 1:
            raise ValueError(f"sh_degree_interval must be at least 1, got {sh_degree_interval}")

        torch.manual_seed(seed)

        self.num_cameras = num_cameras
        self.num_downscales = num_downscales
        self.resolution_schedule = resolution_schedule
        self.sh_degree = sh_degree
        self.sh_degree_interval = sh_degree_interval
        self.max_steps = max_steps
        self.device = device

        if rasterize_fn is None:
            from gstrain.render import rasterize_gaussians
            rasterize_fn = rasterize_gaussians
        self.rasterize_fn = rasterize_fn

        self.scale = input_data.scale
        self.translation = torch.as_tensor(input_data.translation, dtype=torch.float32)
        self.background = torch.tensor(background, dtype=torch.float32, device=device)

        points = input_data.points
        num_points = len(points)
        constraint = points.constraint
        self.constrained = constraint is not None

        means = torch.from_numpy(np.ascontiguousarray(points.xyz, dtype=np.float32))

        if self.constrained:
            scales = torch.from_numpy(constraint.scales.copy()) + math.log(input_data.scale)
            quats = torch.from_numpy(constraint.quats.copy())
            features_dc = torch.from_numpy(constraint.features_dc.copy())
            base_opacity = 0.6
        else:
            if num_points < 4:
                raise ValueError(f"At least 4 initial points are required, got {num_points}")
            scales = torch.from_numpy(knn_log_scales(points.xyz))
            quats = random_quat_tensor(num_points)
            features_dc = torch.from_numpy(rgb_to_sh(points.rgb.astype(np.float32) / 255.0).astype(np.float32))
            base_opacity = 0.1

        dim_sh = (sh_degree + 1) ** 2
        features_rest = torch.zeros((num_points, dim_sh - 1, 3), dtype=torch.float32)
        opacities = torch.full((num_points, 1), inverse_sigmoid(base_opacity), dtype=torch.float32)

        self.params = nn.ParameterDict({
            'means': nn.Parameter(means.to(device)),
            'scales': nn.Parameter(scales.to(device)),
            'quats': nn.Parameter(quats.to(device)),
            'features_dc': nn.Parameter(features_dc.to(device)),
            'features_rest': nn.Parameter(features_rest.to(device)),
            'opacities': nn.Parameter(opacities.to(device)),
        })

        # ====================================================================
        # Optimizers (one per parameter)
        # ====================================================================
        self.optimizers: Dict[str, torch.optim.Adam] = {}
        for param_name, groups in self.get_param_groups().items():
            self.optimizers[param_name] = torch.optim.Adam(groups, eps=1e-15)

        means_lr = self.optimizers['means'].param_groups[0]['lr']
        means_lr_final = means_lr * 0.01 if self.constrained else 1.6e-6
        self.means_scheduler = OptimScheduler(self.optimizers['means'], means_lr_final, max_steps)

        self.density = DensityController(
            num_cameras=num_cameras,
            refine_every=refine_every,
            warmup_length=warmup_length,
            reset_alpha_every=reset_alpha_every,
            stop_split_at=stop_split_at,
            densify_grad_thresh=densify_grad_thresh,
            densify_size_thresh=densify_size_thresh,
            stop_screen_size_at=stop_screen_size_at,
            split_screen_size=split_screen_size
        )

        # Set by forward()
        self.xys: Optional[torch.Tensor] = None
        self.radii: Optional[torch.Tensor] = None
        self.last_height = 0
        self.last_width = 0

        print(f"Initialized {num_points} Gaussians "
              f"({'mesh constrained' if self.constrained else 'from point cloud'})")

    # ========================================================================
    # Optimization Setup
    # ========================================================================

    def get_param_groups(self) -> Dict[str, List[Dict]]:
        """
        Parameter groups for the per-parameter optimizers.

        Returns:
            Dictionary with parameter names as keys and list of param group dicts as values
        """
        if self.constrained:
            geometry_lrs = {'means': 1e-11, 'scales': 1e-10, 'quats': 1e-11, 'opacities': 1e-11}
        else:
            geometry_lrs = {'means': 0.00016, 'scales': 0.005, 'quats': 0.001, 'opacities': 0.05}

        lrs = dict(geometry_lrs)
        lrs['features_dc'] = 0.0025
        lrs['features_rest'] = 0.0025 / 20.0

        return {
            name: [{"params": [self.params[name]], "lr": lrs[name], "name": name}]
            for name in self.PARAM_NAMES
        }

    def optimizers_zero_grad(self) -> None:
        for optimizer in self.optimizers.values():
            optimizer.zero_grad()

    def optimizers_step(self) -> None:
        for optimizer in self.optimizers.values():
            optimizer.step()

    def schedulers_step(self, step: int) -> None:
        self.means_scheduler.step(step)

    def reset_optimizer(self, name: str) -> None:
        reset_optimizer_state(self.optimizers[name])

    # ========================================================================
    # Rendering
    # ========================================================================

    def get_downscale_factor(self, step: int) -> int:
        """Image downscale factor for a step: 2^num_downscales halving every resolution_schedule steps."""
        return 2 ** max(self.num_downscales - step // self.resolution_schedule, 0)

    def forward(self, cam: Camera, step: int) -> torch.Tensor:
        """
        Render the Gaussians from a camera.

        Args:
            cam: Camera with a loaded image (OpenGL camera-to-world pose)
            step: Training step; selects the resolution and the SH degree

        Returns:
            RGB image [H, W, 3], clamped to <= 1
        """
        scale_factor = float(self.get_downscale_factor(step))

        cam_to_world = cam.cam_to_world.to(self.device, dtype=torch.float32)
        T = cam_to_world[:3, 3]
        # OpenGL (Y up, Z back) to OpenCV (Y down, Z forward) camera axes
        R = cam_to_world[:3, :3] @ torch.diag(torch.tensor([1.0, -1.0, -1.0], device=self.device))

        R_inv = R.T
        T_inv = -R_inv @ T
        viewmat = torch.eye(4, device=self.device)
        viewmat[:3, :3] = R_inv
        viewmat[:3, 3] = T_inv

        fx = cam.fx / scale_factor
        fy = cam.fy / scale_factor
        cx = cam.cx / scale_factor
        cy = cam.cy / scale_factor
        height = int(cam.height / scale_factor)
        width = int(cam.width / scale_factor)

        K = torch.tensor([
            [fx, 0.0, cx],
            [0.0, fy, cy],
            [0.0, 0.0, 1.0]
        ], dtype=torch.float32, device=self.device)

        degrees_to_use = min(step // self.sh_degree_interval, self.sh_degree)
        colors = torch.cat([self.params['features_dc'][:, None, :], self.params['features_rest']], dim=1)

        rgb, _, meta = self.rasterize_fn(
            self.params['means'],
            self.params['quats'],
            torch.exp(self.params['scales']),
            torch.sigmoid(self.params['opacities']).squeeze(-1),
            colors,
            viewmat,
            K,
            width,
            height,
            degrees_to_use,
            self.background
        )

        self.xys = meta['means2d']
        self.radii = meta['radii']
        self.last_height = height
        self.last_width = width

        return torch.clamp_max(rgb, 1.0)

    def main_loss(self, rgb: torch.Tensor, gt: torch.Tensor, ssim_weight: float) -> torch.Tensor:
        """(1 - ssim_weight) * L1 + ssim_weight * (1 - SSIM)"""
        return photometric_loss(rgb, gt, ssim_weight)

    # ========================================================================
    # Resizing (parameters and optimizer state together)
    # ========================================================================

    def add_to_optimizer(self, name: str, new_param: nn.Parameter, idcs: torch.Tensor, n_samples: int) -> None:
        append_optimizer_rows(self.optimizers[name], new_param, idcs, n_samples)

    def remove_from_optimizer(self, name: str, new_param: nn.Parameter, deleted_mask: torch.Tensor) -> None:
        remove_optimizer_rows(self.optimizers[name], new_param, deleted_mask)

    def grow(self, new_rows: Dict[str, torch.Tensor], idcs: torch.Tensor, n_samples: int) -> None:
        """
        Append Gaussians.

        Args:
            new_rows: Rows to append, per parameter name (len(idcs) * n_samples each)
            idcs: Indices of the Gaussians the new rows were derived from
            n_samples: New rows per source Gaussian
        """
        for name in self.PARAM_NAMES:
            param = torch.cat([self.params[name].detach(), new_rows[name].detach()], dim=0)
            new_param = nn.Parameter(param)
            self.add_to_optimizer(name, new_param, idcs, n_samples)
            self.params[name] = new_param

        self.check_state_rows()

    def prune(self, deleted_mask: torch.Tensor) -> None:
        """
        Remove the Gaussians flagged in deleted_mask; survivors keep their order.

        Args:
            deleted_mask: Bool [N]
        """
        keep = ~deleted_mask
        for name in self.PARAM_NAMES:
            new_param = nn.Parameter(self.params[name].detach()[keep])
            self.remove_from_optimizer(name, new_param, deleted_mask)
            self.params[name] = new_param

        self.check_state_rows()

    def check_state_rows(self) -> None:
        """
        Raises:
            RuntimeError: If parameters disagree on the number of Gaussians, or
                          an optimizer's state no longer matches its parameter
        """
        num_gaussians = self.num_gaussians()
        for name in self.PARAM_NAMES:
            param = self.params[name]
            if param.shape[0] != num_gaussians:
                raise RuntimeError(f"{name} has {param.shape[0]} rows, expected {num_gaussians}")

            optimizer = self.optimizers[name]
            if optimizer.param_groups[0]['params'][0] is not param:
                raise RuntimeError(f"Optimizer for {name} is not bound to the current parameter")

            for key in ('exp_avg', 'exp_avg_sq'):
                rows = optimizer_state_rows(optimizer, key)
                if rows != -1 and rows != num_gaussians:
                    raise RuntimeError(f"Optimizer state {key} of {name} has {rows} rows, expected {num_gaussians}")

    def after_train(self, step: int) -> None:
        self.density.after_train(self, step)

    # ========================================================================
    # Export
    # ========================================================================

    def save_ply_splat(self, filename: str) -> None:
        """Write the Gaussians in the scene's original coordinate frame."""
        with torch.no_grad():
            means = self.params['means'].detach().cpu() / self.scale + self.translation
            scales = self.params['scales'].detach().cpu() - math.log(self.scale)

            write_splat_ply(
                filename,
                means=means.numpy(),
                features_dc=self.params['features_dc'].detach().cpu().numpy(),
                features_rest=self.params['features_rest'].detach().cpu().numpy(),
                opacities=self.params['opacities'].detach().cpu().numpy(),
                scales=scales.numpy(),
                quats=self.params['quats'].detach().cpu().numpy()
            )

        print(f"Wrote {filename}")

    def save_debug_ply(self, filename: str) -> None:
        """Write the Gaussian centers with their DC colour as a point cloud."""
        xyz = self.params['means'].detach().cpu().numpy()
        rgb = np.clip(sh_to_rgb(self.params['features_dc'].detach().cpu().numpy()) * 255.0, 0, 255).astype(np.uint8)
        write_debug_ply(filename, xyz, rgb)

        print(f"Wrote {filename}")

    def num_gaussians(self) -> int:
        """Get the number of Gaussians in the model."""
        return self.params['means'].shape[0]

    def __repr__(self) -> str:
        return (
            f"GaussianModel(\n"
            f"  num_gaussians={self.num_gaussians()},\n"
            f"  sh_degree={self.sh_degree},\n"
            f"  constrained={self.constrained}\n"
            f")"
        )
