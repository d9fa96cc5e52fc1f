"""
Adaptive density control.

Grows and shrinks the set of Gaussians during training:
- split: large Gaussians with a high screen-space gradient are replaced by
  two smaller samples drawn from their own distribution
- duplicate: small Gaussians with a high screen-space gradient are copied
- cull: transparent, oversized and split-away Gaussians are removed
- opacity reset: opacities are periodically clamped so that floaters can be
  culled at the next refinement

All changes go through GaussianModel.grow / GaussianModel.prune, which resize
the parameters and their optimizer state together.
"""

import math
import torch
from typing import Dict, Optional

# Split samples per Gaussian and their scale reduction
NUM_SPLIT_SAMPLES = 2
SPLIT_SIZE_FACTOR = 1.6

CULL_ALPHA_THRESH = 0.1
CULL_SCALE_THRESH = 0.5
CULL_SCREEN_SIZE = 0.15
RESET_OPACITY = 0.2


def quat_to_rotmat(quats: torch.Tensor) -> torch.Tensor:
    """
    Rotation matrices from unit quaternions.

    Args:
        quats: [N, 4] in (w, x, y, z) order, normalized

    Returns:
        [N, 3, 3]
    """
    w, x, y, z = quats.unbind(dim=-1)
    return torch.stack([
        1 - 2 * (y ** 2 + z ** 2), 2 * (x * y - w * z), 2 * (x * z + w * y),
        2 * (x * y + w * z), 1 - 2 * (x ** 2 + z ** 2), 2 * (y * z - w * x),
        2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x ** 2 + y ** 2),
    ], dim=-1).reshape(-1, 3, 3)


class DensityController:
    """
    Screen-space statistics and the refinement schedule of a GaussianModel.

    Attributes:
        xys_grad_norm: [N] accumulated screen-space gradient norms
        vis_counts: [N] number of steps each Gaussian was visible
        max_2d_size: [N] largest screen radius seen, relative to max(H, W)
    """

    def __init__(
        self,
        num_cameras: int,
        refine_every: int,
        warmup_length: int,
        reset_alpha_every: int,
        stop_split_at: int,
        densify_grad_thresh: float,
        densify_size_thresh: float,
        stop_screen_size_at: int,
        split_screen_size: float
    ):
        self.num_cameras = num_cameras
        self.refine_every = refine_every
        self.warmup_length = warmup_length
        self.reset_alpha_every = reset_alpha_every
        self.stop_split_at = stop_split_at
        self.densify_grad_thresh = densify_grad_thresh
        self.densify_size_thresh = densify_size_thresh
        self.stop_screen_size_at = stop_screen_size_at
        self.split_screen_size = split_screen_size

        self.xys_grad_norm: Optional[torch.Tensor] = None
        self.vis_counts: Optional[torch.Tensor] = None
        self.max_2d_size: Optional[torch.Tensor] = None

    def clear(self) -> None:
        self.xys_grad_norm = None
        self.vis_counts = None
        self.max_2d_size = None

    # ========================================================================
    # Statistics
    # ========================================================================

    def accumulate(self, xys: torch.Tensor, radii: torch.Tensor, last_height: int, last_width: int) -> None:
        """
        Add the screen-space statistics of the last rendered view.

        Args:
            xys: Screen-space means of the last forward pass (gradient populated)
            radii: [N] screen radii of the last forward pass
            last_height, last_width: Size of the last rendered image
        """
        if xys is None or xys.grad is None:
            return

        with torch.no_grad():
            visible = (radii > 0).flatten()
            grads = xys.grad.detach().reshape(-1, 2).norm(dim=-1)

            if self.xys_grad_norm is None:
                self.xys_grad_norm = grads
                self.vis_counts = torch.ones_like(grads)
            else:
                self.vis_counts[visible] += 1
                self.xys_grad_norm[visible] += grads[visible]

            if self.max_2d_size is None:
                self.max_2d_size = torch.zeros_like(radii, dtype=torch.float32)

            new_radii = radii[visible].float()
            self.max_2d_size[visible] = torch.maximum(
                self.max_2d_size[visible],
                new_radii / float(max(last_height, last_width))
            )

    # ========================================================================
    # Refinement
    # ========================================================================

    def after_train(self, model, step: int) -> None:
        """
        Update statistics and, on refinement steps, densify / cull / reset.

        Args:
            model: GaussianModel owning this controller
            step: Current training step (1-based)
        """
        if step < self.stop_split_at:
            self.accumulate(model.xys, model.radii, model.last_height, model.last_width)

        if step % self.refine_every != 0 or step <= self.warmup_length:
            return

        reset_interval = self.reset_alpha_every * self.refine_every
        do_densification = step < self.stop_split_at and \
            step % reset_interval > self.num_cameras + self.refine_every

        if do_densification and self.xys_grad_norm is not None:
            splits_mask = self.densify(model, step)
            self.cull(model, step, splits_mask)

        if step < self.stop_split_at and step % reset_interval == self.refine_every:
            self.reset_opacity(model)

        self.clear()

    def densify(self, model, step: int) -> torch.Tensor:
        """
        Split and duplicate high-gradient Gaussians.

        Returns:
            Bool mask over the grown model marking the split originals
        """
        params = model.params
        with torch.no_grad():
            avg_grad_norm = (self.xys_grad_norm / self.vis_counts) * 0.5 * max(model.last_width, model.last_height)
            high_grads = avg_grad_norm > self.densify_grad_thresh

            max_scales = torch.exp(params['scales']).max(dim=-1).values
            splits = max_scales > self.densify_size_thresh
            if step < self.stop_screen_size_at:
                splits |= self.max_2d_size > self.split_screen_size
            splits &= high_grads

            dups = max_scales <= self.densify_size_thresh
            dups &= high_grads
            dups &= ~splits

            split_rows = self.split_rows(params, splits)
            dup_rows = {name: params[name].detach()[dups] for name in model.PARAM_NAMES}

            # Originals shrink too; they are culled right after
            params['scales'][splits] = torch.log(torch.exp(params['scales'][splits]) / SPLIT_SIZE_FACTOR)

        split_idcs = torch.nonzero(splits).squeeze(-1)
        dup_idcs = torch.nonzero(dups).squeeze(-1)
        num_before = model.num_gaussians()

        model.grow(split_rows, split_idcs, NUM_SPLIT_SAMPLES)
        model.grow(dup_rows, dup_idcs, 1)

        num_added = model.num_gaussians() - num_before
        print(f"Added {num_added} gaussians, new count {model.num_gaussians()}")

        # Added Gaussians have no screen-size record yet
        if self.max_2d_size is not None:
            self.max_2d_size = torch.cat([
                self.max_2d_size,
                torch.zeros(num_added, dtype=self.max_2d_size.dtype, device=self.max_2d_size.device)
            ])

        return torch.cat([
            splits,
            torch.zeros(num_added, dtype=torch.bool, device=splits.device)
        ])

    @staticmethod
    def split_rows(params, splits: torch.Tensor) -> Dict[str, torch.Tensor]:
        """New rows for the split Gaussians, NUM_SPLIT_SAMPLES per original."""
        n = NUM_SPLIT_SAMPLES
        means = params['means'].detach()
        scales = params['scales'].detach()
        quats = params['quats'].detach()
        num_splits = int(splits.sum().item())

        centered_samples = torch.randn((n * num_splits, 3), device=means.device)
        scaled_samples = torch.exp(scales[splits].repeat(n, 1)) * centered_samples
        qs = quats[splits] / quats[splits].norm(dim=-1, keepdim=True)
        rots = quat_to_rotmat(qs.repeat(n, 1))
        rotated_samples = torch.bmm(rots, scaled_samples[..., None]).squeeze(-1)

        return {
            'means': rotated_samples + means[splits].repeat(n, 1),
            'scales': torch.log(torch.exp(scales[splits]) / SPLIT_SIZE_FACTOR).repeat(n, 1),
            'quats': quats[splits].repeat(n, 1),
            'features_dc': params['features_dc'].detach()[splits].repeat(n, 1),
            'features_rest': params['features_rest'].detach()[splits].repeat(n, 1, 1),
            'opacities': params['opacities'].detach()[splits].repeat(n, 1),
        }

    def cull(self, model, step: int, splits_mask: Optional[torch.Tensor] = None) -> None:
        """Remove transparent Gaussians, split originals and (later on) huge ones."""
        params = model.params
        num_before = model.num_gaussians()

        with torch.no_grad():
            culls = (torch.sigmoid(params['opacities']) < CULL_ALPHA_THRESH).squeeze(-1)
            if splits_mask is not None:
                culls |= splits_mask

            if step > self.refine_every * self.reset_alpha_every:
                huge = torch.exp(params['scales']).max(dim=-1).values > CULL_SCALE_THRESH
                if step < self.stop_screen_size_at and self.max_2d_size is not None:
                    huge |= self.max_2d_size > CULL_SCREEN_SIZE
                culls |= huge

        num_culled = int(culls.sum().item())
        if num_culled > 0:
            model.prune(culls)

        print(f"Culled {num_before - model.num_gaussians()} gaussians, remaining {model.num_gaussians()}")

    def reset_opacity(self, model) -> None:
        """Clamp opacities to RESET_OPACITY and restart their Adam moments."""
        reset_value = math.log(RESET_OPACITY / (1.0 - RESET_OPACITY))
        with torch.no_grad():
            model.params['opacities'].clamp_(max=reset_value)
        model.reset_optimizer('opacities')
        print("Alpha reset")
