"""
Optimizer helpers for per-parameter Adam optimizers.

Each Gaussian parameter tensor has its own single-parameter torch.optim.Adam.
When Gaussians are added or removed the parameter tensor is replaced by a new
one with a different number of rows; the Adam moments (exp_avg, exp_avg_sq)
must be resized identically and re-keyed to the new tensor, otherwise row i
of the parameter and row i of its moments would stop describing the same
Gaussian.
"""

import math
import torch
from typing import Callable


class OptimScheduler:
    """
    Log-linear learning rate decay from the optimizer's initial LR to lr_final.

        lr(step) = exp(log(lr_init) * (1 - t) + log(lr_final) * t),
        t = clamp(step / max_steps, 0, 1)

    The LR is non-increasing in step and equals lr_final from max_steps on.
    """

    def __init__(self, optimizer: torch.optim.Optimizer, lr_final: float, max_steps: int):
        self.optimizer = optimizer
        self.lr_init = optimizer.param_groups[0]["lr"]
        self.lr_final = lr_final
        self.max_steps = max_steps

        if lr_final > self.lr_init:
            raise ValueError(f"lr_final ({lr_final}) must not exceed the initial LR ({self.lr_init})")

    def get_learning_rate(self, step: int) -> float:
        if self.max_steps <= 0:
            return self.lr_final
        t = max(min(step / self.max_steps, 1.0), 0.0)
        if t >= 1.0:
            return self.lr_final
        return math.exp(math.log(self.lr_init) * (1.0 - t) + math.log(self.lr_final) * t)

    def step(self, step: int) -> None:
        lr = self.get_learning_rate(step)
        for group in self.optimizer.param_groups:
            group["lr"] = lr


def _rebind_param(
    optimizer: torch.optim.Optimizer,
    new_param: torch.Tensor,
    state_fn: Callable[[torch.Tensor], torch.Tensor]
) -> None:
    """
    Replace the optimizer's parameter with new_param, transforming every
    per-row state tensor with state_fn. The step counter is kept.

    Before the first optimizer step there is no state and only the parameter
    is swapped.
    """
    old_param = optimizer.param_groups[0]["params"][0]
    param_state = optimizer.state.pop(old_param, None)

    if param_state:
        for key, value in param_state.items():
            if key != "step" and torch.is_tensor(value) and value.dim() > 0:
                param_state[key] = state_fn(value)
        optimizer.state[new_param] = param_state

    optimizer.param_groups[0]["params"] = [new_param]


def append_optimizer_rows(
    optimizer: torch.optim.Optimizer,
    new_param: torch.Tensor,
    idcs: torch.Tensor,
    n_samples: int
) -> None:
    """
    Grow the optimizer state for len(idcs) * n_samples appended rows.

    New rows start from zero moments; existing rows keep their moments.

    Args:
        optimizer: Single-parameter optimizer
        new_param: Parameter tensor that already contains the appended rows
        idcs: Indices of the source Gaussians the new rows were derived from
        n_samples: Number of new rows per source Gaussian
    """
    num_new = int(idcs.numel()) * n_samples

    def extend(v: torch.Tensor) -> torch.Tensor:
        zeros = torch.zeros((num_new, *v.shape[1:]), dtype=v.dtype, device=v.device)
        return torch.cat([v, zeros], dim=0)

    _rebind_param(optimizer, new_param, extend)


def remove_optimizer_rows(
    optimizer: torch.optim.Optimizer,
    new_param: torch.Tensor,
    deleted_mask: torch.Tensor
) -> None:
    """
    Drop the optimizer state rows flagged in deleted_mask, keeping the order
    of the surviving rows.

    Args:
        optimizer: Single-parameter optimizer
        new_param: Parameter tensor with the rows already removed
        deleted_mask: Bool [N_old], True for removed rows
    """
    keep = ~deleted_mask
    _rebind_param(optimizer, new_param, lambda v: v[keep])


def reset_optimizer_state(optimizer: torch.optim.Optimizer) -> None:
    """Zero the Adam moments of every parameter (the step counter is kept)."""
    for param_state in optimizer.state.values():
        for key in ("exp_avg", "exp_avg_sq", "max_exp_avg_sq"):
            if key in param_state:
                param_state[key] = torch.zeros_like(param_state[key])


def optimizer_state_rows(optimizer: torch.optim.Optimizer, key: str = "exp_avg") -> int:
    """Row count of an optimizer state tensor, -1 when there is no state yet."""
    param = optimizer.param_groups[0]["params"][0]
    param_state = optimizer.state.get(param)
    if not param_state or key not in param_state:
        return -1
    return param_state[key].shape[0]
