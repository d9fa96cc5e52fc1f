"""
Training loop for Gaussian splats.

One step:
    1. pick the next training camera (shuffled, every camera once per pass)
    2. render it, compare with its image at the current resolution
    3. backpropagate, step every optimizer and the LR schedule
    4. let the density controller split / duplicate / cull Gaussians
    5. write an intermediate scene every save_every steps

At the end the scene is written to `output`, per-camera losses to
`losses.txt` beside it, and the withheld validation camera (if any) is
scored once.
"""

import os
import random
import time
import torch
from typing import Callable, Dict, Generic, List, Optional, Sequence, TypeVar
from tqdm import tqdm

from gstrain.camera import Camera
from gstrain.image_utils import imwrite_rgb, tensor_to_image
from gstrain.input_data import input_data_from_project
from gstrain.loss import psnr
from gstrain.model import GaussianModel


T = TypeVar("T")


class InfiniteRandomIterator(Generic[T]):
    """
    Endless random cycling over a fixed list.

    Every item is returned exactly once per pass; the order is reshuffled
    after each full pass. Seeded, so runs are reproducible.
    """

    def __init__(self, items: Sequence[T], seed: int = 42):
        if len(items) == 0:
            raise ValueError("Cannot iterate over an empty sequence")
        self.items = list(items)
        self.rng = random.Random(seed)
        self.order: List[int] = []
        self.position = 0
        self.shuffle()

    def shuffle(self) -> None:
        self.order = list(range(len(self.items)))
        self.rng.shuffle(self.order)
        self.position = 0

    def next(self) -> T:
        if self.position >= len(self.order):
            self.shuffle()
        item = self.items[self.order[self.position]]
        self.position += 1
        return item

    def __iter__(self):
        return self

    def __next__(self) -> T:
        return self.next()


def checkpoint_path(output: str, step: int) -> str:
    """'out/splat.ply', 100 -> 'out/splat_100.ply'"""
    directory, filename = os.path.split(output)
    stem, ext = os.path.splitext(filename)
    return os.path.join(directory, f"{stem}_{step}{ext}")


def write_losses(path: str, losses_by_camera: List[List[float]], num_iters: int) -> None:
    """
    Write per-camera training losses.

    Format:
        line 1: number of training cameras
        one line per camera: its losses in the order they were recorded
        last line: for each index i, the mean of the i-th loss of every camera
                   that has one; stops at the first index no camera reached
    """
    with open(path, 'w') as f:
        f.write(f"{len(losses_by_camera)}\n")
        for losses in losses_by_camera:
            f.write("".join(f"{x} " for x in losses) + "\n")

        averages = []
        for iteration in range(num_iters):
            values = [losses[iteration] for losses in losses_by_camera if iteration < len(losses)]
            if not values:
                break
            averages.append(sum(values) / len(values))
        f.write("".join(f"{x} " for x in averages) + "\n")

    print(f"Wrote losses to {path}")


def render_validation_images(
    model: GaussianModel,
    cams: List[Camera],
    step: int,
    val_render: str
) -> None:
    """Dump the render and the ground truth of every training camera."""
    with torch.no_grad():
        for i, cam in enumerate(cams):
            rgb = model(cam, step)
            gt = cam.get_image(model.get_downscale_factor(step))
            imwrite_rgb(os.path.join(val_render, f"{step}_{i}.png"), tensor_to_image(rgb.detach().cpu()))
            imwrite_rgb(os.path.join(val_render, f"{step}_gt_{i}.png"), tensor_to_image(gt.cpu()))


def train(
    # Data
    project_root: str,
    output: str = "splat.ply",
    save_every: int = -1,
    validate: bool = False,
    val_image: str = "random",
    val_render: str = "",
    val_every: int = 50,
    mesh_file: str = "",
    fixed: bool = False,

    # Training settings
    num_iters: int = 30000,
    downscale_factor: float = 1.0,
    num_downscales: int = 2,
    resolution_schedule: int = 3000,
    sh_degree: int = 3,
    sh_degree_interval: int = 1000,
    ssim_weight: float = 0.2,

    # Density control
    refine_every: int = 100,
    warmup_length: int = 500,
    reset_alpha_every: int = 30,
    stop_split_at: int = 15000,
    densify_grad_thresh: float = 0.0002,
    densify_size_thresh: float = 0.01,
    stop_screen_size_at: int = 4000,
    split_screen_size: float = 0.05,

    # Device
    device: Optional[torch.device] = None,
    rasterize_fn: Optional[Callable] = None,

    # Logging
    log_every: Optional[int] = None,
    seed: int = 42
) -> Dict:
    """
    Train a Gaussian splat scene from a nerfstudio or COLMAP project.

    Args:
        project_root: Project directory
        output: Path of the final scene (.ply)
        save_every: Write an intermediate scene every these many steps (-1 disables)
        validate: Withhold one camera and score it after training
        val_image: Image file name to withhold, or "random"
        val_render: Directory for render / ground truth dumps ("" disables; implies validate)
        val_every: Steps between validation dumps
        mesh_file: Structure constraint .ply ("" for none)
        fixed: Never split, duplicate or prune Gaussians
        num_iters: Number of training steps
        downscale_factor: Global image downscale applied at load time
        num_downscales: Initial number of resolution halvings
        resolution_schedule: Steps between resolution doublings
        sh_degree: Maximum SH degree
        sh_degree_interval: Steps between SH degree increases
        ssim_weight: Weight of the SSIM term (0 for L1 only)
        refine_every .. split_screen_size: Density control schedule
        device: Device to use (default: CUDA when available)
        rasterize_fn: Rasterizer replacement (default: gsplat)
        log_every: Steps between progress lines (default: 10 on CUDA, 1 on CPU)
        seed: Seed for camera order, validation pick and model init

    Returns:
        Dict with 'losses_by_camera', 'val_loss', 'num_gaussians', 'checkpoints'
    """
    if device is None:
        device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    device = torch.device(device)
    if log_every is None:
        log_every = 10 if device.type == "cuda" else 1

    if val_render:
        validate = True
        os.makedirs(val_render, exist_ok=True)

    if fixed:
        refine_every = 2 * num_iters
        stop_split_at = 1

    print("=" * 60)
    print("Gaussian Splat Training")
    print("=" * 60)

    # ========================================================================
    # Load Input
    # ========================================================================
    input_data = input_data_from_project(project_root, mesh_file)
    for i, cam in enumerate(input_data.cameras):
        cam.idx = i

    downscale_factor = max(downscale_factor, 1.0)
    for cam in tqdm(input_data.cameras, desc="Loading images"):
        cam.load_image(downscale_factor)

    # Withhold a validation camera if necessary
    cams, val_cam = input_data.get_cameras(validate, val_image, seed=seed)
    print(f"Training cameras: {len(cams)}")
    if val_cam is not None:
        print(f"Validation camera: {val_cam.file_path}")

    # ========================================================================
    # Initialize Model
    # ========================================================================
    print("\nInitializing model...")
    model = GaussianModel(
        input_data,
        num_cameras=len(cams),
        num_downscales=num_downscales,
        resolution_schedule=resolution_schedule,
        sh_degree=sh_degree,
        sh_degree_interval=sh_degree_interval,
        refine_every=refine_every,
        warmup_length=warmup_length,
        reset_alpha_every=reset_alpha_every,
        stop_split_at=stop_split_at,
        densify_grad_thresh=densify_grad_thresh,
        densify_size_thresh=densify_size_thresh,
        stop_screen_size_at=stop_screen_size_at,
        split_screen_size=split_screen_size,
        max_steps=num_iters,
        background=input_data.background_color,
        device=device,
        rasterize_fn=rasterize_fn,
        seed=seed
    )

    # Losses are indexed by position in the training camera list
    cams_iter = InfiniteRandomIterator(list(range(len(cams))), seed=seed)
    losses_by_camera: List[List[float]] = [[] for _ in cams]
    checkpoints: List[str] = []

    # ========================================================================
    # Training Loop
    # ========================================================================
    print("\nStarting training...")
    start_time = time.time()

    for step in range(1, num_iters + 1):
        cam_pos = cams_iter.next()
        cam = cams[cam_pos]

        if val_render and step % val_every == 0:
            render_validation_images(model, cams, step, val_render)

        model.optimizers_zero_grad()

        rgb = model(cam, step)
        gt = cam.get_image(model.get_downscale_factor(step)).to(device)

        loss = model.main_loss(rgb, gt, ssim_weight)
        loss.backward()
        step_loss = loss.item()
        losses_by_camera[cam_pos].append(step_loss)

        if step % log_every == 0:
            print(f"Step {step}: {step_loss:.6f} | Gaussians: {model.num_gaussians()}")

        model.optimizers_step()
        model.schedulers_step(step)
        model.after_train(step)

        if save_every > 0 and step % save_every == 0:
            path = checkpoint_path(output, step)
            model.save_ply_splat(path)
            checkpoints.append(path)

    # ========================================================================
    # Final Save
    # ========================================================================
    model.save_ply_splat(output)

    losses_path = os.path.join(os.path.dirname(os.path.abspath(output)), "losses.txt")
    write_losses(losses_path, losses_by_camera, num_iters)

    # Validate
    val_loss = None
    if val_cam is not None:
        with torch.no_grad():
            rgb = model(val_cam, num_iters)
            gt = val_cam.get_image(model.get_downscale_factor(num_iters)).to(device)
            val_loss = model.main_loss(rgb, gt, ssim_weight).item()
            val_psnr = psnr(rgb, gt).item()
        print(f"{val_cam.file_path} validation loss: {val_loss:.6f} (PSNR: {val_psnr:.2f} dB)")

    print("\n" + "=" * 60)
    print("Training Complete!")
    print(f"Total time: {time.time() - start_time:.1f}s")
    print(f"Gaussians: {model.num_gaussians()}")
    print(f"Final scene: {output}")
    print("=" * 60)

    return {
        'losses_by_camera': losses_by_camera,
        'val_loss': val_loss,
        'num_gaussians': model.num_gaussians(),
        'checkpoints': checkpoints,
    }
