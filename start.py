#!/usr/bin/env python3
"""
Gaussian Splat Training - Entry Point

Usage:
    python start.py <colmap or nerfstudio project path> -o splat.ply
"""

import argparse
import sys
import os
from pathlib import Path
import traceback

# Add project root to path
_project_root = Path(__file__).parent.absolute()
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import torch
from gstrain.train import train


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Gaussian Splat Training",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # Input / output
    parser.add_argument("input", type=str, help="Path to a colmap or nerfstudio project")
    parser.add_argument("-o", "--output", type=str, default="splat.ply",
                        help="Path where to save output scene")
    parser.add_argument("-s", "--save-every", type=int, default=-1,
                        help="Save output scene every these many steps (set to -1 to disable)")
    parser.add_argument("--val", action="store_true",
                        help="Withhold a camera shot for validating the scene loss")
    parser.add_argument("--val-image", type=str, default="random",
                        help="Filename of the image to withhold for validating scene loss")
    parser.add_argument("--val-render", type=str, default="",
                        help="Path of the directory where to render validation images")
    parser.add_argument("--val-every", type=int, default=50,
                        help="Dump evaluation images every this amount of iterations")
    parser.add_argument("--cpu", action="store_true", help="Force CPU execution")
    parser.add_argument("--mesh-file", type=str, default="",
                        help="Filename of a .ply file specifying the gaussians defining the structure of input")
    parser.add_argument("--fixed", action="store_true",
                        help="No splitting/duplicating/pruning of gaussians")

    # Training settings
    parser.add_argument("-n", "--num-iters", type=int, default=30000)
    parser.add_argument("-d", "--downscale-factor", type=float, default=1.0,
                        help="Scale input images by this factor")
    parser.add_argument("--num-downscales", type=int, default=2,
                        help="Number of image downscales to use at the start of training")
    parser.add_argument("--resolution-schedule", type=int, default=3000,
                        help="Double the image resolution every these many steps")
    parser.add_argument("--sh-degree", type=int, default=3)
    parser.add_argument("--sh-degree-interval", type=int, default=1000,
                        help="Increase the spherical harmonics degree after these many steps")
    parser.add_argument("--ssim-weight", type=float, default=0.2,
                        help="Weight of the structural similarity loss (0 for L1 only)")

    # Density control
    parser.add_argument("--refine-every", type=int, default=100,
                        help="Split/duplicate/prune gaussians every these many steps")
    parser.add_argument("--warmup-length", type=int, default=500,
                        help="Split/duplicate/prune gaussians only after these many steps")
    parser.add_argument("--reset-alpha-every", type=int, default=30,
                        help="Reset opacities after these many refinements (not steps)")
    parser.add_argument("--stop-split-at", type=int, default=15000,
                        help="Stop splitting/duplicating gaussians after these many steps")
    parser.add_argument("--densify-grad-thresh", type=float, default=0.0002)
    parser.add_argument("--densify-size-thresh", type=float, default=0.01,
                        help="Gaussians' scales below this threshold are duplicated, otherwise split")
    parser.add_argument("--stop-screen-size-at", type=int, default=4000)
    parser.add_argument("--split-screen-size", type=float, default=0.05,
                        help="Split gaussians that are larger than this fraction of screen space")

    # Logging
    parser.add_argument("--log-every", type=int, default=None,
                        help="Print the loss every these many steps (default: 10 on CUDA, 1 on CPU)")
    parser.add_argument("--seed", type=int, default=42)

    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    # Check device
    if torch.cuda.is_available() and not args.cpu:
        print("Using CUDA")
        device = torch.device("cuda")
    else:
        print("Using CPU")
        device = torch.device("cpu")

    if not os.path.exists(args.input):
        print(f"[ERROR] Project not found: {args.input}")
        sys.exit(1)

    try:
        train(
            project_root=args.input,
            output=args.output,
            save_every=args.save_every,
            validate=args.val or bool(args.val_render),
            val_image=args.val_image,
            val_render=args.val_render,
            val_every=args.val_every,
            mesh_file=args.mesh_file,
            fixed=args.fixed,
            num_iters=args.num_iters,
            downscale_factor=args.downscale_factor,
            num_downscales=args.num_downscales,
            resolution_schedule=args.resolution_schedule,
            sh_degree=args.sh_degree,
            sh_degree_interval=args.sh_degree_interval,
            ssim_weight=args.ssim_weight,
            refine_every=args.refine_every,
            warmup_length=args.warmup_length,
            reset_alpha_every=args.reset_alpha_every,
            stop_split_at=args.stop_split_at,
            densify_grad_thresh=args.densify_grad_thresh,
            densify_size_thresh=args.densify_size_thresh,
            stop_screen_size_at=args.stop_screen_size_at,
            split_screen_size=args.split_screen_size,
            device=device,
            log_every=args.log_every,
            seed=args.seed
        )
    except KeyboardInterrupt:
        print("\n[INFO] Interrupted by user")
        sys.exit(0)
    except Exception as e:
        print(f"\n[ERROR] {e}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
