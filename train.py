#
# Copyright (C) 2023, Inria
# GRAPHDECO research group, https://team.inria.fr/graphdeco
# All rights reserved.
#
# This software is free for non-commercial, research and evaluation use
# under the terms of the LICENSE.md file.
#
# For inquiries contact  george.drettakis@inria.fr
#

import os
import torch
import yaml
import sys
from scene import Scene, GaussianModel
from utils.general_utils import safe_state
import uuid
from argparse import ArgumentParser, Namespace
from arguments import ModelParams, OptimizationParams
from training import GaussianTrainer
from gaussian_renderer import render

try:
    from torch.utils.tensorboard import SummaryWriter
    TENSORBOARD_FOUND = True
except ImportError:
    TENSORBOARD_FOUND = False


def save_training_config(output_dir, dataset, opt):
    """Save the resolved training configuration to YAML for experiment tracking."""
    config = {
        'training_hyperparameters': {
            'iterations': opt.iterations,
            'position_lr_init': opt.position_lr_init,
            'position_lr_final': opt.position_lr_final,
            'ssim_weight': opt.ssim_weight,
            'num_downscales': opt.num_downscales,
            'resolution_schedule': opt.resolution_schedule,
            'sh_degree_interval': opt.sh_degree_interval,
        },
        'densification': {
            'fixed': opt.fixed,
            'refine_every': opt.refine_every,
            'warmup_length': opt.warmup_length,
            'reset_alpha_every': opt.reset_alpha_every,
            'stop_split_at': opt.stop_split_at,
            'densify_grad_thresh': opt.densify_grad_thresh,
            'densify_size_thresh': opt.densify_size_thresh,
            'stop_screen_size_at': opt.stop_screen_size_at,
            'split_screen_size': opt.split_screen_size,
        },
        'dataset_settings': {
            'source_path': dataset.source_path,
            'model_path': dataset.model_path,
            'mesh_file': dataset.mesh_file,
            'sh_degree': dataset.sh_degree,
            'downscale_factor': dataset.downscale_factor,
            'val': dataset.val,
            'val_image': dataset.val_image,
        },
    }

    config_path = os.path.join(output_dir, 'training_config.yaml')
    with open(config_path, 'w') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    print(f"[Config] Saved training configuration to: {config_path}\n")

def training(dataset, opt, testing_iterations, saving_iterations, checkpoint_iterations, checkpoint, quiet=False):
    tb_writer = prepare_output_and_logger(dataset)
    save_training_config(dataset.model_path, dataset, opt)

    device = dataset.data_device
    gaussians = GaussianModel(dataset.sh_degree, device=device)
    scene = Scene(dataset, gaussians, init_opacity=opt.init_opacity)
    gaussians.training_setup(opt)

    if dataset.white_background:
        bg_color = [1, 1, 1]
    else:
        bg_color = scene.background
    background = torch.tensor(bg_color, dtype=torch.float32, device=device)

    print("\n" + "=" * 90)
    print("  TRAINING CONFIGURATION")
    print("-" * 90)
    print(f"  Gaussians            │  {gaussians.num_points:,}{' (fixed geometry)' if gaussians.geometry_frozen else ''}")
    print(f"  Cameras              │  {len(scene.getTrainCameras())} train, {'1' if scene.getValCamera() else '0'} validation")
    print(f"  Scene extent         │  {scene.cameras_extent:.4f}")
    print(f"  Density control      │  {'off (fixed)' if opt.fixed else 'on'}")
    print(f"  Iterations           │  {opt.iterations:,}")
    print("=" * 90 + "\n")

    trainer = GaussianTrainer(gaussians, scene.getTrainCameras(), opt, render, background,
                              scene_extent=scene.cameras_extent,
                              model_path=dataset.model_path,
                              val_camera=scene.getValCamera(),
                              saving_iterations=saving_iterations,
                              checkpoint_iterations=checkpoint_iterations,
                              testing_iterations=testing_iterations,
                              tb_writer=tb_writer,
                              val_render=dataset.val_render,
                              val_every=dataset.val_every,
                              quiet=quiet)
    if checkpoint:
        trainer.restore_checkpoint(checkpoint)

    return trainer.train()

def prepare_output_and_logger(args):
    if not args.model_path:
        if os.getenv('OAR_JOB_ID'):
            unique_str=os.getenv('OAR_JOB_ID')
        else:
            unique_str = str(uuid.uuid4())
        args.model_path = os.path.join("./output/", unique_str[0:10])

    # Set up output folder
    print("Output folder: {}".format(args.model_path))
    os.makedirs(args.model_path, exist_ok = True)
    with open(os.path.join(args.model_path, "cfg_args"), 'w') as cfg_log_f:
        cfg_log_f.write(str(Namespace(**vars(args))))

    # Create Tensorboard writer
    tb_writer = None
    if TENSORBOARD_FOUND:
        tb_writer = SummaryWriter(args.model_path)
    else:
        print("Tensorboard not available: not logging progress")
    return tb_writer

if __name__ == "__main__":
    # Set up command line argument parser
    parser = ArgumentParser(description="Training script parameters")
    lp = ModelParams(parser)
    op = OptimizationParams(parser)
    parser.add_argument('--detect_anomaly', action='store_true', default=False)
    parser.add_argument("--test_iterations", nargs="+", type=int, default=[7_000, 30_000])
    parser.add_argument("--save_iterations", nargs="+", type=int, default=[30_000])
    parser.add_argument("--quiet", action="store_true")
    parser.add_argument("--checkpoint_iterations", nargs="+", type=int, default=[])
    parser.add_argument("--start_checkpoint", type=str, default = None)
    args = parser.parse_args(sys.argv[1:])
    args.save_iterations.append(args.iterations)

    print("Optimizing " + args.model_path)

    # Initialize system state (RNG)
    safe_state(args.quiet)

    torch.autograd.set_detect_anomaly(args.detect_anomaly)
    training(lp.extract(args), op.extract(args), args.test_iterations, args.save_iterations, args.checkpoint_iterations, args.start_checkpoint, args.quiet)

    # All done
    print("\nTraining complete.")
