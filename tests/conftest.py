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

from argparse import ArgumentParser

import numpy as np
import pytest
import torch

from arguments import ModelParams, OptimizationParams
from scene.cameras import Camera
from scene.gaussian_model import GaussianModel
from utils.general_utils import build_rotation
from utils.graphics_utils import BasicPointCloud
from utils.sh_utils import SH2RGB

SH_C1 = 0.4886025119029199


def default_opt(**overrides):
    parser = ArgumentParser()
    op = OptimizationParams(parser)
    ModelParams(parser)
    opt = op.extract(parser.parse_args([]))
    for key, value in overrides.items():
        setattr(opt, key, value)
    return opt


def make_gaussians(num_points=16, sh_degree=1, seed=0, spread=0.3):
    torch.manual_seed(seed)
    rng = np.random.default_rng(seed)
    points = rng.uniform(-spread, spread, size=(num_points, 3)).astype(np.float32)
    colors = rng.uniform(0.0, 1.0, size=(num_points, 3)).astype(np.float32)
    gaussians = GaussianModel(sh_degree, device="cpu")
    gaussians.create_from_pcd(BasicPointCloud(points=points, colors=colors))
    return gaussians


def make_camera(uid=0, width=16, height=12, distance=3.0, image=None, offset_x=0.0):
    """Camera on the +z axis looking at the origin (nerfstudio axes)."""
    c2w = torch.eye(4)
    c2w[0, 3] = offset_x
    c2w[2, 3] = distance
    if image is None:
        g = torch.Generator().manual_seed(uid)
        image = torch.rand((3, height, width), generator=g)
    return Camera(uid=uid, image_name="frame_{:03d}.png".format(uid), width=width, height=height,
                  fx=20.0, fy=20.0, cx=width / 2.0, cy=height / 2.0, c2w=c2w, image=image,
                  data_device="cpu")


def toy_render(camera, gaussians, bg_color, downscale_factor=1):
    """
    Differentiable isotropic splatting in plain torch with degree-1 SH colors,
    following the renderer contract: projected means keep their gradient, radii and visibility are
    reported per Gaussian.
    """
    fx, fy, cx, cy, width, height = camera.intrinsics(downscale_factor)
    viewmat = camera.world_view_transform
    means = gaussians.get_xyz
    cam_pts = means @ viewmat[:3, :3].T + viewmat[:3, 3]
    z = cam_pts[:, 2].clamp(min=1e-3)
    means2d = torch.stack([fx * cam_pts[:, 0] / z + cx, fy * cam_pts[:, 1] / z + cy], dim=-1)
    if means2d.requires_grad:
        means2d.retain_grad()

    # Screen footprint from the covariance R S^2 R^T seen in camera axes
    R = build_rotation(gaussians.get_rotation)
    cov = R @ torch.diag_embed(gaussians.get_scaling ** 2) @ R.transpose(1, 2)
    W = viewmat[:3, :3]
    cov_cam = W[None] @ cov @ W.T[None]
    world_sigma = torch.sqrt(0.5 * (cov_cam[:, 0, 0] + cov_cam[:, 1, 1]))
    sigma = (world_sigma * fx / z).clamp(min=0.5, max=50.0)
    visible = cam_pts[:, 2] > 0.01
    radii = torch.where(visible, (3.0 * sigma).detach().ceil(), torch.zeros_like(sigma))

    ys, xs = torch.meshgrid(torch.arange(height, dtype=torch.float32) + 0.5,
                            torch.arange(width, dtype=torch.float32) + 0.5, indexing="ij")
    pix = torch.stack([xs, ys], dim=-1).reshape(-1, 2)
    d2 = ((pix[:, None, :] - means2d[None, :, :]) ** 2).sum(-1)
    weights = gaussians.get_opacity.squeeze(-1)[None] * torch.exp(-0.5 * d2 / sigma[None] ** 2) * visible[None]

    sh = gaussians._features_dc.squeeze(1)
    if gaussians.active_sh_degree > 0:
        dirs = torch.nn.functional.normalize(means - camera.camera_center[None], dim=-1)
        x, y, z_dir = dirs[:, 0:1], dirs[:, 1:2], dirs[:, 2:3]
        rest = gaussians._features_rest
        sh = sh - SH_C1 * y * rest[:, 0] + SH_C1 * z_dir * rest[:, 1] - SH_C1 * x * rest[:, 2]
    colors = SH2RGB(sh).clamp(0.0, 1.0)
    coverage = 1.0 - torch.prod(1.0 - weights.clamp(max=0.99), dim=1)
    rgb = (weights @ colors) / (weights.sum(dim=1, keepdim=True) + 1e-6)
    rgb = rgb * coverage[:, None] + bg_color[None] * (1.0 - coverage[:, None])

    return {"render": rgb.T.reshape(3, height, width),
            "viewspace_points": means2d,
            "visibility_filter": radii > 0,
            "radii": radii,
            "width": width,
            "height": height}


@pytest.fixture
def opt():
    return default_opt()


@pytest.fixture
def gaussians():
    return make_gaussians()


@pytest.fixture
def background():
    return torch.tensor([0.0, 0.0, 0.0])
