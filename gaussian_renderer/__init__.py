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

import torch
from gsplat.rendering import rasterization
from scene.gaussian_model import GaussianModel
from utils.sh_utils import num_sh_bases

def render(viewpoint_camera, pc : GaussianModel, bg_color : torch.Tensor, downscale_factor = 1):
    """
    Render the scene at 1 / downscale_factor of the camera resolution, evaluating
    spherical harmonics up to pc.active_sh_degree.

    Background tensor (bg_color) must be on the same device as the Gaussians!
    """
    fx, fy, cx, cy, width, height = viewpoint_camera.intrinsics(downscale_factor)
    device = pc.get_xyz.device

    K = torch.tensor([[fx, 0.0, cx],
                      [0.0, fy, cy],
                      [0.0, 0.0, 1.0]], dtype=torch.float32, device=device)
    viewmat = viewpoint_camera.world_view_transform.to(device)

    active_channels = num_sh_bases(pc.active_sh_degree)
    colors = pc.get_features[:, :active_channels, :]

    renders, alphas, info = rasterization(
        means=pc.get_xyz,
        quats=pc.get_rotation,
        scales=pc.get_scaling,
        opacities=pc.get_opacity.squeeze(-1),
        colors=colors,
        viewmats=viewmat[None],
        Ks=K[None],
        width=width,
        height=height,
        sh_degree=pc.active_sh_degree,
        backgrounds=bg_color[None],
        render_mode="RGB",
        packed=False,
    )

    # Projected means [1, N, 2] in pixels. Their gradient drives densification.
    screenspace_points = info["means2d"]
    if screenspace_points.requires_grad:
        screenspace_points.retain_grad()

    radii = info["radii"][0]
    if radii.dim() == 2:
        # Per-axis radii, keep the larger extent
        radii = radii.max(dim=-1).values

    rendered_image = renders[0].clamp(0.0, 1.0).permute(2, 0, 1)

    # Those Gaussians that were frustum culled or had a radius of 0 were not visible.
    # They will be excluded from value updates used in the splitting criteria.
    return {"render": rendered_image,
            "viewspace_points": screenspace_points,
            "visibility_filter" : radii > 0,
            "radii": radii,
            "width": width,
            "height": height}
