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
import numpy as np
from typing import NamedTuple
from scipy.spatial import cKDTree

class BasicPointCloud(NamedTuple):
    points : np.array
    colors : np.array

def nerfstudio_to_viewmat(c2w):
    """
    World-to-camera matrix for a nerfstudio (OpenGL axes) camera-to-world pose.
    The y and z axes are flipped into the OpenCV convention used by the rasterizer.
    """
    c2w = torch.as_tensor(c2w, dtype=torch.float32)
    R = c2w[:3, :3] @ torch.diag(torch.tensor([1.0, -1.0, -1.0]))
    T = c2w[:3, 3:4]
    Rinv = R.T
    Tinv = -Rinv @ T
    viewmat = torch.eye(4)
    viewmat[:3, :3] = Rinv
    viewmat[:3, 3:4] = Tinv
    return viewmat

def auto_scale_and_center_poses(c2ws):
    """
    Center the camera origins on their mean and scale them into the unit cube.
    Returns the normalized poses together with the translation and scale applied,
    so that points loaded later can be moved into the same frame.
    """
    c2ws = np.asarray(c2ws, dtype=np.float64)
    origins = c2ws[:, :3, 3]
    translation = origins.mean(axis=0)
    extent = np.abs(origins - translation).max()
    scale = 1.0 / extent if extent > 0 else 1.0

    poses = c2ws.copy()
    poses[:, :3, 3] = (origins - translation) * scale
    return poses, translation, float(scale)

def get_scene_extent(camera_centers):
    """Radius of the camera rig around its centroid, padded by 10% as in the nerf++ normalization."""
    cam_centers = np.asarray(camera_centers, dtype=np.float64)
    if len(cam_centers) == 0:
        return 1.0
    center = cam_centers.mean(axis=0, keepdims=True)
    diagonal = np.linalg.norm(cam_centers - center, axis=1).max()
    radius = diagonal * 1.1
    return float(radius) if radius > 0 else 1.0

def nearest_neighbor_scales(points, k=3, default=0.01):
    """
    Mean distance from every point to its k nearest neighbours.
    A point set too small for any neighbour falls back to a constant spacing.
    """
    points = np.asarray(points, dtype=np.float64)
    n = points.shape[0]
    if n < 2:
        return np.full((n,), default, dtype=np.float32)
    tree = cKDTree(points)
    query_k = min(k + 1, n)
    dists, _ = tree.query(points, k=query_k)
    # First column is the point itself
    mean_dist = dists[:, 1:].mean(axis=1)
    return np.clip(mean_dist, 1e-7, None).astype(np.float32)

def pixel_to_ndc_gradients(grad, width, height):
    """Rescale screen-space gradients from pixels to normalized device coordinates."""
    scale = torch.tensor([width * 0.5, height * 0.5], device=grad.device, dtype=grad.dtype)
    return grad * scale
