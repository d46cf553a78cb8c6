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

import random
import cv2
import numpy as np
import torch
from PIL import Image
from utils.graphics_utils import nerfstudio_to_viewmat
from utils.errors import ConfigurationError

def image_to_tensor(image, device="cpu"):
    """HxWx3 uint8 array to a 3xHxW float tensor in [0, 1]."""
    return torch.from_numpy(np.ascontiguousarray(image)).float().div(255.0).permute(2, 0, 1).to(device)

def tensor_to_image(tensor):
    return (tensor.detach().clamp(0.0, 1.0).permute(1, 2, 0).cpu().numpy() * 255.0).round().astype(np.uint8)

class Camera:
    def __init__(self, uid, image_name, width, height, fx, fy, cx, cy, c2w,
                 image_path=None, image=None, k1=0.0, k2=0.0, k3=0.0, p1=0.0, p2=0.0,
                 data_device="cuda"):
        self.uid = uid
        self.image_name = image_name
        self.image_path = image_path
        self.width = int(width)
        self.height = int(height)
        self.fx = float(fx)
        self.fy = float(fy)
        self.cx = float(cx)
        self.cy = float(cy)
        self.k1, self.k2, self.k3, self.p1, self.p2 = float(k1), float(k2), float(k3), float(p1), float(p2)
        self.c2w = torch.as_tensor(c2w, dtype=torch.float32)
        self.data_device = data_device
        self.image_pyramids = {}

        self.original_image = None
        if image is not None:
            self.original_image = image.clamp(0.0, 1.0).to(self.data_device)
            self.height, self.width = self.original_image.shape[1], self.original_image.shape[2]

        self.world_view_transform = nerfstudio_to_viewmat(self.c2w)
        self.camera_center = self.c2w[:3, 3]

    def has_distortion(self):
        return self.k1 != 0.0 or self.k2 != 0.0 or self.k3 != 0.0 or self.p1 != 0.0 or self.p2 != 0.0

    def undistortion_parameters(self):
        return np.array([self.k1, self.k2, self.p1, self.p2, self.k3], dtype=np.float64)

    def load_image(self, downscale_factor=1.0):
        """
        Read the image, bring it to 1 / downscale_factor of its size, undistort it and
        crop it to the valid region. Intrinsics and size are updated to match, so this
        must happen at most once per camera.
        """
        if self.original_image is not None:
            raise RuntimeError("Image for camera {} is already loaded".format(self.image_name))
        print("Loading {}".format(self.image_path))

        image = np.asarray(Image.open(self.image_path).convert("RGB"))

        scale_factor = 1.0 / downscale_factor
        rescale = 1.0
        # Intrinsics were given for a different resolution than the stored image
        if image.shape[0] != self.height or image.shape[1] != self.width:
            rescale = image.shape[0] / float(self.height)
        self.fx *= scale_factor * rescale
        self.fy *= scale_factor * rescale
        self.cx *= scale_factor * rescale
        self.cy *= scale_factor * rescale

        if downscale_factor > 1.0:
            image = cv2.resize(image, None, fx=scale_factor, fy=scale_factor, interpolation=cv2.INTER_AREA)

        K = np.array([[self.fx, 0.0, self.cx],
                      [0.0, self.fy, self.cy],
                      [0.0, 0.0, 1.0]], dtype=np.float64)
        if self.has_distortion():
            dist_coeffs = self.undistortion_parameters()
            new_K, roi = cv2.getOptimalNewCameraMatrix(K, dist_coeffs, (image.shape[1], image.shape[0]), 0)
            image = cv2.undistort(image, K, dist_coeffs, None, new_K)
            K = new_K
        else:
            roi = (0, 0, image.shape[1], image.shape[0])

        x, y, w, h = roi
        image = image[y:y + h, x:x + w]

        self.original_image = image_to_tensor(image, self.data_device)
        self.height, self.width = image.shape[0], image.shape[1]
        self.fx, self.fy = float(K[0, 0]), float(K[1, 1])
        self.cx, self.cy = float(K[0, 2]), float(K[1, 2])

    def _ensure_loaded(self):
        if self.original_image is None:
            self.load_image()

    def get_image(self, downscale_factor=1):
        self._ensure_loaded()
        if downscale_factor <= 1:
            return self.original_image
        if downscale_factor in self.image_pyramids:
            return self.image_pyramids[downscale_factor]

        image = tensor_to_image(self.original_image)
        image = cv2.resize(image, (image.shape[1] // downscale_factor, image.shape[0] // downscale_factor),
                           interpolation=cv2.INTER_AREA)
        tensor = image_to_tensor(image, self.data_device)
        self.image_pyramids[downscale_factor] = tensor
        return tensor

    def intrinsics(self, downscale_factor=1):
        ''' (fx, fy, cx, cy, width, height) for rendering at 1 / downscale_factor of the image size '''
        self._ensure_loaded()
        f = float(downscale_factor)
        return (self.fx / f, self.fy / f, self.cx / f, self.cy / f,
                self.width // int(downscale_factor), self.height // int(downscale_factor))

    def to_json(self):
        return {
            'id': self.uid,
            'img_name': self.image_name,
            'width': self.width,
            'height': self.height,
            'position': self.camera_center.tolist(),
            'rotation': self.c2w[:3, :3].tolist(),
            'fx': self.fx,
            'fy': self.fy,
        }

class InfiniteCameraIterator:
    """
    Endless camera stream. Every epoch visits each camera exactly once in a fresh
    random order; the order is reproducible from the seed.
    """

    def __init__(self, cameras, seed=42):
        if len(cameras) == 0:
            raise ConfigurationError("No training cameras available")
        self.cameras = list(cameras)
        self.rng = random.Random(seed)
        self.viewpoint_stack = None
        self.epoch = 0

    def __iter__(self):
        return self

    def __next__(self):
        if not self.viewpoint_stack:
            self.viewpoint_stack = self.cameras.copy()
            self.epoch += 1
        return self.viewpoint_stack.pop(self.rng.randint(0, len(self.viewpoint_stack) - 1))
