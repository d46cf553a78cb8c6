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
import json
from scene.dataset_readers import sceneLoadTypeCallbacks
from scene.gaussian_model import GaussianModel
from arguments import ModelParams
from utils.errors import InputDataError

class Scene:

    gaussians : GaussianModel

    def __init__(self, args : ModelParams, gaussians : GaussianModel, init_opacity=0.1):
        """
        Load the project at args.source_path and initialise the Gaussians from its
        point cloud, or from args.mesh_file when one is given.
        """
        self.model_path = args.model_path
        self.gaussians = gaussians

        # Rendering validation images implies holding out a validation camera
        val = args.val or bool(args.val_render)
        if os.path.exists(os.path.join(args.source_path, "transforms.json")):
            scene_info = sceneLoadTypeCallbacks["Nerfstudio"](args.source_path, args.mesh_file, val,
                                                              args.val_image, args.data_device)
        elif os.path.exists(os.path.join(args.source_path, "sparse")) or os.path.exists(os.path.join(args.source_path, "cameras.bin")):
            raise InputDataError("COLMAP projects are not supported, export {} to nerfstudio format first".format(args.source_path))
        else:
            raise InputDataError("Invalid project folder (must be a nerfstudio project folder): {}".format(args.source_path))

        self.train_cameras = scene_info.train_cameras
        self.val_camera = scene_info.val_camera
        self.cameras_extent = scene_info.nerf_normalization["radius"]
        self.background = scene_info.background
        self.translation = scene_info.translation
        self.scale = scene_info.scale

        for cam in self.train_cameras + ([self.val_camera] if self.val_camera is not None else []):
            cam.load_image(args.downscale_factor)

        json_cams = [cam.to_json() for cam in self.train_cameras]
        if self.val_camera is not None:
            json_cams.append(self.val_camera.to_json())
        with open(os.path.join(self.model_path, "cameras.json"), 'w') as file:
            json.dump(json_cams, file)

        if args.mesh_file:
            self.gaussians.create_from_gaussians_ply(args.mesh_file, self.translation, self.scale)
        else:
            self.gaussians.create_from_pcd(scene_info.point_cloud, init_opacity)

    def getTrainCameras(self):
        return self.train_cameras

    def getValCamera(self):
        return self.val_camera
