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
import os

class GroupParams:
    pass

class ParamGroup:
    def __init__(self, parser: ArgumentParser, name : str, fill_none = False):
        group = parser.add_argument_group(name)
        for key, value in vars(self).items():
            shorthand = False
            if key.startswith("_"):
                shorthand = True
                key = key[1:]
            t = type(value)
            value = value if not fill_none else None
            if shorthand:
                if t == bool:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, action="store_true")
                else:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, type=t)
            else:
                if t == bool:
                    group.add_argument("--" + key, default=value, action="store_true")
                else:
                    group.add_argument("--" + key, default=value, type=t)

    def extract(self, args):
        group = GroupParams()
        for arg in vars(args).items():
            if arg[0] in vars(self) or ("_" + arg[0]) in vars(self):
                setattr(group, arg[0], arg[1])
        return group

class ModelParams(ParamGroup):
    def __init__(self, parser, sentinel=False):
        self.sh_degree = 3
        self._source_path = ""
        self._model_path = ""
        # Dense Gaussian PLY used as a fixed-geometry initialization
        self.mesh_file = ""
        self.downscale_factor = 1.0
        self._white_background = False
        self.data_device = "cuda"
        # Withhold one camera for validation ("random" or an image file name)
        self.val = False
        self.val_image = "random"
        self.val_render = ""
        self.val_every = 50
        super().__init__(parser, "Loading Parameters", sentinel)

    def extract(self, args):
        g = super().extract(args)
        g.source_path = os.path.abspath(g.source_path)
        return g

class OptimizationParams(ParamGroup):
    def __init__(self, parser):
        self.iterations = 30_000
        # position lr, log-linear from init to final over position_lr_max_steps (-1: all iterations)
        self.position_lr_init = 0.00016
        self.position_lr_final = 0.0000016
        self.position_lr_max_steps = -1
        self.feature_dc_lr = 0.0025
        self.feature_rest_lr = 0.000125
        self.opacity_lr = 0.05
        self.scaling_lr = 0.005
        self.rotation_lr = 0.001
        # rates used for position, scale and rotation when geometry comes from a mesh file
        self.frozen_position_lr = 1e-11
        self.frozen_scaling_lr = 1e-10
        self.frozen_rotation_lr = 1e-11
        self.init_opacity = 0.1
        self.ssim_weight = 0.2

        # Resolution and SH ramps
        self.num_downscales = 2
        self.resolution_schedule = 3000
        self.sh_degree_interval = 1000

        # Adaptive density control
        self.refine_every = 100
        self.warmup_length = 500
        self.reset_alpha_every = 30
        self.stop_split_at = 15_000
        self.densify_grad_thresh = 0.0002
        self.densify_size_thresh = 0.01
        self.stop_screen_size_at = 4000
        self.split_screen_size = 0.05
        self.cull_alpha_thresh = 0.1
        self.cull_scale_thresh = 0.5
        self.reset_alpha_value = 0.2
        self.split_samples = 2
        self.split_size_factor = 1.6
        # Train values only, never split, duplicate or prune
        self.fixed = False

        self.save_every = -1
        super().__init__(parser, "Optimization Parameters")
