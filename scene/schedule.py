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

from utils.general_utils import get_expon_lr_func


class TrainingSchedule:
    """
    Step-indexed ramps: image downscale factor, active SH degree and position
    learning rate. All three are pure functions of the step.
    """

    def __init__(self, num_downscales=2, resolution_schedule=3000, sh_degree=3, sh_degree_interval=1000,
                 position_lr_init=0.00016, position_lr_final=0.0000016, position_lr_max_steps=30_000):
        self.num_downscales = num_downscales
        self.resolution_schedule = resolution_schedule
        self.max_sh_degree = sh_degree
        self.sh_degree_interval = sh_degree_interval
        self.xyz_scheduler_args = get_expon_lr_func(lr_init=position_lr_init,
                                                    lr_final=position_lr_final,
                                                    max_steps=position_lr_max_steps)

    @classmethod
    def from_args(cls, opt, sh_degree):
        return cls(num_downscales=opt.num_downscales,
                   resolution_schedule=opt.resolution_schedule,
                   sh_degree=sh_degree,
                   sh_degree_interval=opt.sh_degree_interval,
                   position_lr_init=opt.position_lr_init,
                   position_lr_final=opt.position_lr_final,
                   position_lr_max_steps=opt.position_lr_max_steps if opt.position_lr_max_steps > 0 else opt.iterations)

    def downscale_factor(self, step):
        if self.resolution_schedule <= 0:
            return 1
        return 2 ** max(self.num_downscales - step // self.resolution_schedule, 0)

    def sh_degree(self, step):
        if self.sh_degree_interval <= 0:
            return self.max_sh_degree
        return min(self.max_sh_degree, step // self.sh_degree_interval)

    def position_lr(self, step):
        return self.xyz_scheduler_args(step)
