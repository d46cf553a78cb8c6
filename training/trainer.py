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
from collections import defaultdict
from enum import Enum
from os import makedirs

import torch
import torchvision
from tqdm import tqdm

from scene.cameras import InfiniteCameraIterator
from scene.densification import DensificationConfig, DensificationStats, DensityController
from scene.schedule import TrainingSchedule
from utils.errors import NumericalDegradationError
from utils.graphics_utils import pixel_to_ndc_gradients
from utils.image_utils import psnr
from utils.loss_utils import l1_loss, photometric_loss


class TrainingState(Enum):
    INIT = "init"
    STEP = "step"
    REFINE = "refine"
    CHECKPOINT = "checkpoint"
    VALIDATE = "validate"
    DONE = "done"


class GaussianTrainer:
    """
    Drives the optimization of a GaussianModel: camera sampling, schedules,
    photometric loss, optimizer steps, periodic density control, saving and the
    final validation pass.

    render_fn follows the gaussian_renderer.render contract:
    render_fn(camera, gaussians, background, downscale_factor) -> dict.
    """

    def __init__(self, gaussians, train_cameras, opt, render_fn, background,
                 scene_extent=1.0, model_path=None, val_camera=None,
                 saving_iterations=(), checkpoint_iterations=(), testing_iterations=(),
                 tb_writer=None, val_render="", val_every=50, seed=42, quiet=False):
        self.gaussians = gaussians
        self.opt = opt
        self.render_fn = render_fn
        self.background = background
        self.model_path = model_path
        self.train_cameras = list(train_cameras)
        self.val_camera = val_camera
        self.saving_iterations = set(saving_iterations)
        self.checkpoint_iterations = set(checkpoint_iterations)
        self.testing_iterations = set(testing_iterations)
        self.tb_writer = tb_writer
        self.val_render = val_render
        self.val_every = val_every
        self.quiet = quiet

        if self.gaussians.optimizer is None:
            self.gaussians.training_setup(opt)

        self.schedule = TrainingSchedule.from_args(opt, gaussians.max_sh_degree)
        self.density = DensityController(DensificationConfig.from_args(opt), scene_extent)
        self.stats = DensificationStats(gaussians.num_points, device=gaussians.get_xyz.device)
        self.cameras = InfiniteCameraIterator(self.train_cameras, seed)

        self.state = TrainingState.INIT
        self.first_iter = 0
        self.losses_by_camera = defaultdict(list)
        self.last_refine = None
        self.saved_iterations = set()

    def train_step(self, iteration):
        """One optimization step; returns (loss, l1) as floats."""
        self.state = TrainingState.STEP
        viewpoint_cam = next(self.cameras)

        downscale = self.schedule.downscale_factor(iteration)
        self.gaussians.active_sh_degree = self.schedule.sh_degree(iteration)
        self.gaussians.update_learning_rate(self.schedule.position_lr(iteration))

        self.gaussians.optimizer.zero_grad(set_to_none = True)

        render_pkg = self.render_fn(viewpoint_cam, self.gaussians, self.background, downscale)
        image = render_pkg["render"]
        gt_image = viewpoint_cam.get_image(downscale).to(image.device)

        loss = photometric_loss(image, gt_image, self.opt.ssim_weight)
        if not torch.isfinite(loss):
            raise NumericalDegradationError("Loss became {}".format(loss.item()), iteration)
        loss.backward()

        with torch.no_grad():
            Ll1 = l1_loss(image, gt_image).item()
            grads = render_pkg["viewspace_points"].grad
            if grads is None:
                grads = torch.zeros((self.gaussians.num_points, 2), device=image.device)
            elif grads.dim() == 3:
                grads = grads[0]
            grads = pixel_to_ndc_gradients(grads, render_pkg["width"], render_pkg["height"])
            self.stats.update(grads, render_pkg["radii"], render_pkg["visibility_filter"],
                              render_pkg["height"], render_pkg["width"])

        self.gaussians.optimizer.step()
        self.gaussians.check_finite(iteration)

        loss_value = loss.item()
        self.losses_by_camera[viewpoint_cam.uid].append(loss_value)

        if self.density.should_refine(iteration):
            self.state = TrainingState.REFINE
            result = self.density.refine(self.gaussians, self.stats, iteration)
            self.last_refine = result
            if not self.quiet:
                print("\n[ITER {}] Refine: {} duplicated, {} split, {} pruned, {} -> {} Gaussians{}".format(
                    iteration, result.duplicated, result.split, result.pruned, result.num_before,
                    result.num_after, ", opacity reset" if result.alpha_reset else ""))
            if self.tb_writer:
                self.tb_writer.add_scalar('refine/duplicated', result.duplicated, iteration)
                self.tb_writer.add_scalar('refine/split', result.split, iteration)
                self.tb_writer.add_scalar('refine/pruned', result.pruned, iteration)

        return loss_value, Ll1

    def train(self):
        ema_loss_for_log = 0.0
        progress_bar = tqdm(range(self.first_iter, self.opt.iterations), desc="Training progress", disable=self.quiet)
        first_iter = self.first_iter + 1
        loss_value = None

        for iteration in range(first_iter, self.opt.iterations + 1):
            if self.val_render and self.val_every > 0 and iteration % self.val_every == 0:
                self.render_validation_images(iteration)

            loss_value, Ll1 = self.train_step(iteration)

            with torch.no_grad():
                # Progress bar
                ema_loss_for_log = 0.4 * loss_value + 0.6 * ema_loss_for_log
                if iteration % 10 == 0:
                    progress_bar.set_postfix({
                        "Num": f"{self.gaussians.num_points:07d}",
                        "Loss": f"{ema_loss_for_log:.{7}f}",
                    })
                    progress_bar.update(10)
                if iteration == self.opt.iterations:
                    progress_bar.close()

                self.training_report(iteration, Ll1, loss_value)

                save_every = getattr(self.opt, "save_every", -1)
                if iteration in self.saving_iterations or (save_every > 0 and iteration % save_every == 0):
                    self.state = TrainingState.CHECKPOINT
                    print("\n[ITER {}] Saving Gaussians".format(iteration))
                    self.save_gaussians(iteration)

                if iteration in self.checkpoint_iterations:
                    self.state = TrainingState.CHECKPOINT
                    print("\n[ITER {}] Saving Checkpoint".format(iteration))
                    self.save_checkpoint(iteration)

        progress_bar.close()
        if self.opt.iterations not in self.saved_iterations:
            self.save_gaussians(self.opt.iterations)
        self.write_losses()

        val_loss = self.validate()
        self.state = TrainingState.DONE
        return {"loss": loss_value, "num_points": self.gaussians.num_points, "val_loss": val_loss}

    def training_report(self, iteration, Ll1, loss_value):
        if self.tb_writer:
            self.tb_writer.add_scalar('train_loss_patches/l1_loss', Ll1, iteration)
            self.tb_writer.add_scalar('train_loss_patches/total_loss', loss_value, iteration)
            self.tb_writer.add_scalar('xyz_lr', self.gaussians.optimizer.get_learning_rate("xyz"), iteration)
            self.tb_writer.add_scalar('total_points', self.gaussians.num_points, iteration)

        if iteration in self.testing_iterations and self.tb_writer:
            self.tb_writer.add_histogram("scene/opacity_histogram", self.gaussians.get_opacity, iteration)

    def save_gaussians(self, iteration):
        if not self.model_path:
            return
        point_cloud_path = os.path.join(self.model_path, "point_cloud/iteration_{}".format(iteration))
        self.gaussians.save_ply(os.path.join(point_cloud_path, "point_cloud.ply"))
        self.saved_iterations.add(iteration)

    def save_checkpoint(self, iteration):
        if not self.model_path:
            return
        torch.save((self.gaussians.capture(), self.density.state_dict(), iteration),
                   os.path.join(self.model_path, "chkpnt" + str(iteration) + ".pth"))

    def restore_checkpoint(self, checkpoint):
        (model_params, density_state, first_iter) = torch.load(checkpoint, weights_only=False)
        self.gaussians.restore(model_params, self.opt)
        self.density.load_state_dict(density_state)
        self.stats.reset(self.gaussians.num_points)
        self.first_iter = first_iter

    def write_losses(self):
        """
        losses.txt: number of cameras, then one line of losses per camera, then the
        mean loss over cameras for every visit index.
        """
        if not self.model_path:
            return
        losses = [self.losses_by_camera[cam.uid] for cam in self.train_cameras]
        losses_path = os.path.join(self.model_path, "losses.txt")
        with open(losses_path, 'w') as losses_write:
            losses_write.write("{}\n".format(len(losses)))
            for camera_losses in losses:
                losses_write.write(" ".join(str(x) for x in camera_losses) + " \n")
            visits = max((len(l) for l in losses), default=0)
            averages = []
            for visit in range(visits):
                values = [l[visit] for l in losses if visit < len(l)]
                averages.append(sum(values) / len(values))
            losses_write.write(" ".join(str(x) for x in averages) + " \n")
        print("Wrote losses to {}".format(losses_path))

    @torch.no_grad()
    def render_validation_images(self, iteration):
        downscale = self.schedule.downscale_factor(iteration)
        makedirs(self.val_render, exist_ok=True)
        for idx, viewpoint in enumerate(self.train_cameras):
            rendering = self.render_fn(viewpoint, self.gaussians, self.background, downscale)["render"]
            gt = viewpoint.get_image(downscale)
            torchvision.utils.save_image(rendering, os.path.join(self.val_render, "{}_{}.png".format(iteration, idx)))
            torchvision.utils.save_image(gt, os.path.join(self.val_render, "{}_gt_{}.png".format(iteration, idx)))

    @torch.no_grad()
    def validate(self):
        if self.val_camera is None:
            return None
        self.state = TrainingState.VALIDATE
        downscale = self.schedule.downscale_factor(self.opt.iterations)
        image = self.render_fn(self.val_camera, self.gaussians, self.background, downscale)["render"]
        gt_image = self.val_camera.get_image(downscale).to(image.device)
        val_loss = photometric_loss(image, gt_image, self.opt.ssim_weight).item()
        val_psnr = psnr(image, gt_image).mean().item()
        print("\n[VALIDATE] {} validation loss: {} PSNR {}".format(self.val_camera.image_name, val_loss, val_psnr))
        if self.tb_writer:
            self.tb_writer.add_scalar('val/loss_viewpoint - loss', val_loss, self.opt.iterations)
            self.tb_writer.add_scalar('val/loss_viewpoint - psnr', val_psnr, self.opt.iterations)
        return val_loss
