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

from dataclasses import dataclass
from typing import Optional

import torch

from scene.index_mapping import IndexMapping
from utils.errors import ConfigurationError


@dataclass
class DensificationConfig:
    """Adaptive density control policy"""
    refine_every: int = 100
    warmup_length: int = 500
    stop_split_at: int = 15_000
    reset_alpha_every: int = 30
    densify_grad_thresh: float = 0.0002
    densify_size_thresh: float = 0.01
    stop_screen_size_at: int = 4000
    split_screen_size: float = 0.05
    cull_alpha_thresh: float = 0.1
    cull_scale_thresh: float = 0.5
    reset_alpha_value: float = 0.2
    split_samples: int = 2
    split_size_factor: float = 1.6
    fixed: bool = False

    @classmethod
    def from_args(cls, opt):
        fields = cls.__dataclass_fields__.keys()
        return cls(**{k: getattr(opt, k) for k in fields if hasattr(opt, k)})


class DensificationStats:
    """Per-Gaussian screen-space statistics gathered between two refine cycles."""

    def __init__(self, num_points, device="cuda"):
        self.device = device
        self.reset(num_points)

    def reset(self, num_points):
        self.grad_norm_sum = torch.zeros((num_points,), dtype=torch.float, device=self.device)
        self.visible_count = torch.zeros((num_points,), dtype=torch.float, device=self.device)
        self.max_screen_fraction = torch.zeros((num_points,), dtype=torch.float, device=self.device)

    @property
    def num_points(self):
        return self.grad_norm_sum.shape[0]

    def update(self, viewspace_grads, radii, visibility_filter, image_height, image_width):
        n = self.num_points
        for name, tensor in (("gradients", viewspace_grads), ("radii", radii), ("visibility", visibility_filter)):
            if tensor.shape[0] != n:
                raise RuntimeError("Statistics track {} Gaussians but {} has {} rows".format(n, name, tensor.shape[0]))

        visible = visibility_filter.to(self.device).bool()
        grad_norm = torch.norm(viewspace_grads.detach().to(self.device)[visible, :2], dim=-1)
        self.grad_norm_sum[visible] += grad_norm
        self.visible_count[visible] += 1
        fraction = radii.detach().to(self.device)[visible].float() / float(max(image_height, image_width))
        self.max_screen_fraction[visible] = torch.max(self.max_screen_fraction[visible], fraction)

    def average_grad_norm(self):
        return self.grad_norm_sum / self.visible_count.clamp(min=1)


@dataclass
class RefineResult:
    num_before: int
    num_after: int
    duplicated: int
    split: int
    pruned: int
    alpha_reset: bool
    mapping: Optional[IndexMapping] = None


class DensityController:
    """
    Periodic clone / split / prune of the Gaussian set, driven by the averaged
    screen-space gradient, the screen footprint and the opacity of every Gaussian.
    """

    def __init__(self, config: DensificationConfig = None, scene_extent: float = 1.0):
        self.config = config or DensificationConfig()
        self.scene_extent = scene_extent
        self.refinements = 0
        self.stats = {
            'total_duplicated': 0,
            'total_split': 0,
            'total_pruned': 0,
            'alpha_resets': 0
        }

    def should_refine(self, step):
        cfg = self.config
        if cfg.fixed or cfg.refine_every <= 0:
            return False
        return cfg.warmup_length < step <= cfg.stop_split_at and step % cfg.refine_every == 0

    def prune_mask(self, gaussians, stats, step):
        cfg = self.config
        prune = (gaussians.get_opacity < cfg.cull_alpha_thresh).squeeze(-1)
        if step < cfg.stop_screen_size_at:
            too_big_on_screen = stats.max_screen_fraction.to(prune.device) > cfg.split_screen_size
            too_big_in_world = gaussians.get_scaling.max(dim=1).values > cfg.cull_scale_thresh * self.scene_extent
            prune = prune | too_big_on_screen | too_big_in_world
        return prune

    def refine(self, gaussians, stats, step):
        cfg = self.config
        num_before = gaussians.num_points
        if stats.num_points != num_before:
            raise RuntimeError("Statistics cover {} Gaussians, model holds {}".format(stats.num_points, num_before))

        with torch.no_grad():
            prune = self.prune_mask(gaussians, stats, step)

            avg_grads = stats.average_grad_norm().to(prune.device)
            visible = stats.visible_count.to(prune.device) > 0
            candidates = visible & (avg_grads > cfg.densify_grad_thresh) & ~prune

            max_scale = gaussians.get_scaling.max(dim=1).values
            dup_mask = candidates & (max_scale < cfg.densify_size_thresh)
            split_mask = candidates & ~dup_mask

            dup_idx = torch.nonzero(dup_mask, as_tuple=False).squeeze(-1)
            split_idx = torch.nonzero(split_mask, as_tuple=False).squeeze(-1)
            samples = cfg.split_samples

            keep_mask = ~(prune | split_mask)
            parents = torch.cat((dup_idx, split_idx.repeat(samples)))

            num_after = int(keep_mask.sum().item()) + parents.shape[0]
            if num_after == 0:
                raise ConfigurationError(
                    "Refinement at step {} would remove all {} Gaussians; check cull_alpha_thresh, "
                    "cull_scale_thresh and split_screen_size".format(step, num_before))

            split_xyz = gaussians.sample_split_positions(split_idx, samples)
            split_scaling = gaussians.scaling_inverse_activation(
                gaussians.get_scaling[split_idx] / cfg.split_size_factor).repeat(samples, 1)
            new_values = {
                "xyz": torch.cat((gaussians.get_xyz[dup_idx], split_xyz), dim=0),
                "scaling": torch.cat((gaussians._scaling[dup_idx], split_scaling), dim=0),
            }

            mapping = gaussians.restructure(keep_mask, parents, new_values)

            self.refinements += 1
            alpha_reset = cfg.reset_alpha_every > 0 and self.refinements % cfg.reset_alpha_every == 0
            if alpha_reset:
                gaussians.reset_opacity(cfg.reset_alpha_value)

        stats.reset(gaussians.num_points)

        result = RefineResult(num_before=num_before,
                              num_after=gaussians.num_points,
                              duplicated=int(dup_idx.shape[0]),
                              split=int(split_idx.shape[0]),
                              pruned=int(prune.sum().item()),
                              alpha_reset=alpha_reset,
                              mapping=mapping)
        self.stats['total_duplicated'] += result.duplicated
        self.stats['total_split'] += result.split
        self.stats['total_pruned'] += result.pruned
        self.stats['alpha_resets'] += int(alpha_reset)
        return result

    def state_dict(self):
        return {"refinements": self.refinements, "stats": dict(self.stats)}

    def load_state_dict(self, state):
        self.refinements = state["refinements"]
        self.stats.update(state["stats"])
