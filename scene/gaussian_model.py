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
from utils.general_utils import inverse_sigmoid, build_rotation, random_quaternions
from torch import nn
import os
from utils.system_utils import mkdir_p
from plyfile import PlyData, PlyElement
from utils.sh_utils import RGB2SH, num_sh_bases
from utils.graphics_utils import BasicPointCloud, nearest_neighbor_scales
from utils.errors import InputDataError, NumericalDegradationError
from scene.index_mapping import IndexMapping
from scene.optimizers import OptimizerEnsemble

PARAMETER_NAMES = ("xyz", "f_dc", "f_rest", "scaling", "rotation", "opacity")

# Fields a dense Gaussian PLY must carry to be used as a fixed-geometry initialization
REQUIRED_GAUSSIAN_FIELDS = ["x", "y", "z", "f_dc_0", "f_dc_1", "f_dc_2", "opacity",
                            "scale_0", "scale_1", "scale_2", "rot_0", "rot_1", "rot_2", "rot_3"]

class GaussianModel:

    def setup_functions(self):
        self.scaling_activation = torch.exp
        self.scaling_inverse_activation = torch.log

        self.opacity_activation = torch.sigmoid
        self.inverse_opacity_activation = inverse_sigmoid

        self.rotation_activation = torch.nn.functional.normalize

    def __init__(self, sh_degree : int, device="cuda"):
        self.active_sh_degree = 0
        self.max_sh_degree = sh_degree
        self.device = device
        self._xyz = torch.empty(0)
        self._features_dc = torch.empty(0)
        self._features_rest = torch.empty(0)
        self._scaling = torch.empty(0)
        self._rotation = torch.empty(0)
        self._opacity = torch.empty(0)
        self.optimizer = None
        # Set when positions, scales and rotations come from a mesh file and must not move
        self.geometry_frozen = False
        self.setup_functions()

    def capture(self):
        return (
            self.active_sh_degree,
            self._xyz,
            self._features_dc,
            self._features_rest,
            self._scaling,
            self._rotation,
            self._opacity,
            self.geometry_frozen,
            self.optimizer.state_dict() if self.optimizer is not None else None,
        )

    def restore(self, model_args, training_args=None):
        (self.active_sh_degree,
        xyz,
        features_dc,
        features_rest,
        scaling,
        rotation,
        opacity,
        self.geometry_frozen,
        opt_dict) = model_args
        self._set_parameters({
            "xyz": nn.Parameter(xyz.detach().to(self.device).requires_grad_(True)),
            "f_dc": nn.Parameter(features_dc.detach().to(self.device).requires_grad_(True)),
            "f_rest": nn.Parameter(features_rest.detach().to(self.device).requires_grad_(True)),
            "scaling": nn.Parameter(scaling.detach().to(self.device).requires_grad_(True)),
            "rotation": nn.Parameter(rotation.detach().to(self.device).requires_grad_(True)),
            "opacity": nn.Parameter(opacity.detach().to(self.device).requires_grad_(True)),
        })
        if training_args is not None:
            self.training_setup(training_args)
            if opt_dict is not None:
                self.optimizer.load_state_dict(opt_dict)

    @property
    def get_scaling(self):
        return self.scaling_activation(self._scaling)

    @property
    def get_rotation(self):
        return self.rotation_activation(self._rotation)

    @property
    def get_xyz(self):
        return self._xyz

    @property
    def get_features(self):
        features_dc = self._features_dc
        features_rest = self._features_rest
        return torch.cat((features_dc, features_rest), dim=1)

    @property
    def get_opacity(self):
        return self.opacity_activation(self._opacity)

    @property
    def num_points(self):
        return self._xyz.shape[0]

    def parameters_dict(self):
        return {
            "xyz": self._xyz,
            "f_dc": self._features_dc,
            "f_rest": self._features_rest,
            "scaling": self._scaling,
            "rotation": self._rotation,
            "opacity": self._opacity,
        }

    def _set_parameters(self, tensors):
        counts = {name: tensors[name].shape[0] for name in PARAMETER_NAMES}
        if len(set(counts.values())) != 1:
            raise RuntimeError("Gaussian arrays disagree on their length: {}".format(counts))
        self._xyz = tensors["xyz"]
        self._features_dc = tensors["f_dc"]
        self._features_rest = tensors["f_rest"]
        self._scaling = tensors["scaling"]
        self._rotation = tensors["rotation"]
        self._opacity = tensors["opacity"]

    def create_from_pcd(self, pcd : BasicPointCloud, init_opacity=0.1):
        fused_point_cloud = torch.tensor(np.asarray(pcd.points)).float().to(self.device)
        if fused_point_cloud.shape[0] == 0:
            raise InputDataError("Cannot initialise Gaussians from an empty point cloud")
        fused_color = RGB2SH(torch.tensor(np.asarray(pcd.colors)).float().to(self.device))
        features = torch.zeros((fused_color.shape[0], 3, num_sh_bases(self.max_sh_degree))).float().to(self.device)
        features[:, :3, 0 ] = fused_color
        features[:, 3:, 1:] = 0.0

        print("Number of points at initialisation : ", fused_point_cloud.shape[0])

        dist = torch.from_numpy(nearest_neighbor_scales(np.asarray(pcd.points))).float().to(self.device)
        scales = torch.log(dist)[...,None].repeat(1, 3)
        rots = random_quaternions(fused_point_cloud.shape[0], device=self.device)

        opacities = self.inverse_opacity_activation(init_opacity * torch.ones((fused_point_cloud.shape[0], 1), dtype=torch.float, device=self.device))

        self._set_parameters({
            "xyz": nn.Parameter(fused_point_cloud.requires_grad_(True)),
            "f_dc": nn.Parameter(features[:,:,0:1].transpose(1, 2).contiguous().requires_grad_(True)),
            "f_rest": nn.Parameter(features[:,:,1:].transpose(1, 2).contiguous().requires_grad_(True)),
            "scaling": nn.Parameter(scales.requires_grad_(True)),
            "rotation": nn.Parameter(rots.requires_grad_(True)),
            "opacity": nn.Parameter(opacities.requires_grad_(True)),
        })
        self.geometry_frozen = False

    def create_from_gaussians_ply(self, path, translation=None, scale=1.0):
        """
        Initialise every array from a dense Gaussian PLY (e.g. one fitted to a mesh).
        Positions are moved into the normalized scene frame and log-scales shifted to
        match. The geometry is then held fixed during training while colors and
        opacities keep optimizing.
        """
        arrays = self._read_ply_arrays(path, required_fields=REQUIRED_GAUSSIAN_FIELDS)
        xyz = arrays["xyz"]
        if translation is not None:
            xyz = xyz - np.asarray(translation, dtype=np.float32)[None]
        arrays["xyz"] = xyz * scale
        arrays["scaling"] = arrays["scaling"] + np.log(scale)

        print("Number of Gaussians from mesh file : ", xyz.shape[0])
        self._set_parameters({name: nn.Parameter(torch.tensor(value, dtype=torch.float, device=self.device).requires_grad_(True))
                              for name, value in arrays.items()})
        self.geometry_frozen = True

    def training_setup(self, training_args):
        if self.geometry_frozen:
            position_lr = training_args.frozen_position_lr
            scaling_lr = training_args.frozen_scaling_lr
            rotation_lr = training_args.frozen_rotation_lr
        else:
            position_lr = training_args.position_lr_init
            scaling_lr = training_args.scaling_lr
            rotation_lr = training_args.rotation_lr

        learning_rates = {
            "xyz": position_lr,
            "f_dc": training_args.feature_dc_lr,
            "f_rest": training_args.feature_rest_lr,
            "scaling": scaling_lr,
            "rotation": rotation_lr,
            "opacity": training_args.opacity_lr,
        }
        self.optimizer = OptimizerEnsemble(self.parameters_dict(), learning_rates)

    def update_learning_rate(self, lr):
        ''' Position learning rate for the current step; frozen geometry keeps its rate '''
        if self.geometry_frozen:
            return self.optimizer.get_learning_rate("xyz")
        self.optimizer.set_learning_rate("xyz", lr)
        return lr

    def restructure(self, keep_mask, parents=None, new_values=None):
        """
        Compact the arrays to the rows selected by keep_mask, then append one row
        per entry of parents. Appended rows take their values from new_values when
        an array is given there and otherwise copy their parent. Attached optimizer
        state follows the same mapping, which is returned.
        """
        n = self.num_points
        keep_mask = keep_mask.to(self._xyz.device).bool()
        if keep_mask.shape != (n,):
            raise RuntimeError("Keep mask of shape {} does not cover {} Gaussians".format(tuple(keep_mask.shape), n))
        if parents is None:
            parents = torch.empty(0, dtype=torch.long, device=self._xyz.device)
        parents = parents.to(self._xyz.device).long().reshape(-1)
        new_values = new_values or {}

        mapping = IndexMapping.from_restructure(keep_mask, parents)

        optimizable_tensors = {}
        for name, old in self.parameters_dict().items():
            data = old.detach()
            tensor = data[keep_mask]
            if parents.shape[0] > 0:
                if name in new_values:
                    extension = new_values[name].detach().to(device=data.device, dtype=data.dtype)
                    if extension.shape != (parents.shape[0],) + tuple(data.shape[1:]):
                        raise RuntimeError("New values for '{}' have shape {}, expected {}".format(
                            name, tuple(extension.shape), (parents.shape[0],) + tuple(data.shape[1:])))
                else:
                    extension = data[parents]
                tensor = torch.cat((tensor, extension), dim=0)
            optimizable_tensors[name] = nn.Parameter(tensor.contiguous().requires_grad_(True))

        if self.optimizer is not None:
            self.optimizer.resize(mapping, optimizable_tensors)
        self._set_parameters(optimizable_tensors)
        return mapping

    def grow(self, parents, new_values=None):
        keep_mask = torch.ones(self.num_points, dtype=torch.bool, device=self._xyz.device)
        return self.restructure(keep_mask, parents, new_values)

    def shrink(self, keep_mask):
        return self.restructure(keep_mask)

    def reset_opacity(self, value):
        opacities_new = self.inverse_opacity_activation(torch.full_like(self.get_opacity, value))
        if self.optimizer is not None:
            self._opacity = self.optimizer.replace_parameter("opacity", opacities_new.detach(), reset_state=True)
        else:
            self._opacity = nn.Parameter(opacities_new.detach().requires_grad_(True))

    def check_finite(self, iteration=None):
        bad = [name for name, tensor in self.parameters_dict().items() if not torch.isfinite(tensor).all()]
        if bad:
            raise NumericalDegradationError("Non-finite values in Gaussian arrays: {}".format(", ".join(bad)), iteration)

    def construct_list_of_attributes(self):
        l = ['x', 'y', 'z', 'nx', 'ny', 'nz']
        # All channels except the 3 DC
        for i in range(self._features_dc.shape[1]*self._features_dc.shape[2]):
            l.append('f_dc_{}'.format(i))
        for i in range(self._features_rest.shape[1]*self._features_rest.shape[2]):
            l.append('f_rest_{}'.format(i))
        l.append('opacity')
        for i in range(self._scaling.shape[1]):
            l.append('scale_{}'.format(i))
        for i in range(self._rotation.shape[1]):
            l.append('rot_{}'.format(i))
        return l

    def save_ply(self, path):
        mkdir_p(os.path.dirname(path))

        xyz = self._xyz.detach().cpu().numpy()
        normals = np.zeros_like(xyz)
        f_dc = self._features_dc.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        f_rest = self._features_rest.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        opacities = self._opacity.detach().cpu().numpy()
        scale = self._scaling.detach().cpu().numpy()
        rotation = self._rotation.detach().cpu().numpy()

        dtype_full = [(attribute, 'f4') for attribute in self.construct_list_of_attributes()]

        elements = np.empty(xyz.shape[0], dtype=dtype_full)
        attributes = np.concatenate((xyz, normals, f_dc, f_rest, opacities, scale, rotation), axis=1)
        elements[:] = list(map(tuple, attributes))
        el = PlyElement.describe(elements, 'vertex')
        PlyData([el]).write(path)

    def _read_ply_arrays(self, path, required_fields=None):
        try:
            plydata = PlyData.read(path)
        except FileNotFoundError:
            raise InputDataError("Gaussian PLY not found: {}".format(path))
        if len(plydata.elements) == 0 or plydata.elements[0].count == 0:
            raise InputDataError("{} does not contain any vertex".format(path))
        vertex = plydata.elements[0]
        names = [p.name for p in vertex.properties]
        missing = [f for f in (required_fields or []) if f not in names]
        if missing:
            raise InputDataError("{} is missing Gaussian fields: {}".format(path, ", ".join(missing)))

        xyz = np.stack((np.asarray(vertex["x"]),
                        np.asarray(vertex["y"]),
                        np.asarray(vertex["z"])),  axis=1)
        opacities = np.asarray(vertex["opacity"])[..., np.newaxis]

        features_dc = np.zeros((xyz.shape[0], 3, 1))
        features_dc[:, 0, 0] = np.asarray(vertex["f_dc_0"])
        features_dc[:, 1, 0] = np.asarray(vertex["f_dc_1"])
        features_dc[:, 2, 0] = np.asarray(vertex["f_dc_2"])

        num_rest = num_sh_bases(self.max_sh_degree) - 1
        extra_f_names = [p for p in names if p.startswith("f_rest_")]
        extra_f_names = sorted(extra_f_names, key = lambda x: int(x.split('_')[-1]))
        features_extra = np.zeros((xyz.shape[0], 3 * num_rest))
        if extra_f_names:
            if len(extra_f_names) != 3 * num_rest:
                raise InputDataError("{} stores {} f_rest fields, SH degree {} needs {}".format(
                    path, len(extra_f_names), self.max_sh_degree, 3 * num_rest))
            for idx, attr_name in enumerate(extra_f_names):
                features_extra[:, idx] = np.asarray(vertex[attr_name])
        # Reshape (P,F*SH_coeffs) to (P, F, SH_coeffs except DC)
        features_extra = features_extra.reshape((features_extra.shape[0], 3, num_rest))

        scale_names = sorted([p for p in names if p.startswith("scale_")], key = lambda x: int(x.split('_')[-1]))
        scales = np.zeros((xyz.shape[0], len(scale_names)))
        for idx, attr_name in enumerate(scale_names):
            scales[:, idx] = np.asarray(vertex[attr_name])

        rot_names = sorted([p for p in names if p.startswith("rot")], key = lambda x: int(x.split('_')[-1]))
        rots = np.zeros((xyz.shape[0], len(rot_names)))
        for idx, attr_name in enumerate(rot_names):
            rots[:, idx] = np.asarray(vertex[attr_name])

        return {
            "xyz": xyz.astype(np.float32),
            "f_dc": np.ascontiguousarray(features_dc.transpose(0, 2, 1)).astype(np.float32),
            "f_rest": np.ascontiguousarray(features_extra.transpose(0, 2, 1)).astype(np.float32),
            "scaling": scales.astype(np.float32),
            "rotation": rots.astype(np.float32),
            "opacity": opacities.astype(np.float32),
        }

    def load_ply(self, path):
        arrays = self._read_ply_arrays(path, required_fields=REQUIRED_GAUSSIAN_FIELDS)
        self._set_parameters({name: nn.Parameter(torch.tensor(value, dtype=torch.float, device=self.device).requires_grad_(True))
                              for name, value in arrays.items()})
        self.active_sh_degree = self.max_sh_degree

    def sample_split_positions(self, indices, samples):
        """Positions drawn from the Gaussians at indices, samples per Gaussian, grouped by sample."""
        stds = self.get_scaling[indices].repeat(samples, 1)
        means = torch.zeros((stds.size(0), 3), device=stds.device)
        offsets = torch.normal(mean=means, std=stds)
        rots = build_rotation(self._rotation[indices]).repeat(samples, 1, 1)
        return torch.bmm(rots, offsets.unsqueeze(-1)).squeeze(-1) + self.get_xyz[indices].repeat(samples, 1)
