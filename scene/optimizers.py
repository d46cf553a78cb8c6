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
from torch import nn


class OptimizerEnsemble:
    """
    One Adam instance per Gaussian parameter array. Every instance holds a single
    named param group, so learning rates can be driven per array and the moment
    buffers can be rewritten whenever the number of Gaussians changes.
    """

    def __init__(self, params, learning_rates, eps=1e-15):
        self.optimizers = {}
        for name, param in params.items():
            self.optimizers[name] = torch.optim.Adam(
                [{'params': [param], 'lr': learning_rates[name], "name": name}], lr=0.0, eps=eps)

    @property
    def names(self):
        return list(self.optimizers.keys())

    def step(self):
        for optimizer in self.optimizers.values():
            optimizer.step()

    def zero_grad(self, set_to_none=True):
        for optimizer in self.optimizers.values():
            optimizer.zero_grad(set_to_none=set_to_none)

    def set_learning_rate(self, name, lr):
        for param_group in self.optimizers[name].param_groups:
            param_group['lr'] = lr

    def get_learning_rate(self, name):
        return self.optimizers[name].param_groups[0]['lr']

    def param(self, name):
        return self.optimizers[name].param_groups[0]["params"][0]

    def moment_buffers(self, name):
        """(exp_avg, exp_avg_sq) for an array, or None before its first step."""
        optimizer = self.optimizers[name]
        stored_state = optimizer.state.get(optimizer.param_groups[0]['params'][0], None)
        if stored_state is None or "exp_avg" not in stored_state:
            return None
        return stored_state["exp_avg"], stored_state["exp_avg_sq"]

    def resize(self, mapping, params):
        """
        Rebind every optimizer to the parameters produced by a structural change and
        carry the Adam moments through the same index mapping. Kept rows keep their
        moments, appended rows copy the moments of their parent, removed rows are
        dropped. Step counters are left untouched.

        All states are remapped before any optimizer is modified, so a mismatch
        leaves the ensemble as it was.
        """
        remapped = {}
        for name, optimizer in self.optimizers.items():
            group = optimizer.param_groups[0]
            stored_state = optimizer.state.get(group['params'][0], None)
            if stored_state is not None and "exp_avg" in stored_state:
                new_state = dict(stored_state)
                new_state["exp_avg"] = mapping.apply(stored_state["exp_avg"])
                new_state["exp_avg_sq"] = mapping.apply(stored_state["exp_avg_sq"])
                remapped[name] = new_state
            else:
                remapped[name] = None
            if params[name].shape[0] != mapping.new_count:
                raise RuntimeError("Parameter '{}' has {} rows, mapping produces {}".format(
                    name, params[name].shape[0], mapping.new_count))

        for name, optimizer in self.optimizers.items():
            group = optimizer.param_groups[0]
            old_param = group['params'][0]
            if old_param in optimizer.state:
                del optimizer.state[old_param]
            group["params"][0] = params[name]
            if remapped[name] is not None:
                optimizer.state[params[name]] = remapped[name]

    def replace_parameter(self, name, tensor, reset_state=True):
        optimizer = self.optimizers[name]
        group = optimizer.param_groups[0]
        stored_state = optimizer.state.get(group['params'][0], None)
        new_param = nn.Parameter(tensor.requires_grad_(True))
        if stored_state is not None:
            if reset_state and "exp_avg" in stored_state:
                stored_state["exp_avg"] = torch.zeros_like(tensor)
                stored_state["exp_avg_sq"] = torch.zeros_like(tensor)
            del optimizer.state[group['params'][0]]
            optimizer.state[new_param] = stored_state
        group["params"][0] = new_param
        return new_param

    def state_dict(self):
        return {name: optimizer.state_dict() for name, optimizer in self.optimizers.items()}

    def load_state_dict(self, state_dict):
        for name, optimizer in self.optimizers.items():
            optimizer.load_state_dict(state_dict[name])
