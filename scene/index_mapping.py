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
import torch


@dataclass
class IndexMapping:
    """
    Describes how a structural change turns an array of ``old_count`` rows into a
    new one. ``sources[j]`` is the old row that seeded new row ``j``, so every
    per-primitive array (parameters, Adam moments, statistics) is carried over
    with a single gather: ``new = old[sources]``.

    Surviving rows come first in their original order, rows created from a
    parent are appended after them.
    """
    old_count: int
    sources: torch.Tensor

    @classmethod
    def identity(cls, count, device="cpu"):
        return cls(count, torch.arange(count, device=device, dtype=torch.long))

    @classmethod
    def from_keep_mask(cls, keep_mask):
        keep_mask = keep_mask.bool()
        return cls(keep_mask.shape[0], torch.nonzero(keep_mask, as_tuple=False).squeeze(-1))

    @classmethod
    def from_restructure(cls, keep_mask, parents):
        keep_mask = keep_mask.bool()
        kept = torch.nonzero(keep_mask, as_tuple=False).squeeze(-1)
        parents = parents.to(device=kept.device, dtype=torch.long).reshape(-1)
        return cls(keep_mask.shape[0], torch.cat((kept, parents)))

    @property
    def new_count(self):
        return int(self.sources.shape[0])

    def apply(self, tensor):
        if tensor.shape[0] != self.old_count:
            raise RuntimeError("Cannot remap an array of {} rows with a mapping built for {}".format(
                tensor.shape[0], self.old_count))
        return tensor[self.sources.to(tensor.device)]

    def counts(self):
        """Number of new rows produced from every old row."""
        return torch.bincount(self.sources, minlength=self.old_count)

    def removed_mask(self):
        return self.counts() == 0

    def targets(self, old_index):
        return torch.nonzero(self.sources == old_index, as_tuple=False).squeeze(-1)

    def compose(self, later):
        """Mapping equivalent to applying ``self`` and then ``later``."""
        if later.old_count != self.new_count:
            raise RuntimeError("Mappings do not chain: {} rows produced, {} expected".format(
                self.new_count, later.old_count))
        return IndexMapping(self.old_count, self.sources[later.sources.to(self.sources.device)])

    def __len__(self):
        return self.new_count
