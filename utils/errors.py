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

class DensesplatError(Exception):
    pass

class ConfigurationError(DensesplatError):
    """Options that cannot produce a valid run, e.g. a refine cycle that would prune every primitive."""
    pass

class InputDataError(DensesplatError):
    """Malformed project files, raised while loading and before any training step."""
    pass

class NumericalDegradationError(DensesplatError):
    """NaN or Inf reached the loss or a parameter array."""

    def __init__(self, message, iteration=None):
        if iteration is not None:
            message = "[ITER {}] {}".format(iteration, message)
        super().__init__(message)
        self.iteration = iteration
