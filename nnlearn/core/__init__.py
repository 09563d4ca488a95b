"""Core numerical primitives for nnlearn."""

from . import activations, backprop, errors, matrix, network, optimizers, types

__all__ = ["activations", "backprop", "errors", "matrix", "network", "optimizers", "types"]
