"""
Small classifier models and criteria for the analysis scripts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import torch
import torch.nn as nn
import torch.nn.functional as F


def make_mlp(
    n_inputs: int,
    hidden_sizes: list[int],
    n_outputs: int,
) -> nn.Sequential:
    """Tanh MLP producing one logit per class."""
    layers = []
    size = n_inputs
    for hidden in hidden_sizes:
        layers.append(nn.Linear(size, hidden))
        layers.append(nn.Tanh())
        size = hidden
    layers.append(nn.Linear(size, n_outputs))
    return nn.Sequential(*layers)


def load_model(
    model_filename: str | Path,
    n_inputs: int,
    hidden_sizes: list[int],
    n_outputs: int,
    device: str | torch.device = "cpu",
) -> nn.Sequential:
    """
    Build an MLP and load its weights.

    An empty `model_filename` keeps the random initialization.
    """
    model = make_mlp(n_inputs, hidden_sizes, n_outputs)
    if model_filename:
        state = torch.load(str(model_filename), map_location=device)
        model.load_state_dict(state)
    return model.to(device)


def make_criterion(
    criterion_type: str,
    n_classes: int,
) -> Callable[[torch.Tensor, torch.Tensor], torch.Tensor]:
    """
    Loss averaged over the examples of a batch.

    Args:
        criterion_type: "class-nll" (negative log-likelihood of the softmax of
            the logits) or "mse" (squared error against one-hot targets).
        n_classes: Number of classes, for the one-hot encoding.
    """
    if criterion_type == "class-nll":
        return F.cross_entropy
    if criterion_type == "mse":
        def mse(outputs: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
            one_hot = F.one_hot(targets, n_classes).to(outputs.dtype)
            return torch.sum((outputs - one_hot) ** 2, dim=1).mean()
        return mse
    raise ValueError(f"criterion type {criterion_type} is not supported (use 'class-nll' or 'mse')")
