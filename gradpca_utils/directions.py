"""
Parameter-space analysis along given directions.

Typically the directions are the leading (approximate) Hessian eigenvectors
produced by the streaming eigen-estimator. Directions are flat vectors over
the concatenation of all parameters, in `params` order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import torch
import torch.nn as nn
import torch.nn.functional as F

from gradpca_utils.pca.errors import DimensionMismatch
from gradpca_utils.pca.sources import count_parameters


@dataclass
class CostProfile:
    """Cost of a classifier at evenly spaced offsets along one direction."""
    offsets: list[float]
    nll: list[float]
    class_error: list[float]


def flatten_parameters(params: list[torch.nn.Parameter]) -> torch.Tensor:
    return torch.cat([p.detach().reshape(-1) for p in params])


def mean_gradient(
    model: nn.Module,
    loss_fn: Callable[[torch.Tensor, torch.Tensor], torch.Tensor],
    inputs: torch.Tensor,
    targets: torch.Tensor,
    params: list[torch.nn.Parameter],
) -> torch.Tensor:
    """Gradient of the mean loss over the examples, flattened over `params`."""
    loss = loss_fn(model(inputs), targets)
    grads = torch.autograd.grad(loss, params, allow_unused=True)
    return torch.cat([
        (g if g is not None else torch.zeros_like(p)).detach().reshape(-1)
        for p, g in zip(params, grads)
    ])


def step_in_parameter_space(
    params: list[torch.nn.Parameter],
    direction: torch.Tensor,
    stepsize: float,
) -> None:
    """In-place update p += stepsize * direction, slice by slice."""
    if direction.numel() != count_parameters(params):
        raise DimensionMismatch(
            f"direction has {direction.numel()} entries, parameters have {count_parameters(params)}"
        )
    offset = 0
    with torch.no_grad():
        for p in params:
            n = p.numel()
            p.add_(direction[offset : offset + n].view_as(p).to(p), alpha=stepsize)
            offset += n


def evaluate_cost_along_direction(
    model: nn.Module,
    params: list[torch.nn.Parameter],
    direction: torch.Tensor,
    inputs: torch.Tensor,
    targets: torch.Tensor,
    n_steps_oneside: int = 10,
    stepsize: float = 1e-4,
) -> CostProfile:
    """
    Evaluate a classifier at 2 * n_steps_oneside + 1 points along a direction.

    The points are at offsets -n_steps_oneside * stepsize ... +n_steps_oneside *
    stepsize from the current parameters. The parameters are restored
    afterwards.

    Returns:
        CostProfile with the mean negative log-likelihood and the
        classification error at every offset.
    """
    snapshot = [p.detach().clone() for p in params]
    profile = CostProfile(offsets=[], nll=[], class_error=[])
    try:
        # Move to the most "negative" point
        step_in_parameter_space(params, direction, -n_steps_oneside * stepsize)
        for i in range(2 * n_steps_oneside + 1):
            with torch.no_grad():
                outputs = model(inputs)
                nll = F.cross_entropy(outputs, targets).item()
                class_error = (outputs.argmax(dim=1) != targets).float().mean().item()
            profile.offsets.append((i - n_steps_oneside) * stepsize)
            profile.nll.append(nll)
            profile.class_error.append(class_error)
            step_in_parameter_space(params, direction, stepsize)
    finally:
        with torch.no_grad():
            for p, saved in zip(params, snapshot):
                p.copy_(saved)
    return profile


def second_derivative_along_direction(
    model: nn.Module,
    loss_fn: Callable[[torch.Tensor, torch.Tensor], torch.Tensor],
    params: list[torch.nn.Parameter],
    direction: torch.Tensor,
    inputs: torch.Tensor,
    targets: torch.Tensor,
    epsilon: float = 1e-6,
) -> float:
    """
    Finite-difference second derivative of the mean loss along a unit direction.

    Computes |d'g(theta + epsilon d) - d'g(theta)| / epsilon where g is the
    gradient of the mean loss. The parameters are restored afterwards.
    """
    direction = direction.reshape(-1).double()
    norm = torch.linalg.vector_norm(direction).item()
    if not abs(norm - 1.0) < 1e-6:
        raise ValueError(f"direction norm is not 1, but {norm}")

    gradient = mean_gradient(model, loss_fn, inputs, targets, params)
    slope = torch.dot(direction, gradient.double()).item()

    snapshot = [p.detach().clone() for p in params]
    try:
        step_in_parameter_space(params, direction, epsilon)
        gradient_step = mean_gradient(model, loss_fn, inputs, targets, params)
        slope_step = torch.dot(direction, gradient_step.double()).item()
    finally:
        with torch.no_grad():
            for p, saved in zip(params, snapshot):
                p.copy_(saved)
    return abs(slope_step - slope) / epsilon
