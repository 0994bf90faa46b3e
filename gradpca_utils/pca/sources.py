"""
Observation sources: anything that yields a fixed-length real vector per step.

The estimator never needs to know where its observations come from. A
source only has to produce, for step i, a vector of shape (dim,):
- MatrixSource: rows of a data matrix (wrapping around on later passes)
- GradientSource: per-example gradients of a model's loss, per parameter group
"""

from __future__ import annotations

from typing import Callable, Protocol

import torch
import torch.nn as nn


class ObservationSource(Protocol):
    """Protocol for streams of fixed-length observation vectors."""
    dim: int

    def __len__(self) -> int:
        ...

    def observation(self, step: int) -> torch.Tensor:
        ...


def count_parameters(params: list[torch.nn.Parameter]) -> int:
    """Count total number of parameters."""
    return sum(p.numel() for p in params)


def group_parameters(model: nn.Module) -> dict[str, list[torch.nn.Parameter]]:
    """
    Split a model's parameters into groups, one per module owning parameters.

    A linear layer's weight and bias end up in the same group, which matches
    the per-layer parameter blocks the Hessian is usually estimated on.

    Returns:
        Ordered mapping from module name to its trainable parameters.
    """
    groups = {}
    for name, module in model.named_modules():
        params = [p for p in module.parameters(recurse=False) if p.requires_grad]
        if params:
            groups[name or "model"] = params
    return groups


class MatrixSource:
    """
    Rows of a data matrix as observations.

    Args:
        data: Matrix of shape (n_examples, dim).
    """

    def __init__(self, data: torch.Tensor):
        data = torch.as_tensor(data)
        if data.dim() != 2:
            raise ValueError(f"data must be a matrix, got shape {tuple(data.shape)}")
        self.data = data
        self.dim = data.shape[1]

    def __len__(self) -> int:
        return self.data.shape[0]

    def observation(self, step: int) -> torch.Tensor:
        return self.data[step % len(self)]


class GradientSource:
    """
    Per-example gradients of a loss with respect to a model's parameters.

    Each step runs one forward/backward pass on a single example and returns
    the flattened gradient, either per parameter group (`observe_groups`) or
    concatenated (`observation`).

    Args:
        model: Model to differentiate. Its `.grad` fields are left untouched.
        loss_fn: Criterion taking (outputs, targets) and returning a scalar.
        inputs: Example inputs, shape (n_examples, ...).
        targets: Example targets, shape (n_examples, ...).
        param_groups: Mapping from group name to parameters. Defaults to
            `group_parameters(model)`.
    """

    def __init__(
        self,
        model: nn.Module,
        loss_fn: Callable[[torch.Tensor, torch.Tensor], torch.Tensor],
        inputs: torch.Tensor,
        targets: torch.Tensor,
        param_groups: dict[str, list[torch.nn.Parameter]] | None = None,
    ):
        if inputs.shape[0] != targets.shape[0]:
            raise ValueError(
                f"inputs and targets disagree on the number of examples: "
                f"{inputs.shape[0]} != {targets.shape[0]}"
            )
        self.model = model
        self.loss_fn = loss_fn
        self.inputs = inputs
        self.targets = targets
        self.param_groups = param_groups if param_groups is not None else group_parameters(model)
        self.group_dims = {name: count_parameters(params) for name, params in self.param_groups.items()}
        self.dim = sum(self.group_dims.values())

    def __len__(self) -> int:
        return self.inputs.shape[0]

    def observe_groups(self, step: int) -> dict[str, torch.Tensor]:
        """
        Gradient of the loss on example `step % len(self)`, one vector per group.

        Parameters that do not take part in the loss contribute zeros.
        """
        i = step % len(self)
        params = [p for group in self.param_groups.values() for p in group]
        outputs = self.model(self.inputs[i : i + 1])
        loss = self.loss_fn(outputs, self.targets[i : i + 1])
        grads = torch.autograd.grad(loss, params, allow_unused=True)

        observations = {}
        offset = 0
        for name, group in self.param_groups.items():
            flat = [
                (g if g is not None else torch.zeros_like(p)).detach().reshape(-1)
                for p, g in zip(group, grads[offset : offset + len(group)])
            ]
            observations[name] = torch.cat(flat)
            offset += len(group)
        return observations

    def observation(self, step: int) -> torch.Tensor:
        return torch.cat(list(self.observe_groups(step).values()))
