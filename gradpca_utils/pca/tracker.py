"""
GradientEigenTracker: One streaming eigen-estimator per parameter group.

Provides a simple API for integration into analysis scripts:
- observe(): Feed the gradients of one example to every group's estimator
- run(): Sweep the whole source a number of times
- leading_eigen(): Snapshot the current estimates
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

import torch

from gradpca_utils.pca.estimator import StreamingEigenEstimator
from gradpca_utils.pca.sources import GradientSource

if TYPE_CHECKING:
    from torch.utils.tensorboard import SummaryWriter


class GradientEigenTracker:
    """
    Tracks the leading eigenpairs of the gradient covariance of each group.

    The covariance of the per-example gradients approximates the Hessian of
    the loss, so the leading eigenpairs estimate the Hessian's.

    Args:
        source: Per-example gradient source, split into parameter groups.
        n_eigen: Number of eigenpairs to keep per group (clamped to dim - 1).
            Groups with a single parameter have no low-rank estimate and are
            listed in `skipped_groups` instead.
        minibatch_size: Observations between reevaluations.
        gamma: Discount factor of the moving estimates.
        lam: Initial Gram regularizer.
        device: PyTorch device for the estimators.
    """

    def __init__(
        self,
        source: GradientSource,
        n_eigen: int = 10,
        minibatch_size: int = 10,
        gamma: float = 0.999,
        lam: float = 1e-3,
        device: str | torch.device = "cpu",
    ):
        self.source = source
        self.device = torch.device(device)
        self.estimators = {
            name: StreamingEigenEstimator(
                dim=dim,
                k=min(n_eigen, dim - 1),
                batch_size=minibatch_size,
                gamma=gamma,
                lam=lam,
                device=device,
            )
            for name, dim in source.group_dims.items()
            if dim >= 2
        }
        self.skipped_groups = [name for name in source.group_dims if name not in self.estimators]
        self._step = 0

    def observe(self, step: int) -> None:
        """Observe the gradients of example `step` in every group."""
        for name, gradient in self.source.observe_groups(step).items():
            if name in self.estimators:
                self.estimators[name].observe(gradient)
        self._step += 1

    def run(
        self,
        iterations: int = 1,
        callback: Callable[[int, int], None] | None = None,
    ) -> None:
        """
        Sweep the source `iterations` times.

        Args:
            iterations: Number of passes over the examples.
            callback: Called as callback(done, total) after every example.
        """
        total = iterations * len(self.source)
        for it in range(iterations):
            for i in range(len(self.source)):
                self.observe(i)
                if callback is not None:
                    callback(it * len(self.source) + i + 1, total)

    def leading_eigen(self) -> dict[str, tuple[torch.Tensor, torch.Tensor]]:
        """Get (eigenvalues, unnormalized eigenvectors) for every group."""
        return {name: est.get_leading_eigen() for name, est in self.estimators.items()}

    def log_to_tensorboard(
        self,
        writer: "SummaryWriter",
        global_step: int | None = None,
    ) -> None:
        """
        Log current estimates to TensorBoard.

        Args:
            writer: TensorBoard SummaryWriter.
            global_step: Step to log at. Defaults to the number of examples seen.
        """
        from gradpca_utils.pca.io import log_eigen_metrics

        if global_step is None:
            global_step = self._step
        for name, est in self.estimators.items():
            eigenvalues, eigenvectors = est.get_leading_eigen()
            log_eigen_metrics(
                writer=writer,
                global_step=global_step,
                group=name,
                eigenvalues=eigenvalues,
                eigenvectors=eigenvectors,
                observation_count=est.observation_count,
            )

    def state_dict(self) -> dict:
        return {
            "step": self._step,
            "estimators": {name: est.state_dict() for name, est in self.estimators.items()},
        }

    def load_state_dict(self, state: dict) -> None:
        missing = set(self.estimators) ^ set(state["estimators"])
        if missing:
            raise ValueError(f"parameter groups do not match the saved state: {sorted(missing)}")
        for name, est in self.estimators.items():
            est.load_state_dict(state["estimators"][name])
        self._step = int(state["step"])
