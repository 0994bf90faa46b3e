"""
IO utilities for eigen-estimate logging, text dumps and estimator state.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import torch

if TYPE_CHECKING:
    from torch.utils.tensorboard import SummaryWriter

from gradpca_utils.pca.estimator import StreamingEigenEstimator


# Metric name prefix
PCA_PREFIX = "pca"


def log_eigen_metrics(
    writer: "SummaryWriter",
    global_step: int,
    group: str,
    eigenvalues: torch.Tensor,
    eigenvectors: torch.Tensor,
    observation_count: int,
) -> None:
    """
    Log the leading eigen-estimate of one parameter group to TensorBoard.

    Args:
        writer: TensorBoard SummaryWriter.
        global_step: Current global step.
        group: Parameter group name, used as the metric sub-prefix.
        eigenvalues: Normalized eigenvalues, shape (k,).
        eigenvectors: Unnormalized eigenvectors on the rows, shape (k, dim).
        observation_count: Number of observations seen by the estimator.
    """
    writer.add_scalar(f"{PCA_PREFIX}/{group}/observations", observation_count, global_step)
    norms = torch.linalg.vector_norm(eigenvectors, dim=1)
    for i, (value, norm) in enumerate(zip(eigenvalues.tolist(), norms.tolist())):
        writer.add_scalar(f"{PCA_PREFIX}/{group}/eigenvalue_{i}", value, global_step)
        writer.add_scalar(f"{PCA_PREFIX}/{group}/eigvec_norm_{i}", norm, global_step)


def write_eigenvalues(path: str | Path, eigenvalues: torch.Tensor) -> None:
    """Write eigenvalues to a text file, one per line."""
    np.savetxt(str(path), eigenvalues.detach().cpu().numpy().reshape(-1), fmt="%.10g")


def write_eigenvectors(path: str | Path, eigenvectors: torch.Tensor, normalize: bool = False) -> None:
    """
    Write eigenvectors to a text file, one vector per line.

    The output is readable by `load_directions`. With `normalize`, each row
    is scaled to unit length first (the estimator returns them unnormalized).
    """
    vectors = eigenvectors.detach().cpu().double()
    if normalize:
        norms = torch.linalg.vector_norm(vectors, dim=1, keepdim=True)
        vectors = vectors / torch.where(norms > 0, norms, torch.ones_like(norms))
    np.savetxt(str(path), vectors.numpy(), fmt="%.10g")


def load_directions(path: str | Path, n_directions: int, dim: int) -> torch.Tensor:
    """
    Load `n_directions` direction vectors of length `dim` from a text file.

    Each line holds one direction as whitespace-separated numbers. Only the
    first `n_directions` lines are read.

    Returns:
        Tensor of shape (n_directions, dim).
    """
    path = Path(path)
    directions = torch.zeros((n_directions, dim), dtype=torch.float64)
    with path.open("r") as f:
        for i in range(n_directions):
            line = f.readline()
            if not line:
                raise ValueError(f"{path}: expected {n_directions} directions, found {i}")
            values = [float(token) for token in line.split()]
            if len(values) > dim:
                raise ValueError(f"{path}: too many values on line {i + 1} ({len(values)} > {dim})")
            if len(values) < dim:
                raise ValueError(f"{path}: too few values on line {i + 1} ({len(values)} < {dim})")
            directions[i] = torch.tensor(values, dtype=torch.float64)
    return directions


def save_estimator(estimator: StreamingEigenEstimator, path: str | Path) -> None:
    """Persist an estimator's state with torch.save."""
    torch.save(estimator.state_dict(), str(path))


def load_estimator(path: str | Path, device: str | torch.device = "cpu") -> StreamingEigenEstimator:
    """Rebuild an estimator saved by `save_estimator`."""
    state = torch.load(str(path), map_location=device)
    return StreamingEigenEstimator.from_state_dict(state, device=device)
