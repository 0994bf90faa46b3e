"""
Data matrix loading for the analysis scripts.

Data files are either `.npy` arrays or whitespace-separated text, one example
per row. Classification data ("class format") keeps the class index in the
last column.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import torch


def load_matrix(
    path: str | Path,
    n_cols: int | None = None,
    max_load: int = -1,
    header: bool = False,
) -> np.ndarray:
    """
    Load a data matrix, one example per row.

    Args:
        path: `.npy` file or whitespace-separated text file.
        n_cols: Expected number of columns (checked if given).
        max_load: Maximum number of rows to keep (-1 keeps everything).
        header: Skip a leading "n_rows n_cols" line in text files.

    Returns:
        Array of shape (n_rows, n_cols), float64.
    """
    path = Path(path)
    if path.suffix == ".npy":
        matrix = np.load(path)
    else:
        matrix = np.loadtxt(path, ndmin=2, skiprows=1 if header else 0)
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    if matrix.ndim != 2:
        raise ValueError(f"{path}: expected a 2-D matrix, got shape {matrix.shape}")
    if n_cols is not None and matrix.shape[1] != n_cols:
        raise ValueError(f"{path}: expected {n_cols} columns, got {matrix.shape[1]}")
    if max_load > 0:
        matrix = matrix[:max_load]
    return matrix


def class_format(
    matrix: np.ndarray,
    n_inputs: int,
    n_classes: int,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Split a class-format matrix into inputs and class indices.

    Args:
        matrix: Array of shape (n_examples, n_inputs + 1), class in the last column.
        n_inputs: Number of input columns.
        n_classes: Number of classes; class indices must lie in [0, n_classes).

    Returns:
        Tuple of (inputs, targets): float32 inputs of shape (n_examples, n_inputs)
        and int64 targets of shape (n_examples,).
    """
    if matrix.shape[1] != n_inputs + 1:
        raise ValueError(
            f"class-format data needs {n_inputs + 1} columns (inputs + class), got {matrix.shape[1]}"
        )
    inputs = torch.tensor(matrix[:, :n_inputs], dtype=torch.float32)
    targets = torch.tensor(np.rint(matrix[:, n_inputs]), dtype=torch.long)
    if targets.numel() and (targets.min() < 0 or targets.max() >= n_classes):
        raise ValueError(f"class indices must lie in [0, {n_classes})")
    return inputs, targets
