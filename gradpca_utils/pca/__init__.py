"""
Streaming low-rank PCA of high-dimensional observation streams.

Estimates the leading eigenvalues/eigenvectors of a covariance matrix from a
stream of observations (typically per-example gradients, whose covariance
approximates the Hessian) without ever forming the covariance.

Core components:
- StreamingEigenEstimator: Discounted moving rank-k covariance estimate
- WorkingSet: Eigenvector rows and pending observations in one buffer
- MatrixSource / GradientSource: Observation streams
- GradientEigenTracker: One estimator per model parameter group

IO:
- log_eigen_metrics: TensorBoard logging of estimates
- write_eigenvalues / write_eigenvectors / load_directions: Text dumps
- save_estimator / load_estimator: Estimator state persistence
"""

from gradpca_utils.pca.errors import InvalidArgument, DimensionMismatch, NumericalFailure
from gradpca_utils.pca.estimator import StreamingEigenEstimator, WorkingSet, discount_normalizer
from gradpca_utils.pca.sources import (
    ObservationSource,
    MatrixSource,
    GradientSource,
    group_parameters,
    count_parameters,
)
from gradpca_utils.pca.tracker import GradientEigenTracker
from gradpca_utils.pca.io import (
    log_eigen_metrics,
    write_eigenvalues,
    write_eigenvectors,
    load_directions,
    save_estimator,
    load_estimator,
)

__all__ = [
    # Errors
    "InvalidArgument",
    "DimensionMismatch",
    "NumericalFailure",
    # Core components
    "StreamingEigenEstimator",
    "WorkingSet",
    "discount_normalizer",
    "ObservationSource",
    "MatrixSource",
    "GradientSource",
    "group_parameters",
    "count_parameters",
    "GradientEigenTracker",
    # IO
    "log_eigen_metrics",
    "write_eigenvalues",
    "write_eigenvectors",
    "load_directions",
    "save_estimator",
    "load_estimator",
]
