"""
StreamingEigenEstimator: Online low-rank PCA of a stream of observations.

Keeps a discounted running mean and a moving rank-k estimate of the
covariance of the observations. Observations are buffered on the rows of a
small working set; every `batch_size` observations the leading eigenpairs are
re-derived from the Gram matrix of that working set (the "Gram trick"),
so the dim×dim covariance is never formed.
"""

from __future__ import annotations

import torch

from gradpca_utils.pca.errors import DimensionMismatch, InvalidArgument, NumericalFailure


def discount_normalizer(gamma: float, count: int) -> float:
    """
    Total weight of `count` discounted observations.

    Sum of the geometric series 1 + gamma + ... + gamma^(count-1), i.e.
    (1 - gamma^count) / (1 - gamma), which is `count` when gamma == 1.
    """
    if gamma == 1.0:
        return float(count)
    return (1.0 - gamma ** count) / (1.0 - gamma)


class WorkingSet:
    """
    Row buffer of shape (k + batch_size, dim) with two named slices.

    Rows [0, k) hold the current *unnormalized* eigenvector estimates, rows
    [k, k + batch_size) the centered, aged observations of the current
    minibatch. Both slices are views on the same storage so the Gram products
    run over the whole buffer at once.
    """

    def __init__(
        self,
        k: int,
        batch_size: int,
        dim: int,
        device: torch.device,
        dtype: torch.dtype,
    ):
        self.k = k
        self.batch_size = batch_size
        self.rows = torch.zeros((k + batch_size, dim), dtype=dtype, device=device)

    @property
    def eigenvectors(self) -> torch.Tensor:
        return self.rows[: self.k]

    @property
    def pending(self) -> torch.Tensor:
        return self.rows[self.k :]


class StreamingEigenEstimator:
    """
    Streaming estimator of the leading eigenpairs of a covariance matrix.

    The mean and covariance are discounted moving averages:

        foo_{t+1} = gamma * foo_t + new

    normalized by the geometric series of the discount weights.

    Args:
        dim: Dimensionality of the observations.
        k: Number of leading eigenpairs to keep (1 <= k < dim).
        batch_size: Number of observations between reevaluations.
        gamma: Discount factor in (0, 1]. 1 means no forgetting.
        lam: Regularizer on the eigenvector block of the initial Gram matrix.
        device: PyTorch device for the buffers.
        dtype: Floating point type of the buffers.
    """

    def __init__(
        self,
        dim: int,
        k: int,
        batch_size: int,
        gamma: float,
        lam: float = 1e-3,
        device: str | torch.device = "cpu",
        dtype: torch.dtype = torch.float64,
    ):
        if dim < 1:
            raise InvalidArgument(f"dim must be >= 1, got {dim}")
        if k < 1 or k >= dim:
            raise InvalidArgument(f"k must satisfy 1 <= k < dim={dim}, got {k}")
        if batch_size < 1:
            raise InvalidArgument(f"batch_size must be >= 1, got {batch_size}")
        if not 0.0 < gamma <= 1.0:
            raise InvalidArgument(f"gamma must be in (0, 1], got {gamma}")
        if lam < 0.0:
            raise InvalidArgument(f"lam must be non-negative, got {lam}")

        self.dim = dim
        self.k = k
        self.batch_size = batch_size
        self.gamma = gamma
        self.lam = lam
        self.device = torch.device(device)
        self.dtype = dtype

        self.observation_count = 0
        self.buffer_index = 0

        n = k + batch_size
        self.working_set = WorkingSet(k, batch_size, dim, self.device, dtype)
        self.discounted_sum = torch.zeros(dim, dtype=dtype, device=self.device)

        # Gram matrix of the working set rows
        self.gram = torch.zeros((n, n), dtype=dtype, device=self.device)
        self.gram[:k, :k] = lam * torch.eye(k, dtype=dtype, device=self.device)

        # Results of the last eigendecomposition of the Gram matrix
        self.eigenvalues = torch.zeros(n, dtype=dtype, device=self.device)
        self.eigenvectors_gram = torch.zeros((n, n), dtype=dtype, device=self.device)

    def observe(self, x: torch.Tensor) -> None:
        """
        Add one observation to the stream.

        Reevaluates the leading eigenpairs once `batch_size` observations
        have been buffered.

        Raises:
            DimensionMismatch: if `x` is not a vector of length `dim`. The
                estimator is left untouched in that case.
        """
        x = torch.as_tensor(x, dtype=self.dtype, device=self.device)
        if x.dim() != 1 or x.shape[0] != self.dim:
            raise DimensionMismatch(
                f"expected an observation of shape ({self.dim},), got {tuple(x.shape)}"
            )

        self.observation_count += 1

        # Store the *non-centered* observation
        row = self.k + self.buffer_index
        rows = self.working_set.rows
        rows[row] = x

        self.discounted_sum.mul_(self.gamma).add_(x)

        # Center. The first observation is its own mean and is lost.
        normalizer = discount_normalizer(self.gamma, self.observation_count)
        rows[row] -= self.discounted_sum / normalizer

        # Make this observation look "younger" than the previous ones. The
        # actual discount is applied to every row at once on reevaluation.
        rows[row] *= self.gamma ** (-0.5 * (self.buffer_index + 1))

        self._update_gram(row)

        self.buffer_index += 1
        if self.buffer_index == self.batch_size:
            self._reevaluate()

    def _update_gram(self, row: int) -> None:
        rows = self.working_set.rows
        products = torch.mv(rows[: row + 1], rows[row])
        self.gram[row, : row + 1] = products
        self.gram[:row, row] = products[:row]

    def _reevaluate(self) -> None:
        """
        Re-derive the leading eigenpairs from the Gram matrix.

        Only runs with a full minibatch, right after the last `observe`.

        Raises:
            NumericalFailure: if the Gram matrix is not finite or the
                eigensolver fails. The estimator must then be discarded.
        """
        if not torch.isfinite(self.gram).all():
            raise NumericalFailure("Gram matrix contains non-finite entries")
        try:
            d, v = torch.linalg.eigh(self.gram)
        except torch.linalg.LinAlgError as err:
            raise NumericalFailure(f"symmetric eigendecomposition failed: {err}") from err
        if not (torch.isfinite(d).all() and torch.isfinite(v).all()):
            raise NumericalFailure("eigendecomposition returned non-finite values")

        # Descending order, ties kept in solver order
        order = torch.argsort(d, descending=True, stable=True)
        d = d[order]
        v = v[:, order]
        self.eigenvectors_gram = v

        # Leading eigenvectors of the Gram matrix, combined with the rows of
        # the working set, are the unnormalized eigenvectors of the covariance.
        new_eigenvectors = v[:, : self.k].T @ self.working_set.rows

        # Age everyone by the same factor
        rn = self.gamma ** (-0.5 * (self.batch_size + 1))
        new_eigenvectors /= rn
        self.eigenvalues = d * (1.0 / (rn * rn))

        self.working_set.eigenvectors.copy_(new_eigenvectors)
        self.gram[: self.k, : self.k] = torch.diag(self.eigenvalues[: self.k])
        self.buffer_index = 0

    def get_leading_eigen(self) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Snapshot of the current estimate.

        Eigenvalues are divided by the discount normalizer so they are on the
        scale of a variance. The eigenvectors are returned as stored, *not*
        normalized to unit length; their squared norms carry the eigenvalues.
        Before the first reevaluation the result is meaningless.

        Returns:
            Tuple of (eigenvalues, eigenvectors) of shapes (k,) and (k, dim),
            eigenvectors on the rows.
        """
        normalizer = discount_normalizer(self.gamma, self.observation_count)
        eigenvalues = self.eigenvalues[: self.k] / normalizer
        eigenvectors = self.working_set.eigenvectors.clone()
        return eigenvalues, eigenvectors

    def state_dict(self) -> dict:
        """Configuration plus the minimal state needed to resume the stream."""
        return {
            "dim": self.dim,
            "k": self.k,
            "batch_size": self.batch_size,
            "gamma": self.gamma,
            "lam": self.lam,
            "observation_count": self.observation_count,
            "buffer_index": self.buffer_index,
            "working_set": self.working_set.rows.clone(),
            "discounted_sum": self.discounted_sum.clone(),
            "eigenvalues": self.eigenvalues[: self.k].clone(),
            "gram_diagonal": torch.diagonal(self.gram[: self.k, : self.k]).clone(),
        }

    def load_state_dict(self, state: dict) -> None:
        """
        Restore a state produced by `state_dict`.

        Gram entries of the buffered observations are recomputed from the
        working set.
        """
        for key in ("dim", "k", "batch_size", "gamma", "lam"):
            if state[key] != getattr(self, key):
                raise InvalidArgument(
                    f"state {key}={state[key]} does not match estimator {key}={getattr(self, key)}"
                )
        buffer_index = int(state["buffer_index"])
        if not 0 <= buffer_index < self.batch_size:
            raise InvalidArgument(f"buffer_index {buffer_index} out of range [0, {self.batch_size})")
        expected_shapes = {
            "working_set": self.working_set.rows.shape,
            "discounted_sum": self.discounted_sum.shape,
            "eigenvalues": (self.k,),
            "gram_diagonal": (self.k,),
        }
        for key, shape in expected_shapes.items():
            found = tuple(torch.as_tensor(state[key]).shape)
            if found != tuple(shape):
                raise InvalidArgument(f"state {key} has shape {found}, expected {tuple(shape)}")

        self.observation_count = int(state["observation_count"])
        self.buffer_index = buffer_index
        self.working_set.rows.copy_(torch.as_tensor(state["working_set"]))
        self.discounted_sum.copy_(torch.as_tensor(state["discounted_sum"]))

        self.eigenvalues.zero_()
        self.eigenvalues[: self.k] = torch.as_tensor(state["eigenvalues"])

        self.gram.zero_()
        self.gram[: self.k, : self.k] = torch.diag(
            torch.as_tensor(state["gram_diagonal"], dtype=self.dtype, device=self.device)
        )
        for i in range(self.buffer_index):
            self._update_gram(self.k + i)

    @classmethod
    def from_state_dict(
        cls,
        state: dict,
        device: str | torch.device = "cpu",
    ) -> "StreamingEigenEstimator":
        """Build a new estimator from a state produced by `state_dict`."""
        estimator = cls(
            dim=state["dim"],
            k=state["k"],
            batch_size=state["batch_size"],
            gamma=state["gamma"],
            lam=state["lam"],
            device=device,
            dtype=torch.as_tensor(state["working_set"]).dtype,
        )
        estimator.load_state_dict(state)
        return estimator
