"""
Tests for the streaming low-rank eigen-estimator.

Tests include:
- Construction: parameter validation and initial state
- Discount normalizer: geometric series limits
- Reevaluation: ordering, Gram identity, reprojection against a dense reference
- Readout: idempotence, rejected observations, end-to-end scenarios
- State: resuming a stream from a saved state
"""

import math

import pytest
import torch


def _random_stream(n, dim, seed=0):
    generator = torch.Generator().manual_seed(seed)
    return torch.randn(n, dim, generator=generator, dtype=torch.float64)


def _online_centered(observations):
    """Center every observation against the running mean up to and including itself."""
    rows = []
    total = torch.zeros(observations.shape[1], dtype=torch.float64)
    for t, x in enumerate(observations, start=1):
        total = total + x
        rows.append(x - total / t)
    return torch.stack(rows)


# ============================================================================
# Construction
# ============================================================================

@pytest.mark.parametrize(
    "dim, k, batch_size, gamma",
    [
        (0, 1, 1, 0.9),
        (4, 0, 1, 0.9),
        (4, 4, 1, 0.9),
        (4, 5, 1, 0.9),
        (4, 1, 0, 0.9),
        (4, 1, 2, 0.0),
        (4, 1, 2, -0.5),
        (4, 1, 2, 1.5),
    ],
)
def test_invalid_construction_arguments(dim, k, batch_size, gamma):
    """Bad dimensions or discount factors are rejected with InvalidArgument."""
    from gradpca_utils.pca import InvalidArgument, StreamingEigenEstimator

    with pytest.raises(InvalidArgument):
        StreamingEigenEstimator(dim, k, batch_size, gamma)


def test_invalid_argument_is_a_value_error():
    from gradpca_utils.pca import DimensionMismatch, InvalidArgument, NumericalFailure

    assert issubclass(InvalidArgument, ValueError)
    assert issubclass(DimensionMismatch, ValueError)
    assert issubclass(NumericalFailure, RuntimeError)


def test_initial_state():
    """Buffers start at zero except the regularized eigenvector block of the Gram matrix."""
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=6, k=2, batch_size=3, gamma=0.9, lam=1e-3)

    assert est.working_set.rows.shape == (5, 6)
    assert est.working_set.eigenvectors.shape == (2, 6)
    assert est.working_set.pending.shape == (3, 6)
    assert est.gram.shape == (5, 5)
    assert est.eigenvalues.shape == (5,)
    assert est.observation_count == 0
    assert est.buffer_index == 0

    expected_gram = torch.zeros(5, 5, dtype=torch.float64)
    expected_gram[0, 0] = 1e-3
    expected_gram[1, 1] = 1e-3
    assert torch.equal(est.gram, expected_gram)
    assert torch.count_nonzero(est.working_set.rows) == 0
    assert torch.count_nonzero(est.discounted_sum) == 0


def test_working_set_slices_share_storage():
    """The eigenvector and pending slices are views on one buffer."""
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=4, k=1, batch_size=2, gamma=1.0)
    est.working_set.pending[0, 0] = 3.0
    est.working_set.eigenvectors[0, 1] = 5.0

    assert est.working_set.rows[1, 0] == 3.0
    assert est.working_set.rows[0, 1] == 5.0


# ============================================================================
# Discount Normalizer
# ============================================================================

@pytest.mark.parametrize("gamma", [0.1, 0.5, 0.9, 0.999])
def test_normalizer_of_one_observation_is_one(gamma):
    from gradpca_utils.pca import discount_normalizer

    assert discount_normalizer(gamma, 1) == pytest.approx(1.0)


def test_normalizer_tends_to_count_without_discount():
    """As gamma -> 1 the total weight tends to the number of observations."""
    from gradpca_utils.pca import discount_normalizer

    for t in (1, 5, 100):
        assert discount_normalizer(1.0, t) == float(t)
        assert discount_normalizer(1.0 - 1e-7, t) == pytest.approx(t, rel=1e-4)


def test_normalizer_matches_explicit_series():
    from gradpca_utils.pca import discount_normalizer

    gamma = 0.7
    expected = sum(gamma ** i for i in range(6))
    assert discount_normalizer(gamma, 6) == pytest.approx(expected)


# ============================================================================
# Observation and Reevaluation
# ============================================================================

def test_reevaluation_triggers_on_full_minibatch():
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=5, k=2, batch_size=3, gamma=0.95)
    stream = _random_stream(7, 5)

    indices = []
    for x in stream:
        est.observe(x)
        indices.append(est.buffer_index)

    assert indices == [1, 2, 0, 1, 2, 0, 1]
    assert est.observation_count == 7


@pytest.mark.parametrize(
    "dim, k, batch_size, gamma",
    [
        (10, 3, 5, 1.0),
        (10, 3, 5, 0.9),
        (20, 1, 4, 0.99),
        (8, 7, 2, 0.5),
        (30, 5, 1, 0.95),
    ],
)
def test_eigenvalues_sorted_after_minibatch(dim, k, batch_size, gamma):
    """After batch_size observations the k eigenvalues come out non-increasing."""
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim, k, batch_size, gamma)
    for x in _random_stream(batch_size, dim, seed=dim + k):
        est.observe(x)

    eigenvalues, eigenvectors = est.get_leading_eigen()
    assert eigenvalues.shape == (k,)
    assert eigenvectors.shape == (k, dim)
    assert torch.all(eigenvalues[:-1] >= eigenvalues[1:])


def test_gram_block_is_diagonal_after_reevaluation():
    """Eigenvector rows are mutually orthogonal with squared norms equal to the stored eigenvalues."""
    from gradpca_utils.pca import StreamingEigenEstimator

    k = 3
    est = StreamingEigenEstimator(dim=20, k=k, batch_size=8, gamma=0.9)
    for x in _random_stream(24, 20, seed=3):
        est.observe(x)

    vectors = est.working_set.eigenvectors
    torch.testing.assert_close(est.gram[:k, :k], torch.diag(est.eigenvalues[:k]))
    torch.testing.assert_close(
        vectors @ vectors.T, torch.diag(est.eigenvalues[:k]), rtol=1e-8, atol=1e-8
    )


def test_reprojection_recovers_sample_covariance():
    """
    Without discount, one reevaluation recovers the covariance of the centered
    observations exactly when the kept eigenpairs span all of it.
    """
    from gradpca_utils.pca import StreamingEigenEstimator

    dim, k, batch_size = 5, 4, 5
    observations = _random_stream(batch_size, dim, seed=11)
    est = StreamingEigenEstimator(dim, k, batch_size, gamma=1.0, lam=1e-12)
    for x in observations:
        est.observe(x)

    # The first centered row is zero, so the covariance has rank k = 4
    centered = _online_centered(observations)
    covariance = centered.T @ centered
    reference = torch.linalg.eigvalsh(covariance).flip(0)[:k]

    eigenvalues, eigenvectors = est.get_leading_eigen()
    torch.testing.assert_close(eigenvalues, reference / batch_size, rtol=1e-8, atol=1e-10)
    torch.testing.assert_close(eigenvectors.T @ eigenvectors, covariance, rtol=1e-8, atol=1e-10)


def test_first_observation_is_centered_to_zero():
    """A single observation is its own mean; only the count moves."""
    from gradpca_utils.pca import StreamingEigenEstimator, discount_normalizer

    est = StreamingEigenEstimator(dim=3, k=1, batch_size=4, gamma=0.5)
    est.observe(torch.tensor([1.0, -2.0, 4.0]))

    assert discount_normalizer(0.5, 1) == 1.0
    assert est.observation_count == 1
    assert est.buffer_index == 1
    assert torch.count_nonzero(est.working_set.pending[0]) == 0
    torch.testing.assert_close(est.discounted_sum, torch.tensor([1.0, -2.0, 4.0], dtype=torch.float64))


def test_observations_are_aged_within_minibatch():
    """The i-th row of a minibatch is scaled by gamma^(-(i+1)/2) after centering."""
    from gradpca_utils.pca import StreamingEigenEstimator

    gamma = 0.5
    est = StreamingEigenEstimator(dim=2, k=1, batch_size=3, gamma=gamma)
    est.observe(torch.tensor([0.0, 0.0]))
    est.observe(torch.tensor([3.0, 0.0]))

    # discounted sum = [3, 0], normalizer = 1 + 0.5, mean = [2, 0]
    expected = torch.tensor([1.0, 0.0], dtype=torch.float64) * gamma ** -1.0
    torch.testing.assert_close(est.working_set.pending[1], expected)
    torch.testing.assert_close(est.gram[2, 2], expected @ expected)


def test_end_to_end_axis_aligned_scenario():
    """dim=4, k=1, batch_size=3, no discount: the eigenvector follows the first axis."""
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=4, k=1, batch_size=3, gamma=1.0)
    for x in ([1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0], [-1.0, 0.0, 0.0, 0.0]):
        est.observe(x)

    eigenvalues, eigenvectors = est.get_leading_eigen()
    assert eigenvalues.shape == (1,)
    assert eigenvalues[0] >= 0.0

    direction = eigenvectors[0] / torch.linalg.vector_norm(eigenvectors[0])
    # On-line centering mixes in a little of the second axis
    assert abs(direction[0].item()) > 0.99
    assert direction[2].item() == 0.0
    assert direction[3].item() == 0.0


def test_eigenvectors_are_not_normalized():
    """Readout normalizes eigenvalues but leaves eigenvector lengths as stored."""
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=6, k=2, batch_size=4, gamma=1.0)
    for x in _random_stream(4, 6, seed=5) * 10.0:
        est.observe(x)

    eigenvalues, eigenvectors = est.get_leading_eigen()
    norms = torch.linalg.vector_norm(eigenvectors, dim=1)
    assert not torch.allclose(norms, torch.ones_like(norms))
    torch.testing.assert_close(norms ** 2, eigenvalues * est.observation_count)


def test_discounted_stream_tracks_dominant_direction():
    """With forgetting, the leading direction follows a high-variance axis."""
    from gradpca_utils.pca import StreamingEigenEstimator

    generator = torch.Generator().manual_seed(7)
    scales = torch.tensor([10.0, 1.0, 1.0, 1.0, 1.0, 1.0], dtype=torch.float64)
    stream = torch.randn(200, 6, generator=generator, dtype=torch.float64) * scales

    est = StreamingEigenEstimator(dim=6, k=2, batch_size=10, gamma=0.99)
    for x in stream:
        est.observe(x)

    eigenvalues, eigenvectors = est.get_leading_eigen()
    direction = eigenvectors[0] / torch.linalg.vector_norm(eigenvectors[0])
    assert abs(direction[0].item()) > 0.95
    assert eigenvalues[0] > 10.0 * eigenvalues[1]


# ============================================================================
# Readout and Failure Modes
# ============================================================================

def test_readout_is_idempotent():
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=8, k=2, batch_size=3, gamma=0.9)
    for x in _random_stream(5, 8):
        est.observe(x)

    first = est.get_leading_eigen()
    second = est.get_leading_eigen()
    assert torch.equal(first[0], second[0])
    assert torch.equal(first[1], second[1])


def test_readout_returns_copies():
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=8, k=2, batch_size=3, gamma=0.9)
    for x in _random_stream(3, 8):
        est.observe(x)

    eigenvalues, eigenvectors = est.get_leading_eigen()
    eigenvalues.zero_()
    eigenvectors.zero_()
    again_values, again_vectors = est.get_leading_eigen()
    assert torch.count_nonzero(again_values) > 0
    assert torch.count_nonzero(again_vectors) > 0


@pytest.mark.parametrize("bad", [torch.zeros(3), torch.zeros(5), torch.zeros(2, 4), torch.zeros(())])
def test_dimension_mismatch_leaves_state_unchanged(bad):
    """A rejected observation behaves as if it never happened."""
    from gradpca_utils.pca import DimensionMismatch, StreamingEigenEstimator

    stream = _random_stream(9, 4, seed=2)
    clean = StreamingEigenEstimator(dim=4, k=2, batch_size=3, gamma=0.8)
    faulty = StreamingEigenEstimator(dim=4, k=2, batch_size=3, gamma=0.8)

    for i, x in enumerate(stream):
        clean.observe(x)
        if i == 4:
            with pytest.raises(DimensionMismatch):
                faulty.observe(bad)
        faulty.observe(x)

    assert faulty.observation_count == clean.observation_count
    assert faulty.buffer_index == clean.buffer_index
    for a, b in zip(clean.get_leading_eigen(), faulty.get_leading_eigen()):
        assert torch.equal(a, b)


def test_non_finite_observation_raises_numerical_failure():
    from gradpca_utils.pca import NumericalFailure, StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=3, k=1, batch_size=2, gamma=1.0)
    est.observe([1.0, 2.0, 3.0])
    with pytest.raises(NumericalFailure):
        est.observe([math.inf, 0.0, 0.0])


def test_solver_failure_raises_numerical_failure(monkeypatch):
    from gradpca_utils.pca import NumericalFailure, StreamingEigenEstimator

    def failing_eigh(matrix):
        raise torch.linalg.LinAlgError("failed to converge")

    est = StreamingEigenEstimator(dim=3, k=1, batch_size=2, gamma=1.0)
    est.observe([1.0, 2.0, 3.0])
    monkeypatch.setattr(torch.linalg, "eigh", failing_eigh)
    with pytest.raises(NumericalFailure) as excinfo:
        est.observe([0.0, 1.0, 0.0])
    assert isinstance(excinfo.value.__cause__, torch.linalg.LinAlgError)


def test_tied_eigenvalues_are_ordered_deterministically():
    """Orthogonal observations of equal norm give a Gram matrix with repeated eigenvalues."""
    from gradpca_utils.pca import StreamingEigenEstimator

    stream = 2.0 * torch.eye(6, dtype=torch.float64)[:4]
    results = []
    for _ in range(2):
        est = StreamingEigenEstimator(dim=6, k=3, batch_size=4, gamma=1.0, lam=1e-3)
        for x in stream:
            est.observe(x)
        results.append(est.get_leading_eigen())

    (values_a, vectors_a), (values_b, vectors_b) = results
    assert torch.equal(values_a, values_b)
    assert torch.equal(vectors_a, vectors_b)
    assert torch.all(values_a[:-1] >= values_a[1:])


def test_readout_before_reevaluation_does_not_raise():
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=4, k=2, batch_size=5, gamma=0.9)
    eigenvalues, eigenvectors = est.get_leading_eigen()
    assert eigenvalues.shape == (2,)
    assert eigenvectors.shape == (2, 4)


# ============================================================================
# State
# ============================================================================

def test_state_dict_resumes_mid_minibatch():
    """Restoring from a state taken mid-minibatch continues the same stream."""
    from gradpca_utils.pca import StreamingEigenEstimator

    stream = _random_stream(20, 6, seed=9)
    original = StreamingEigenEstimator(dim=6, k=2, batch_size=4, gamma=0.9)
    for x in stream[:10]:
        original.observe(x)

    state = original.state_dict()
    assert state["buffer_index"] == 2
    assert state["eigenvalues"].shape == (2,)
    assert state["gram_diagonal"].shape == (2,)
    restored = StreamingEigenEstimator.from_state_dict(state)

    for x in stream[10:]:
        original.observe(x)
        restored.observe(x)

    assert restored.observation_count == original.observation_count
    for a, b in zip(original.get_leading_eigen(), restored.get_leading_eigen()):
        torch.testing.assert_close(a, b)


def test_state_dict_before_first_reevaluation_keeps_regularizer():
    from gradpca_utils.pca import StreamingEigenEstimator

    est = StreamingEigenEstimator(dim=5, k=2, batch_size=3, gamma=1.0, lam=0.25)
    est.observe(torch.ones(5))
    restored = StreamingEigenEstimator.from_state_dict(est.state_dict())

    torch.testing.assert_close(restored.gram, est.gram)
    assert restored.gram[0, 0] == 0.25


def test_load_state_dict_rejects_other_configuration():
    from gradpca_utils.pca import InvalidArgument, StreamingEigenEstimator

    state = StreamingEigenEstimator(dim=5, k=2, batch_size=3, gamma=0.9).state_dict()
    other = StreamingEigenEstimator(dim=5, k=2, batch_size=4, gamma=0.9)
    with pytest.raises(InvalidArgument):
        other.load_state_dict(state)


@pytest.mark.parametrize("key", ["working_set", "discounted_sum", "eigenvalues", "gram_diagonal"])
def test_load_state_dict_rejects_wrong_shapes_without_partial_restore(key):
    from gradpca_utils.pca import InvalidArgument, StreamingEigenEstimator

    source = StreamingEigenEstimator(dim=5, k=2, batch_size=3, gamma=0.9)
    for x in _random_stream(4, 5, seed=3):
        source.observe(x)
    state = source.state_dict()
    state[key] = torch.zeros(tuple(s + 1 for s in state[key].shape), dtype=torch.float64)

    target = StreamingEigenEstimator(dim=5, k=2, batch_size=3, gamma=0.9)
    before = target.state_dict()
    with pytest.raises(InvalidArgument):
        target.load_state_dict(state)

    after = target.state_dict()
    assert after["observation_count"] == before["observation_count"]
    assert after["buffer_index"] == before["buffer_index"]
    for name in ("working_set", "discounted_sum", "eigenvalues", "gram_diagonal"):
        assert torch.equal(after[name], before[name])
