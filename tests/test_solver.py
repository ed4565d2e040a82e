import json
import math

import numpy as np
import pytest
from sklearn.covariance import graphical_lasso

from glassograph import (
    DimensionError,
    EstimationError,
    GlassoOptions,
    InvalidPenaltyError,
    NonConvergenceError,
    NumericalInstabilityError,
    PrecisionEstimate,
    build_variable_graph,
    estimate_precision,
    estimate_precision_path,
    partial_correlation,
    penalized_log_likelihood,
)

# Correlation matrix with a decaying dependence structure.
S4 = np.array(
    [
        [1.0, 0.6, 0.3, 0.1],
        [0.6, 1.0, 0.4, 0.2],
        [0.3, 0.4, 1.0, 0.5],
        [0.1, 0.2, 0.5, 1.0],
    ]
)

TIGHT = GlassoOptions(
    max_outer_iterations=1000,
    max_inner_iterations=100000,
    convergence_tolerance=1e-12,
    inner_tolerance=1e-14,
)


def _random_covariance(p: int, n: int, seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    x = rng.standard_normal((n, p)) @ rng.standard_normal((p, p))
    return np.cov(x, rowvar=False)


@pytest.mark.parametrize("penalty", [0.01, 0.1, 0.5])
@pytest.mark.parametrize("seed", [0, 1, 2])
def test_estimate_is_symmetric_with_positive_diagonal(penalty, seed):
    s = _random_covariance(6, 50, seed)

    result = estimate_precision(s, penalty, max_outer_iterations=500)

    assert isinstance(result, PrecisionEstimate)
    assert result.converged
    np.testing.assert_allclose(result.theta, result.theta.T, atol=1e-12)
    assert np.all(np.diag(result.theta) > 0)
    assert result.n_iter <= 500


def test_estimate_satisfies_optimality_conditions():
    s = _random_covariance(5, 40, 7)
    rho = 0.2

    result = estimate_precision(s, rho, TIGHT)

    np.testing.assert_allclose(result.w @ result.theta, np.eye(5), atol=1e-8)
    np.testing.assert_allclose(np.diag(result.w), np.diag(s) + rho)
    off = ~np.eye(5, dtype=bool)
    gap = result.w - s
    nonzero = off & (result.theta != 0.0)
    np.testing.assert_allclose(gap[nonzero], rho * np.sign(result.theta[nonzero]), atol=1e-8)
    assert np.all(np.abs(gap[off]) <= rho + 1e-8)


def test_estimate_maximises_penalized_likelihood():
    s = _random_covariance(4, 30, 3)
    result = estimate_precision(s, 0.1, TIGHT)
    best = penalized_log_likelihood(result.theta, s, result.penalty)

    rng = np.random.default_rng(11)
    for _ in range(5):
        e = rng.standard_normal((4, 4)) * 1e-3
        candidate = result.theta + (e + e.T) / 2.0
        assert penalized_log_likelihood(candidate, s, result.penalty) <= best + 1e-12
    diagonal = np.diag(1.0 / (np.diag(s) + 0.1))
    assert penalized_log_likelihood(diagonal, s, result.penalty) <= best


def test_penalized_log_likelihood_of_indefinite_matrix_is_minus_infinity():
    assert penalized_log_likelihood(np.diag([1.0, -1.0]), np.eye(2), 0.1) == -np.inf
    with pytest.raises(DimensionError):
        penalized_log_likelihood(np.eye(2), np.eye(3))


def test_sparsity_is_monotone_in_the_penalty():
    penalties = [0.9, 0.1, 0.5, 0.3]

    path = estimate_precision_path(S4, penalties)
    counts = [estimate.n_nonzero_edges() for estimate in path]

    np.testing.assert_allclose([est.penalty[0, 1] for est in path], sorted(penalties))
    assert all(a >= b for a, b in zip(counts, counts[1:]))
    assert counts[0] > 0
    assert counts[-1] == 0


@pytest.mark.parametrize("screen", [True, False])
def test_large_penalty_gives_diagonal_precision_and_empty_graph(screen):
    result = estimate_precision(S4, 1.0, screen_components=screen)

    off = ~np.eye(4, dtype=bool)
    assert np.all(result.theta[off] == 0.0)
    np.testing.assert_allclose(np.diag(result.theta), 1.0 / (np.diag(S4) + 1.0))

    graph = build_variable_graph(result, ["a", "b", "c", "d"])
    assert graph.n_nodes == 4
    assert graph.n_edges == 0


def test_recovers_conditional_independence_of_a_chain():
    rng = np.random.default_rng(0)
    n = 5000
    x1 = rng.standard_normal(n)
    x2 = 0.7 * x1 + rng.standard_normal(n)
    x3 = 0.7 * x2 + rng.standard_normal(n)
    corr = np.corrcoef(np.column_stack([x1, x2, x3]), rowvar=False)

    result = estimate_precision(corr, 0.02, convergence_tolerance=1e-8)
    graph = build_variable_graph(result, ["X1", "X2", "X3"])
    pcorr = graph.partial_correlation

    assert abs(pcorr[0, 2]) < 0.05
    assert pcorr[0, 1] > 0.2
    assert pcorr[1, 2] > 0.2
    assert graph.graph.has_edge("X1", "X2")
    assert graph.graph.has_edge("X2", "X3")


def test_unpenalized_fit_matches_closed_form_partial_correlation():
    r12, r13, r23 = 0.2, 0.8, 0.1
    corr = np.array([[1.0, r12, r13], [r12, 1.0, r23], [r13, r23, 1.0]])

    result = estimate_precision(corr, 0.0, TIGHT)
    pcorr = partial_correlation(result)

    expected = (r12 - r13 * r23) / math.sqrt((1 - r13**2) * (1 - r23**2))
    assert pcorr[0, 1] == pytest.approx(expected, abs=1e-6)
    np.testing.assert_allclose(result.theta, np.linalg.inv(corr), atol=1e-8)


def test_two_variables():
    s = np.array([[2.0, 0.5], [0.5, 1.0]])

    sparse = estimate_precision(s, 0.6)
    assert sparse.theta[0, 1] == 0.0
    assert build_variable_graph(sparse, ["x", "y"]).n_edges == 0

    dense = estimate_precision(s, 0.1)
    # The fitted covariance keeps the augmented diagonal and shrinks the
    # off-diagonal entry by the penalty.
    np.testing.assert_allclose(dense.theta, np.linalg.inv([[2.1, 0.4], [0.4, 1.1]]), atol=1e-10)
    graph = build_variable_graph(dense, ["x", "y"])
    assert graph.n_edges == 1
    assert graph.edges()[0][2] > 0


def test_matches_scikit_learn_without_diagonal_penalty():
    s = _random_covariance(5, 60, 5)
    alpha = 0.1

    result = estimate_precision(s, alpha, TIGHT, diagonal_augmentation=False)
    _, reference = graphical_lasso(s, alpha=alpha, tol=1e-10, enet_tol=1e-12, max_iter=1000)

    np.testing.assert_allclose(np.diag(result.w), np.diag(s))
    np.testing.assert_allclose(result.theta, reference, atol=1e-5)


def test_screening_does_not_change_the_estimate():
    s = _random_covariance(6, 30, 9)

    screened = estimate_precision(s, 0.3, TIGHT)
    full = estimate_precision(s, 0.3, TIGHT, screen_components=False)

    np.testing.assert_allclose(screened.theta, full.theta, atol=1e-8)


def test_positive_semidefinite_covariance_is_regularised():
    rng = np.random.default_rng(4)
    s = np.cov(rng.standard_normal((3, 5)), rowvar=False)
    assert np.linalg.matrix_rank(s) < 5

    result = estimate_precision(s, 0.1, max_outer_iterations=1000)

    assert np.all(np.isfinite(result.theta))
    assert np.all(np.diag(result.theta) > 0)
    assert np.all(np.linalg.eigvalsh(result.theta) > 0)


def test_zero_constraints_force_exact_zeros():
    result = estimate_precision(S4, 0.05, zero=[(0, 1)])

    assert result.theta[0, 1] == 0.0
    assert result.theta[1, 0] == 0.0
    assert result.theta[1, 2] != 0.0


def test_penalty_matrix_and_vector_forms():
    lam = np.full((4, 4), 0.1)
    lam[0, 1] = lam[1, 0] = 10.0
    result = estimate_precision(S4, lam)
    assert result.theta[0, 1] == 0.0

    asymmetric = np.full((4, 4), 0.2)
    asymmetric[2, 3] = 0.0
    np.testing.assert_allclose(estimate_precision(S4, asymmetric).penalty[2, 3], 0.1)

    vector = estimate_precision(S4, [0.04, 0.09, 0.16, 0.25])
    np.testing.assert_allclose(vector.penalty[0, 3], 0.1)
    np.testing.assert_allclose(np.diag(vector.penalty), [0.04, 0.09, 0.16, 0.25])


def test_input_does_not_change():
    s = S4.copy()
    estimate_precision(s, 0.2)
    np.testing.assert_array_equal(s, S4)


@pytest.mark.parametrize(
    "covariance",
    [
        np.ones((3, 4)),
        np.ones(3),
        np.array([[1.0]]),
        np.array([[1.0, 0.5], [0.2, 1.0]]),
    ],
)
def test_dimension_errors(covariance):
    with pytest.raises(DimensionError):
        estimate_precision(covariance, 0.1)


@pytest.mark.parametrize("penalty", [-0.1, [0.1, -0.2, 0.1, 0.1], np.nan])
def test_invalid_penalty(penalty):
    with pytest.raises(InvalidPenaltyError):
        estimate_precision(S4, penalty)


def test_penalty_shape_mismatch():
    with pytest.raises(DimensionError):
        estimate_precision(S4, [0.1, 0.2])
    with pytest.raises(DimensionError):
        estimate_precision(S4, np.full((3, 3), 0.1))
    with pytest.raises(DimensionError):
        estimate_precision(S4, 0.1, zero=[(0, 4)])


def test_numerical_instability_errors():
    s = S4.copy()
    s[0, 0] = np.inf
    with pytest.raises(NumericalInstabilityError):
        estimate_precision(s, 0.1)

    degenerate = np.array([[0.0, 0.0], [0.0, 1.0]])
    with pytest.raises(NumericalInstabilityError):
        estimate_precision(degenerate, 0.0)

    indefinite = np.array([[1.0, 2.0], [2.0, 1.0]])
    with pytest.raises(NumericalInstabilityError):
        estimate_precision(indefinite, 0.0)


def test_non_convergence_carries_partial_estimate():
    options = GlassoOptions(max_outer_iterations=1, convergence_tolerance=1e-14)

    with pytest.raises(NonConvergenceError) as excinfo:
        estimate_precision(S4, 0.05, options)

    assert isinstance(excinfo.value, EstimationError)
    partial = excinfo.value.estimate
    assert not partial.converged
    assert partial.n_iter == 1
    np.testing.assert_array_equal(partial.theta, partial.theta.T)


def test_non_strict_mode_warns_instead():
    with pytest.warns(RuntimeWarning, match="did not converge"):
        result = estimate_precision(
            S4, 0.05, max_outer_iterations=1, convergence_tolerance=1e-14, strict=False
        )
    assert not result.converged


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_outer_iterations": 0},
        {"max_inner_iterations": 2.5},
        {"convergence_tolerance": 0.0},
        {"inner_tolerance": -1.0},
        {"symmetry_tolerance": -1.0},
    ],
)
def test_options_validation(kwargs):
    with pytest.raises(ValueError):
        GlassoOptions(**kwargs)


def test_options_overrides():
    options = GlassoOptions()
    assert options.effective_inner_tolerance == pytest.approx(1e-5)
    assert GlassoOptions(inner_tolerance=1e-3).effective_inner_tolerance == 1e-3

    with pytest.raises(TypeError):
        estimate_precision(S4, 0.1, options, max_iterations=5)


def test_estimate_serialises_to_flat_arrays():
    result = estimate_precision(S4, 0.2)

    data = json.loads(json.dumps(result.as_dict()))
    restored = PrecisionEstimate.from_dict(data)

    assert data["shape"] == [4, 4]
    assert len(data["theta"]) == 16
    assert data["theta"][1] == result.theta[0, 1]
    np.testing.assert_array_equal(restored.theta, result.theta)
    np.testing.assert_array_equal(restored.w, result.w)
    assert restored.converged == result.converged

    data["theta"] = data["theta"][:-1]
    with pytest.raises(DimensionError):
        PrecisionEstimate.from_dict(data)


def test_path_validation():
    with pytest.raises(InvalidPenaltyError):
        estimate_precision_path(S4, [])
    with pytest.raises(InvalidPenaltyError):
        estimate_precision_path(S4, [[0.1, 0.2]])


@pytest.mark.parametrize("screen", [True, False])
def test_infinite_scalar_penalty_gives_diagonal_precision(screen):
    result = estimate_precision(S4, np.inf, screen_components=screen)

    off = ~np.eye(4, dtype=bool)
    assert np.all(result.theta[off] == 0.0)
    assert np.all(np.isfinite(result.theta))
    assert np.all(np.diag(result.theta) > 0)
    assert np.all(np.isfinite(result.penalty))
    assert build_variable_graph(result, ["a", "b", "c", "d"]).n_edges == 0


def test_infinite_penalty_entries_force_zeros():
    lam = np.full((4, 4), 0.05)
    lam[1, 2] = lam[2, 1] = np.inf
    matrix = estimate_precision(S4, lam)
    assert matrix.theta[1, 2] == 0.0
    assert matrix.theta[0, 1] != 0.0

    vector = estimate_precision(S4, [0.04, np.inf, 0.04, 0.04])
    assert np.all(vector.theta[1, [0, 2, 3]] == 0.0)
    assert np.all(np.diag(vector.theta) > 0)


def test_zero_next_to_infinite_vector_penalty_is_rejected():
    with pytest.raises(InvalidPenaltyError):
        estimate_precision(S4, [0.0, np.inf, 0.1, 0.1])


@pytest.mark.parametrize(
    "augment, hint",
    [(True, "increase the diagonal penalty"), (False, "enable diagonal augmentation")],
)
def test_non_positive_working_diagonal_message(augment, hint):
    degenerate = np.array([[0.0, 0.0], [0.0, 1.0]])
    with pytest.raises(NumericalInstabilityError, match=hint):
        estimate_precision(degenerate, 0.0, diagonal_augmentation=augment)
