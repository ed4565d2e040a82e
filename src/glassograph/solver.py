"""High level helpers for running the graphical lasso solver."""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
import logging
from typing import Any, Iterable, List, Sequence
import warnings

import numpy as np

from .algorithm import GlassoResult, glasso_fast
from .exceptions import (
    DimensionError,
    InvalidPenaltyError,
    NonConvergenceError,
    NumericalInstabilityError,
)

logger = logging.getLogger(__name__)

_BIG = 1.0e10


@dataclass(frozen=True)
class GlassoOptions:
    """Solver configuration.

    Attributes
    ----------
    max_outer_iterations : int
        Maximum number of passes over all row/column blocks.
    max_inner_iterations : int
        Maximum number of coordinate-descent sweeps per block.
    convergence_tolerance : float
        Outer stopping rule: a pass converges when the mean absolute
        change of the off-diagonal working covariance is below
        ``convergence_tolerance * mean(|S_offdiag|)``.
    inner_tolerance : float, optional
        Largest coefficient change allowed in the last lasso sweep.
        Defaults to ``convergence_tolerance / 10``.
    diagonal_augmentation : bool
        Start from ``W = S + diag(penalty)`` and keep that diagonal.
        When ``False`` the diagonal of ``W`` stays equal to ``S``.
    screen_components : bool
        Solve each connected component of ``|S_ij| > penalty_ij``
        separately.
    symmetry_tolerance : float
        Largest asymmetry accepted in ``S``, relative to ``max|S|``.
    strict : bool
        Raise :class:`NonConvergenceError` when the outer budget is
        exhausted.  Otherwise warn and return the unconverged estimate.
    """

    max_outer_iterations: int = 100
    max_inner_iterations: int = 1000
    convergence_tolerance: float = 1e-4
    inner_tolerance: float | None = None
    diagonal_augmentation: bool = True
    screen_components: bool = True
    symmetry_tolerance: float = 1e-8
    strict: bool = True

    def __post_init__(self) -> None:
        for name in ("max_outer_iterations", "max_inner_iterations"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(
                    f"{name} must be a positive integer, got {value!r}. "
                    f"Try {name}={getattr(GlassoOptions, name)}."
                )
        for name in ("convergence_tolerance", "inner_tolerance"):
            value = getattr(self, name)
            if value is None and name == "inner_tolerance":
                continue
            if not isinstance(value, (int, float)) or not value > 0:
                raise ValueError(f"{name} must be positive, got {value!r}")
        if not isinstance(self.symmetry_tolerance, (int, float)) or self.symmetry_tolerance < 0:
            raise ValueError(
                f"symmetry_tolerance must be non-negative, got {self.symmetry_tolerance!r}"
            )

    @property
    def effective_inner_tolerance(self) -> float:
        if self.inner_tolerance is None:
            return self.convergence_tolerance / 10.0
        return float(self.inner_tolerance)


@dataclass
class PrecisionEstimate:
    """Outcome of :func:`estimate_precision`.

    ``theta`` is the sparse precision matrix, ``w`` the regularised
    covariance it was recovered from (kept for diagnostics) and
    ``penalty`` the ``(p, p)`` penalty matrix the solver actually used.
    """

    theta: np.ndarray
    w: np.ndarray
    penalty: np.ndarray
    n_iter: int
    delta: float
    converged: bool

    @property
    def p(self) -> int:
        return int(self.theta.shape[0])

    def n_nonzero_edges(self, tol: float = 0.0) -> int:
        """Number of unordered pairs ``i < j`` with ``|theta_ij| > tol``."""

        upper = np.triu_indices(self.p, 1)
        return int(np.count_nonzero(np.abs(self.theta[upper]) > tol))

    def as_dict(self) -> dict[str, object]:
        """Flat row-major representation suitable for JSON fixtures."""

        return {
            "shape": [self.p, self.p],
            "theta": self.theta.ravel(order="C").tolist(),
            "w": self.w.ravel(order="C").tolist(),
            "penalty": self.penalty.ravel(order="C").tolist(),
            "n_iter": int(self.n_iter),
            "delta": float(self.delta),
            "converged": bool(self.converged),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PrecisionEstimate":
        """Inverse of :meth:`as_dict`."""

        shape = tuple(int(d) for d in data["shape"])
        if len(shape) != 2 or shape[0] != shape[1]:
            raise DimensionError(f"'shape' must describe a square matrix, got {shape}")

        def _matrix(key: str) -> np.ndarray:
            flat = np.asarray(data[key], dtype=float)
            if flat.size != shape[0] * shape[1]:
                raise DimensionError(
                    f"'{key}' holds {flat.size} values, expected {shape[0] * shape[1]}"
                )
            return flat.reshape(shape, order="C")

        return cls(
            theta=_matrix("theta"),
            w=_matrix("w"),
            penalty=_matrix("penalty"),
            n_iter=int(data["n_iter"]),
            delta=float(data["delta"]),
            converged=bool(data["converged"]),
        )


def _as_covariance(covariance: Any, symmetry_tolerance: float) -> np.ndarray:
    """Validate ``covariance`` and return a symmetrised float copy."""

    if hasattr(covariance, "to_numpy"):
        covariance = covariance.to_numpy()
    try:
        s = np.array(covariance, dtype=float, copy=True)
    except (TypeError, ValueError) as e:
        raise DimensionError(f"covariance cannot be converted to a numeric array: {e}") from e

    if s.ndim != 2 or s.shape[0] != s.shape[1]:
        raise DimensionError(f"covariance must be a square matrix, got shape {s.shape}")
    if s.shape[0] < 2:
        raise DimensionError(f"covariance must involve at least 2 variables, got {s.shape[0]}")
    if not np.all(np.isfinite(s)):
        raise NumericalInstabilityError("covariance contains non-finite entries")

    asymmetry = float(np.max(np.abs(s - s.T)))
    if asymmetry > symmetry_tolerance * max(1.0, float(np.max(np.abs(s)))):
        raise DimensionError(f"covariance is not symmetric (max |S - S.T| = {asymmetry:.3e})")
    return (s + s.T) / 2.0


def _as_penalty_matrix(penalty: np.ndarray | Sequence[float] | float, p: int) -> np.ndarray:
    """Normalise the penalty argument to a square ``(p, p)`` matrix."""

    try:
        penalty_arr = np.asarray(penalty, dtype=float)
    except (TypeError, ValueError) as e:
        raise InvalidPenaltyError(f"penalty cannot be converted to a numeric array: {e}") from e

    if np.any(np.isnan(penalty_arr)):
        raise InvalidPenaltyError("penalty must not contain NaN")
    if np.any(penalty_arr < 0):
        raise InvalidPenaltyError(
            f"penalty must be non-negative, got minimum {float(np.min(penalty_arr))}"
        )

    if penalty_arr.ndim == 0:
        lam = np.full((p, p), float(penalty_arr))
    elif penalty_arr.ndim == 1:
        if penalty_arr.size != p:
            raise DimensionError("Vector-valued penalty must have length equal to 'p'")
        sqrt_penalty = np.sqrt(penalty_arr)
        with np.errstate(invalid="ignore"):
            lam = np.outer(sqrt_penalty, sqrt_penalty)
    elif penalty_arr.shape == (p, p):
        lam = penalty_arr.astype(float, copy=True)
    else:
        raise DimensionError("penalty must be a scalar, a vector of length p or a pxp matrix")

    lam = (lam + lam.T) / 2.0
    if np.any(np.isnan(lam)):
        raise InvalidPenaltyError(
            "penalty is undefined for some pairs (a zero entry meets an infinite one)"
        )
    # Infinite entries become the same finite bound used by zero constraints.
    return np.minimum(lam, _BIG)


def _apply_zero_constraints(penalty: np.ndarray, zero: Iterable[Sequence[int]] | None) -> None:
    if zero is None:
        return
    p = penalty.shape[0]
    for pair in zero:
        if len(pair) != 2:
            raise DimensionError("Entries in 'zero' must be index pairs")
        i, j = map(int, pair)
        if not (0 <= i < p and 0 <= j < p):
            raise DimensionError(f"Zero constraint {(i, j)} is out of bounds for p={p}")
        if i == j:
            raise DimensionError("Zero constraints cannot refer to diagonal entries")
        penalty[i, j] = max(penalty[i, j], _BIG)
        penalty[j, i] = max(penalty[j, i], _BIG)


def _initial_working_matrix(s: np.ndarray, penalty: np.ndarray, augment: bool) -> np.ndarray:
    w = s.copy()
    if augment:
        w[np.diag_indices_from(w)] = np.diag(s) + np.diag(penalty)
    diag = np.diag(w)
    if not np.all(np.isfinite(diag)):
        raise NumericalInstabilityError("The working covariance has a non-finite diagonal")
    if not np.all(diag > 0.0):
        if augment:
            hint = "increase the diagonal penalty"
        else:
            hint = "enable diagonal augmentation with a positive penalty"
        raise NumericalInstabilityError(
            f"The working covariance must have a strictly positive diagonal; {hint}"
        )
    return w


def estimate_precision(
    covariance: Any,
    penalty: np.ndarray | Sequence[float] | float,
    options: GlassoOptions | None = None,
    *,
    zero: Iterable[Sequence[int]] | None = None,
    **overrides: Any,
) -> PrecisionEstimate:
    """Estimate a sparse precision matrix with the graphical lasso.

    Parameters
    ----------
    covariance : array-like
        Symmetric ``(p, p)`` empirical covariance, ``p >= 2``.
    penalty : float, vector or matrix
        Non-negative L1 penalty; see :func:`_as_penalty_matrix`.
    options : :class:`GlassoOptions`, optional
        Solver configuration.  Keyword ``overrides`` replace individual
        fields, e.g. ``estimate_precision(S, 0.1, max_outer_iterations=500)``.
    zero : iterable of index pairs, optional
        Pairs ``(i, j)`` whose precision entry is forced to zero.

    Returns
    -------
    :class:`PrecisionEstimate`

    Raises
    ------
    DimensionError, InvalidPenaltyError, NumericalInstabilityError
        Invalid input or a numerical breakdown.
    NonConvergenceError
        The iteration budget was exhausted and ``options.strict`` is set.
        The unconverged estimate is attached to the exception.
    """

    if options is None:
        options = GlassoOptions()
    if overrides:
        known = {f.name for f in fields(GlassoOptions)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise TypeError(f"Unknown solver option(s): {', '.join(unknown)}")
        options = replace(options, **overrides)

    s = _as_covariance(covariance, options.symmetry_tolerance)
    p = s.shape[0]
    penalty_matrix = _as_penalty_matrix(penalty, p)
    _apply_zero_constraints(penalty_matrix, zero)
    w = _initial_working_matrix(s, penalty_matrix, options.diagonal_augmentation)

    logger.debug(
        "graphical lasso: p=%d, max penalty=%.3g, options=%s",
        p,
        float(np.max(penalty_matrix)),
        options,
    )
    result: GlassoResult = glasso_fast(
        s,
        penalty_matrix,
        w,
        options.max_outer_iterations,
        options.convergence_tolerance,
        options.max_inner_iterations,
        options.effective_inner_tolerance,
        screen=options.screen_components,
    )

    estimate = PrecisionEstimate(
        theta=result.theta,
        w=result.w,
        penalty=penalty_matrix,
        n_iter=result.outer_iterations,
        delta=result.delta,
        converged=result.converged,
    )
    logger.debug(
        "graphical lasso finished: %d component(s), %d pass(es), delta=%.3e, converged=%s",
        result.n_components,
        result.outer_iterations,
        result.delta,
        result.converged,
    )

    if not result.converged:
        message = (
            f"Graphical lasso did not converge within {options.max_outer_iterations} "
            f"outer iterations (last delta {result.delta:.3e}); "
            "increase max_outer_iterations or convergence_tolerance"
        )
        if options.strict:
            raise NonConvergenceError(message, estimate)
        warnings.warn(message, RuntimeWarning)
    return estimate


def estimate_precision_path(
    covariance: Any,
    penalties: Sequence[float],
    options: GlassoOptions | None = None,
    *,
    zero: Iterable[Sequence[int]] | None = None,
    **overrides: Any,
) -> List[PrecisionEstimate]:
    """Fit one independent estimate per penalty, in increasing order."""

    penalty_arr = np.asarray(penalties, dtype=float)
    if penalty_arr.ndim != 1:
        raise InvalidPenaltyError("'penalties' must be a one-dimensional sequence")
    if penalty_arr.size == 0:
        raise InvalidPenaltyError("'penalties' must contain at least one value")
    zero_pairs = None if zero is None else list(zero)

    return [
        estimate_precision(covariance, float(lam), options, zero=zero_pairs, **overrides)
        for lam in np.sort(penalty_arr)
    ]


def penalized_log_likelihood(
    theta: np.ndarray,
    covariance: np.ndarray,
    penalty: np.ndarray | float = 0.0,
) -> float:
    """Return ``log det(theta) - trace(S theta) - sum(penalty * |theta|)``.

    The value is ``-inf`` when ``theta`` is not positive definite.
    """

    theta = np.asarray(theta, dtype=float)
    s = np.asarray(covariance, dtype=float)
    if theta.ndim != 2 or theta.shape[0] != theta.shape[1] or s.shape != theta.shape:
        raise DimensionError("'theta' and 'covariance' must be square with equal shapes")
    sign, logdet = np.linalg.slogdet(theta)
    if sign <= 0:
        return -np.inf
    weights = np.broadcast_to(np.asarray(penalty, dtype=float), theta.shape)
    active = theta != 0.0
    l1 = float(np.sum(weights[active] * np.abs(theta[active])))
    return float(logdet - np.trace(s @ theta) - l1)


__all__ = [
    "GlassoOptions",
    "PrecisionEstimate",
    "estimate_precision",
    "estimate_precision_path",
    "penalized_log_likelihood",
]
