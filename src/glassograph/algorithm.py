"""Block coordinate descent routines of the graphical lasso.

The solver follows the classical scheme of Friedman, Hastie and
Tibshirani (2008): the working covariance ``W`` is updated one
row/column at a time, each update being a lasso problem solved by
cyclic coordinate descent.  Before iterating, the variables are split
into the connected components of the thresholded covariance graph
(Witten, Friedman and Simon, 2011); the solution is block diagonal with
respect to these components, so every component is solved on its own.

All routines work on private copies of their matrix arguments and never
mutate the caller's arrays.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import List, Tuple

import numpy as np

from .exceptions import DimensionError, NumericalInstabilityError

logger = logging.getLogger(__name__)


@dataclass
class LassoResult:
    """Outcome of :func:`lasso_coordinate_descent`.

    Attributes
    ----------
    coef : :class:`numpy.ndarray`
        Converged coefficient vector.
    n_iter : int
        Number of full coordinate sweeps executed.
    converged : bool
        ``True`` if the largest coordinate change of the last sweep fell
        below the tolerance.
    """

    coef: np.ndarray
    n_iter: int
    converged: bool


@dataclass
class BlockLoopResult:
    """State returned by :func:`glasso_block_loop` for one component."""

    theta: np.ndarray
    w: np.ndarray
    coef: np.ndarray
    outer_iterations: int
    delta: float
    converged: bool


@dataclass
class GlassoResult:
    """Result produced by :func:`glasso_fast`."""

    theta: np.ndarray
    w: np.ndarray
    outer_iterations: int
    delta: float
    converged: bool
    n_components: int


def _dot(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b))


def soft_threshold(x, t):
    """Shrinkage operator ``sign(x) * max(|x| - t, 0)``.

    Works element-wise on arrays; scalars in give a Python ``float``
    back.
    """

    if np.ndim(x) == 0 and np.ndim(t) == 0:
        shrunk = abs(x) - t
        return math.copysign(shrunk, x) if shrunk > 0.0 else 0.0
    return np.sign(x) * np.maximum(np.abs(x) - t, 0.0)


def lasso_coordinate_descent(
    v: np.ndarray,
    s: np.ndarray,
    penalty: np.ndarray | float,
    coef: np.ndarray | None = None,
    max_iter: int = 1000,
    tol: float = 1e-5,
) -> LassoResult:
    """Solve ``min_b 1/2 b'Vb - s'b + sum_i penalty_i |b_i|``.

    This is the lasso sub-problem of a single graphical lasso block,
    written directly in terms of the Gram matrix ``V`` so that no square
    root of ``V`` is ever formed.  Each coordinate is updated with

    ``b_i <- S(s_i - sum_{l != i} V_il b_l, penalty_i) / V_ii``

    where ``S`` is :func:`soft_threshold`.

    Parameters
    ----------
    v : :class:`numpy.ndarray`
        Symmetric ``(m, m)`` matrix with a strictly positive diagonal.
    s : :class:`numpy.ndarray`
        Right hand side of length ``m``.
    penalty : float or :class:`numpy.ndarray`
        Scalar or per-coordinate L1 penalty.
    coef : :class:`numpy.ndarray`, optional
        Warm start.  Defaults to the zero vector.
    max_iter : int, optional
        Maximum number of full sweeps over the coordinates.
    tol : float, optional
        The loop stops once the largest absolute coordinate change of a
        sweep drops below ``tol``.

    Returns
    -------
    :class:`LassoResult`
    """

    v = np.asarray(v, dtype=float)
    s = np.asarray(s, dtype=float)
    if s.ndim != 1:
        raise DimensionError("'s' must be a one-dimensional vector")
    m = s.shape[0]
    if v.shape != (m, m):
        raise DimensionError(f"'v' must have shape {(m, m)}, got {v.shape}")
    penalty = np.asarray(penalty, dtype=float)
    if penalty.ndim == 0:
        penalty = np.full(m, float(penalty))
    elif penalty.shape != (m,):
        raise DimensionError(f"'penalty' must be a scalar or have shape {(m,)}, got {penalty.shape}")
    if max_iter < 1:
        raise ValueError("'max_iter' must be at least 1")

    diag = np.diag(v)
    if np.any(~(diag > 0.0)):
        raise NumericalInstabilityError(
            "Lasso Gram matrix must have a strictly positive diagonal"
        )

    if coef is None:
        beta = np.zeros(m, dtype=float)
    else:
        beta = np.array(coef, dtype=float, copy=True)
        if beta.shape != (m,):
            raise DimensionError(f"'coef' must have shape {(m,)}")
    vb = v @ beta

    converged = False
    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        dlx = 0.0
        for i in range(m):
            a = s[i] - vb[i] + diag[i] * beta[i]
            c = soft_threshold(a, penalty[i]) / diag[i]
            step = c - beta[i]
            if step != 0.0:
                beta[i] = c
                vb += step * v[:, i]
                dlx = max(dlx, abs(step))
        if not math.isfinite(dlx):
            raise NumericalInstabilityError(
                "Non-finite coefficient encountered in the lasso sub-problem"
            )
        if dlx < tol:
            converged = True
            break

    return LassoResult(beta, n_iter, converged)


def glasso_block_loop(
    s: np.ndarray,
    penalty: np.ndarray,
    w: np.ndarray,
    max_outer: int,
    outer_threshold: float,
    max_inner: int,
    inner_threshold: float,
) -> BlockLoopResult:
    """Run block coordinate descent on a single (connected) problem.

    Parameters
    ----------
    s, penalty, w : :class:`numpy.ndarray`
        Square matrices holding the empirical covariance, the L1
        penalty and the initial working covariance.  The diagonal of
        ``w`` is kept fixed throughout.
    max_outer, max_inner : int
        Maximum numbers of outer passes and of lasso sweeps per block.
    outer_threshold : float
        A pass converges when the mean absolute change of the
        off-diagonal entries of ``W`` is below
        ``outer_threshold * mean(|S_offdiag|)``.
    inner_threshold : float
        Tolerance handed to :func:`lasso_coordinate_descent`.

    Returns
    -------
    :class:`BlockLoopResult`
    """

    if s.ndim != 2 or s.shape[0] != s.shape[1]:
        raise DimensionError("'s' must be a square matrix")
    n = s.shape[0]
    for name, arr in {"penalty": penalty, "w": w}.items():
        if arr.shape != (n, n):
            raise DimensionError(f"'{name}' must have shape {(n, n)}")

    s = np.asarray(s, dtype=float)
    penalty = np.asarray(penalty, dtype=float)
    w = np.array(w, dtype=float, copy=True)
    theta = np.zeros((n, n), dtype=float)
    coef = np.zeros((n, n), dtype=float)

    off_diagonal = ~np.eye(n, dtype=bool)
    scale = float(np.mean(np.abs(s[off_diagonal]))) if n > 1 else 0.0
    if scale == 0.0:
        np.fill_diagonal(theta, 1.0 / np.diag(w))
        return BlockLoopResult(theta, w, coef, 0, 0.0, True)
    threshold = outer_threshold * scale

    # Complement index sets are reused on every pass.
    rest = [np.flatnonzero(np.arange(n) != j) for j in range(n)]

    converged = False
    delta = 0.0
    outer = 0
    for outer in range(1, max_outer + 1):
        previous = w.copy()
        for j in range(n):
            others = rest[j]
            v = w[np.ix_(others, others)]
            fit = lasso_coordinate_descent(
                v,
                s[others, j],
                penalty[others, j],
                coef=coef[others, j],
                max_iter=max_inner,
                tol=inner_threshold,
            )
            beta = fit.coef
            w12 = v @ beta
            schur = w[j, j] - _dot(w12, beta)
            if not (math.isfinite(schur) and schur > 0.0):
                raise NumericalInstabilityError(
                    f"Non-positive Schur complement ({schur!r}) for block {j}; "
                    "increase the penalty or enable diagonal augmentation"
                )
            theta_jj = 1.0 / schur

            coef[others, j] = beta
            w[others, j] = w12
            w[j, others] = w12
            theta[others, j] = -theta_jj * beta
            theta[j, others] = -theta_jj * beta
            theta[j, j] = theta_jj

        delta = float(np.mean(np.abs(w - previous)[off_diagonal]))
        if not math.isfinite(delta):
            raise NumericalInstabilityError("Working matrix became non-finite")
        logger.debug("pass %d: mean |dW| = %.3e (threshold %.3e)", outer, delta, threshold)
        if delta < threshold:
            converged = True
            break

    return BlockLoopResult(theta, w, coef, outer, delta, converged)


def glasso_fast(
    s: np.ndarray,
    penalty: np.ndarray,
    w: np.ndarray,
    max_outer: int,
    outer_threshold: float,
    max_inner: int,
    inner_threshold: float,
    screen: bool = True,
) -> GlassoResult:
    """Solve the graphical lasso component by component.

    When ``screen`` is true the variables are first grouped with
    :func:`connect`; isolated variables get ``theta_kk = 1 / w_kk`` and
    every larger component is handed to :func:`glasso_block_loop`.  The
    returned ``theta`` and ``w`` are zero between components.
    """

    if s.ndim != 2 or s.shape[0] != s.shape[1]:
        raise DimensionError("'s' must be a square matrix")
    n = s.shape[0]
    for name, arr in {"penalty": penalty, "w": w}.items():
        if arr.shape != (n, n):
            raise DimensionError(f"'{name}' must have shape {(n, n)}")

    if screen:
        i1, i2, _membership, n_components = connect(s, penalty)
        components = [np.sort(i2[start : end + 1]) for start, end in i1.T]
    else:
        components = [np.arange(n, dtype=int)]
        n_components = 1

    theta = np.zeros((n, n), dtype=float)
    w_out = np.zeros((n, n), dtype=float)
    converged = True
    outer_iterations = 0
    delta = 0.0

    for indices in components:
        if indices.size == 1:
            k = int(indices[0])
            w_out[k, k] = w[k, k]
            theta[k, k] = 1.0 / w[k, k]
            continue
        block = np.ix_(indices, indices)
        logger.debug("solving component of size %d", indices.size)
        res = glasso_block_loop(
            s[block],
            penalty[block],
            w[block],
            max_outer,
            outer_threshold,
            max_inner,
            inner_threshold,
        )
        theta[block] = res.theta
        w_out[block] = res.w
        converged = converged and res.converged
        outer_iterations = max(outer_iterations, res.outer_iterations)
        delta = max(delta, res.delta)

    return GlassoResult(theta, w_out, outer_iterations, delta, converged, n_components)


def connect(s: np.ndarray, penalty: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, int]:
    """Group variables into the components of the screening graph.

    Two variables are adjacent when ``|s_ij| > penalty_ij``.  Components
    are discovered in order of their smallest index, by breadth-first
    expansion.  Indices are zero based.

    Returns
    -------
    i1 : ndarray of shape ``(2, n_components)``
        Start and end (both inclusive) positions into ``i2`` for each
        component.
    i2 : ndarray
        Vertices grouped by component.
    membership : ndarray
        Component id of every vertex, starting at 1.
    n_components : int
        Number of components found.
    """

    if s.shape != penalty.shape:
        raise DimensionError("'s' and 'penalty' must have identical shapes")
    if s.ndim != 2 or s.shape[0] != s.shape[1]:
        raise DimensionError("'s' must be a square matrix")

    p = s.shape[0]
    adjacency = np.abs(s) > penalty
    np.fill_diagonal(adjacency, False)

    membership = np.zeros(p, dtype=int)
    ordering: List[int] = []
    ranges: List[Tuple[int, int]] = []

    for k in range(p):
        if membership[k] > 0:
            continue
        component_id = len(ranges) + 1
        start = len(ordering)
        membership[k] = component_id
        ordering.append(k)

        frontier = [k]
        while frontier:
            reached = np.flatnonzero(adjacency[frontier].any(axis=0) & (membership == 0))
            membership[reached] = component_id
            frontier = reached.tolist()
            ordering.extend(frontier)

        ranges.append((start, len(ordering) - 1))

    if ranges:
        i1 = np.array(ranges, dtype=int).T
    else:
        i1 = np.zeros((2, 0), dtype=int)
    i2 = np.array(ordering, dtype=int)
    return i1, i2, membership, len(ranges)


__all__ = [
    "LassoResult",
    "BlockLoopResult",
    "GlassoResult",
    "soft_threshold",
    "lasso_coordinate_descent",
    "glasso_block_loop",
    "glasso_fast",
    "connect",
]
