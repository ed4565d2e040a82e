"""Errors raised by the precision estimator and the graph builder."""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .solver import PrecisionEstimate


class EstimationError(Exception):
    """Base class for every failure of :func:`estimate_precision`."""


class GraphError(Exception):
    """Base class for failures of :func:`build_variable_graph`."""


class DimensionError(EstimationError, GraphError, ValueError):
    """Input matrix is not square, not symmetric or has mismatched size."""


class InvalidPenaltyError(EstimationError, ValueError):
    """A penalty entry is negative or NaN."""


class NumericalInstabilityError(EstimationError, ArithmeticError):
    """A non-finite value or a non-positive pivot was encountered."""


class NonConvergenceError(EstimationError, RuntimeError):
    """The outer loop exhausted its iteration budget.

    The best-so-far estimate is kept on :attr:`estimate` so that callers
    may accept it explicitly instead of rerunning the solver.
    """

    def __init__(self, message: str, estimate: "PrecisionEstimate") -> None:
        super().__init__(message)
        self.estimate = estimate


__all__ = [
    "EstimationError",
    "GraphError",
    "DimensionError",
    "InvalidPenaltyError",
    "NumericalInstabilityError",
    "NonConvergenceError",
]
