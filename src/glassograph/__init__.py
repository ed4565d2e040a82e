"""Sparse Gaussian graphical models via the graphical lasso.

This package estimates a sparse precision matrix from an empirical
covariance matrix with the block coordinate descent solver of Friedman,
Hastie and Tibshirani ("Sparse inverse covariance estimation with the
graphical lasso", Biostatistics, 2008) and turns the estimate into an
undirected graph of partial correlations.
"""

from .algorithm import (
    BlockLoopResult,
    GlassoResult,
    LassoResult,
    connect,
    glasso_block_loop,
    glasso_fast,
    lasso_coordinate_descent,
    soft_threshold,
)

from .exceptions import (
    DimensionError,
    EstimationError,
    GraphError,
    InvalidPenaltyError,
    NonConvergenceError,
    NumericalInstabilityError,
)

from .graph import (
    VariableGraph,
    build_variable_graph,
    partial_correlation,
)

from .solver import (
    GlassoOptions,
    PrecisionEstimate,
    estimate_precision,
    estimate_precision_path,
    penalized_log_likelihood,
)

__all__ = [
    "LassoResult",
    "BlockLoopResult",
    "GlassoResult",
    "GlassoOptions",
    "PrecisionEstimate",
    "VariableGraph",
    "EstimationError",
    "GraphError",
    "DimensionError",
    "InvalidPenaltyError",
    "NonConvergenceError",
    "NumericalInstabilityError",
    "soft_threshold",
    "lasso_coordinate_descent",
    "glasso_block_loop",
    "glasso_fast",
    "connect",
    "estimate_precision",
    "estimate_precision_path",
    "penalized_log_likelihood",
    "partial_correlation",
    "build_variable_graph",
]
