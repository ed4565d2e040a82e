"""Partial correlations and the variable graph derived from them."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Hashable, List, Sequence, Tuple

import networkx as nx
import numpy as np

from .exceptions import DimensionError, GraphError

DEFAULT_EDGE_TOLERANCE = 1e-10
_SYMMETRY_TOLERANCE = 1e-8


def _as_precision_matrix(precision: Any) -> np.ndarray:
    # Accept a PrecisionEstimate as well as a bare matrix.
    theta = getattr(precision, "theta", precision)
    theta = np.asarray(theta, dtype=float)
    if theta.ndim != 2 or theta.shape[0] != theta.shape[1]:
        raise DimensionError(f"precision must be a square matrix, got shape {theta.shape}")
    asymmetry = float(np.max(np.abs(theta - theta.T))) if theta.size else 0.0
    if not asymmetry <= _SYMMETRY_TOLERANCE * max(1.0, float(np.max(np.abs(theta), initial=0.0))):
        raise DimensionError(f"precision is not symmetric (max |theta - theta.T| = {asymmetry:.3e})")
    return theta


def partial_correlation(precision: Any) -> np.ndarray:
    """Convert a precision matrix to partial correlations.

    For ``i != j`` the entry is ``-theta_ij / sqrt(theta_ii * theta_jj)``;
    the diagonal is set to ``0``.  The returned array is read-only.
    """

    theta = _as_precision_matrix(precision)
    diag = np.diag(theta)
    if not np.all(np.isfinite(diag) & (diag > 0.0)):
        raise GraphError("precision matrix must have a finite, strictly positive diagonal")

    pcorr = -theta / np.sqrt(np.outer(diag, diag))
    np.fill_diagonal(pcorr, 0.0)
    pcorr.setflags(write=False)
    return pcorr


@dataclass(frozen=True, eq=False)
class VariableGraph:
    """Undirected weighted graph of conditional dependencies.

    Attributes
    ----------
    labels : tuple
        Node names, one per matrix index.
    partial_correlation : :class:`numpy.ndarray`
        Read-only ``(p, p)`` partial-correlation matrix.
    graph : :class:`networkx.Graph`
        Frozen graph over ``labels``.  Every edge carries a ``weight``
        attribute holding the signed partial correlation.
    """

    labels: Tuple[Hashable, ...]
    partial_correlation: np.ndarray
    graph: nx.Graph

    @property
    def n_nodes(self) -> int:
        return self.graph.number_of_nodes()

    @property
    def n_edges(self) -> int:
        return self.graph.number_of_edges()

    def edges(self) -> List[Tuple[Hashable, Hashable, float]]:
        """Return ``(u, v, weight)`` triples ordered by matrix index."""

        index = {label: k for k, label in enumerate(self.labels)}
        triples = []
        for u, v, weight in self.graph.edges(data="weight"):
            if index[u] > index[v]:
                u, v = v, u
            triples.append((u, v, float(weight)))
        triples.sort(key=lambda t: (index[t[0]], index[t[1]]))
        return triples

    def as_dict(self) -> dict[str, object]:
        """Flat row-major representation suitable for JSON fixtures."""

        p = len(self.labels)
        return {
            "shape": [p, p],
            "labels": list(self.labels),
            "partial_correlation": self.partial_correlation.ravel(order="C").tolist(),
            "edges": [[u, v, w] for u, v, w in self.edges()],
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], edge_tolerance: float = DEFAULT_EDGE_TOLERANCE
    ) -> "VariableGraph":
        """Rebuild a graph from :meth:`as_dict` output."""

        shape = tuple(int(d) for d in data["shape"])
        if len(shape) != 2 or shape[0] != shape[1]:
            raise DimensionError(f"'shape' must describe a square matrix, got {shape}")
        flat = np.asarray(data["partial_correlation"], dtype=float)
        if flat.size != shape[0] * shape[1]:
            raise DimensionError(
                f"'partial_correlation' holds {flat.size} values, expected {shape[0] * shape[1]}"
            )
        pcorr = flat.reshape(shape, order="C")
        pcorr.setflags(write=False)
        return _assemble(pcorr, data["labels"], edge_tolerance)


def _check_labels(labels: Sequence[Hashable], p: int) -> Tuple[Hashable, ...]:
    labels = tuple(labels)
    if len(labels) != p:
        raise DimensionError(f"expected {p} labels, got {len(labels)}")
    if len(set(labels)) != p:
        raise GraphError("labels must be unique")
    return labels


def _assemble(pcorr: np.ndarray, labels: Sequence[Hashable], edge_tolerance: float) -> VariableGraph:
    if edge_tolerance < 0:
        raise ValueError(f"edge_tolerance must be non-negative, got {edge_tolerance}")
    p = pcorr.shape[0]
    labels = _check_labels(labels, p)

    graph = nx.Graph()
    graph.add_nodes_from(labels)
    rows, cols = np.triu_indices(p, 1)
    for i, j in zip(rows, cols):
        weight = float(pcorr[i, j])
        if abs(weight) > edge_tolerance:
            graph.add_edge(labels[i], labels[j], weight=weight)
    return VariableGraph(labels=labels, partial_correlation=pcorr, graph=nx.freeze(graph))


def build_variable_graph(
    precision: Any,
    labels: Sequence[Hashable],
    edge_tolerance: float = DEFAULT_EDGE_TOLERANCE,
) -> VariableGraph:
    """Build the partial-correlation graph of a precision estimate.

    Parameters
    ----------
    precision : :class:`PrecisionEstimate` or array-like
        Symmetric ``(p, p)`` precision matrix with a positive diagonal.
    labels : sequence
        ``p`` unique node names, in matrix order.
    edge_tolerance : float, optional
        Pairs with ``|partial correlation| <= edge_tolerance`` get no
        edge.  The default only absorbs floating point noise, since the
        estimator already produces exact zeros.

    Raises
    ------
    DimensionError
        ``precision`` is not square, is not symmetric, or ``labels`` has the wrong length.
    GraphError
        Duplicate labels or a non-positive precision diagonal.
    """

    theta = _as_precision_matrix(precision)
    _check_labels(labels, theta.shape[0])
    return _assemble(partial_correlation(theta), labels, edge_tolerance)


__all__ = [
    "DEFAULT_EDGE_TOLERANCE",
    "VariableGraph",
    "partial_correlation",
    "build_variable_graph",
]
