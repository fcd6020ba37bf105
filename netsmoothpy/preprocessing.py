# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

from typing import Iterable

import numpy as np
import pandas as pd

from ._utils import (
    NORMALIZE_AXES,
    _check_choice,
    _check_unique_genes,
    _l1_normalize,
    _network_indexer,
    _project,
)
from .exceptions import InvalidGraphError, InvalidParameterError


logger = logging.getLogger("netsmoothpy")


def validate_adjacency(adjacency: pd.DataFrame) -> None:
    """
    Check that ``adjacency`` can be used as a smoothing network.

    The matrix must be a square ``pandas.DataFrame`` with unique, non-empty and
    identically ordered gene names on both axes, finite weights, and neither an
    all-zero row nor an all-zero column (both axes are checked, whatever
    normalization is used later on).

    :param adjacency: gene x gene adjacency matrix
    :type adjacency: pd.DataFrame
    :raises InvalidGraphError: if any of the conditions is not met
    """
    if not isinstance(adjacency, pd.DataFrame):
        raise InvalidGraphError(
            f"Adjacency matrix should be a pandas.DataFrame, got {type(adjacency).__name__}."
        )
    n_rows, n_cols = adjacency.shape
    if n_rows == 0:
        raise InvalidGraphError("Adjacency matrix is empty.")
    if n_rows != n_cols:
        raise InvalidGraphError(f"Adjacency matrix should be square, got {n_rows}x{n_cols}.")
    if not adjacency.index.equals(adjacency.columns):
        raise InvalidGraphError(
            "Adjacency matrix rows and columns should be named by the same genes in the same order."
        )
    if not adjacency.index.is_unique:
        raise InvalidGraphError("Adjacency matrix gene names should be unique.")

    try:
        values = adjacency.to_numpy(dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidGraphError("Adjacency matrix should be numeric.") from e
    if not np.isfinite(values).all():
        raise InvalidGraphError("Adjacency matrix contains non-finite values.")

    for axis, sums in (("rows", values.sum(axis=1)), ("columns", values.sum(axis=0))):
        zero = sums == 0
        if zero.any():
            raise InvalidGraphError(
                f"Adjacency matrix cannot have zero {axis}: {zero.sum()} found "
                f"(e.g. {', '.join(map(str, adjacency.index[zero][:5]))})."
            )


def normalize_adjacency(adjacency: pd.DataFrame, axis: str = "rows") -> pd.DataFrame:
    """
    L1-normalize the adjacency matrix of a gene network.

    :param adjacency: gene x gene adjacency matrix, see :func:`validate_adjacency`
    :type adjacency: pd.DataFrame
    :param axis: "rows" divides every row by its sum (in-degree),
        "columns" divides every column by its sum (out-degree), defaults to "rows"
    :type axis: str, optional
    :return: normalized copy of ``adjacency``
    :rtype: pd.DataFrame
    """
    _check_choice(axis, NORMALIZE_AXES, "axis")
    validate_adjacency(adjacency)

    return pd.DataFrame(
        _l1_normalize(adjacency.to_numpy(dtype=np.float64), axis),
        index=adjacency.index,
        columns=adjacency.columns,
    )


def project_on_network(
    expression: pd.DataFrame, network_genes: Iterable[str]
) -> pd.DataFrame:
    """
    Project a genes x samples expression matrix onto the gene space of a network.

    Rows follow ``network_genes``. Network genes that are not measured
    are filled with zeros, measured genes absent from the network are left out
    (see :func:`recombine` to bring them back).

    :param expression: genes x samples matrix
    :type expression: pd.DataFrame
    :param network_genes: genes of the network, in the order of its adjacency matrix
    :type network_genes: Iterable[str]
    :rtype: pd.DataFrame
    """
    network_genes = pd.Index(network_genes)
    _check_unique_genes(expression.index)

    src, dst = _network_indexer(expression.index, network_genes)
    logger.debug(
        "%i out of %i network genes are measured", len(dst), len(network_genes)
    )
    projection = _project(
        expression.to_numpy(dtype=np.float64)[src], dst, len(network_genes)
    )
    return pd.DataFrame(projection, index=network_genes, columns=expression.columns)


def recombine(original: pd.DataFrame, smoothed: pd.DataFrame) -> pd.DataFrame:
    """
    Bring smoothed network-space values back to the original gene space.

    :param original: genes x samples matrix that was projected
    :type original: pd.DataFrame
    :param smoothed: smoothed projection, indexed by network genes
    :type smoothed: pd.DataFrame
    :return: matrix shaped and named like ``original``, where genes present
        in ``smoothed`` carry their smoothed values and all the others are copied unchanged
    :rtype: pd.DataFrame
    """
    if not original.columns.equals(smoothed.columns):
        raise InvalidParameterError(
            "Smoothed matrix should have the same samples as the original one."
        )
    _check_unique_genes(original.index)

    src, dst = _network_indexer(original.index, smoothed.index)

    # float copy: counts are integers, smoothed values are not
    values = original.to_numpy(dtype=np.float64, copy=True)
    values[src] = smoothed.to_numpy(dtype=np.float64)[dst]

    return pd.DataFrame(values, index=original.index, columns=original.columns)
