# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import numbers

from typing import Iterator

import h5py
import numpy as np
import pandas as pd

from anndata import AnnData
from sklearn.cluster import KMeans

from .exceptions import ComputationError, InvalidParameterError


logger = logging.getLogger("netsmoothpy")


NORMALIZE_AXES = ("rows", "columns")
DIFFUSION_STRATEGIES = ("direct", "chunked")
SCORE_METHODS = ("robustness", "entropy")
DIM_REDUCE_FLAVORS = ("pca", "tsne", "umap")
CLUSTER_ALGORITHMS = ("kmeans", "pam")
REPRESENTATIONS = ("dense", "sparse", "backed")

DEFAULT_ALPHA_RANGE = (0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9)
DEFAULT_CHUNK_SIZE = 1000


def _check_choice(value, choices: tuple[str, ...], name: str) -> str:
    if not isinstance(value, str) or value not in choices:
        raise InvalidParameterError(
            f"`{name}` should be one of {', '.join(map(repr, choices))}, got {value!r}."
        )
    return value


def _check_alpha(alpha) -> float:
    if isinstance(alpha, bool) or not isinstance(alpha, numbers.Real):
        raise InvalidParameterError(
            f"`alpha` should be a number in (0, 1) or 'auto', got {alpha!r}."
        )
    if not 0 < alpha < 1:
        raise InvalidParameterError(f"`alpha` must lie strictly inside (0, 1), got {alpha}.")
    return float(alpha)


def _check_alpha_grid(alpha_grid) -> list[float]:
    grid = [_check_alpha(a) for a in alpha_grid]
    if not grid:
        raise InvalidParameterError("`alpha_grid` must contain at least one value.")
    if len(set(grid)) != len(grid):
        raise InvalidParameterError("`alpha_grid` must not contain duplicated values.")
    return sorted(grid)


def _check_chunk_size(chunk_size, n_samples: int) -> int:
    if (
        isinstance(chunk_size, bool)
        or not isinstance(chunk_size, numbers.Integral)
        or chunk_size < 1
    ):
        raise InvalidParameterError(
            f"`chunk_size` should be a positive integer, got {chunk_size!r}."
        )
    if chunk_size > n_samples:
        raise InvalidParameterError(
            f"`chunk_size` ({chunk_size}) exceeds the number of samples ({n_samples})."
        )
    return int(chunk_size)


def _check_unique_genes(genes: pd.Index, what: str = "expression") -> None:
    if not genes.is_unique:
        duplicated = genes[genes.duplicated()].unique()
        raise InvalidParameterError(
            f"Gene names of the {what} must be unique, duplicated: "
            f"{', '.join(map(str, duplicated[:5]))}"
        )


def _l1_normalize(values: np.ndarray, axis: str) -> np.ndarray:
    # rows: each row sums to 1 (in-degree), columns: each column sums to 1 (out-degree)
    if axis == "rows":
        return values / values.sum(axis=1, keepdims=True)
    return values / values.sum(axis=0, keepdims=True)


def _network_indexer(
    data_genes: pd.Index, network_genes: pd.Index
) -> tuple[np.ndarray, np.ndarray]:
    """
    Positions of the genes shared by the data and the network.

    Returns:
        (src, dst): ``data_genes[src] == network_genes[dst]``, ordered as in the network.
    """
    positions = data_genes.get_indexer(network_genes)
    dst = np.flatnonzero(positions >= 0)
    src = positions[dst]
    return src, dst


def _project(shared: np.ndarray, dst: np.ndarray, n_network: int) -> np.ndarray:
    # unmeasured network genes stay as zero-signal placeholders
    # [n_network, samples]
    projection = np.zeros((n_network, shared.shape[1]), dtype=np.float64)
    projection[dst] = shared
    return projection


def _system_matrix(anorm: np.ndarray, alpha: float) -> np.ndarray:
    return np.eye(anorm.shape[0]) - alpha * anorm


def _check_finite(values: np.ndarray, alpha: float) -> np.ndarray:
    if not np.isfinite(values).all():
        raise ComputationError(
            f"Network diffusion with alpha={alpha} produced non-finite values."
        )
    return values


def _solve_direct(anorm: np.ndarray, projection: np.ndarray, alpha: float) -> np.ndarray:
    try:
        # [genes, samples] = (I - alpha * A)^-1 x (1 - alpha) * [genes, samples]
        smoothed = np.linalg.solve(
            _system_matrix(anorm, alpha), (1 - alpha) * projection
        )
    except np.linalg.LinAlgError as e:
        raise ComputationError(
            f"Could not solve the diffusion system for alpha={alpha}: {e}"
        ) from e
    return _check_finite(smoothed, alpha)


def _diffusion_kernel(anorm: np.ndarray, alpha: float) -> np.ndarray:
    """
    K = (1 - alpha) * (I - alpha * A_norm)^-1, computed once and reused for every chunk.
    """
    try:
        kernel = (1 - alpha) * np.linalg.inv(_system_matrix(anorm, alpha))
    except np.linalg.LinAlgError as e:
        raise ComputationError(
            f"Could not invert the diffusion system for alpha={alpha}: {e}"
        ) from e
    return _check_finite(kernel, alpha)


def _chunk_bounds(n: int, chunk_size: int) -> Iterator[tuple[int, int]]:
    for start in range(0, n, chunk_size):
        yield start, min(start + chunk_size, n)


def _solve_chunked(
    anorm: np.ndarray, projection: np.ndarray, alpha: float, chunk_size: int
) -> np.ndarray:
    kernel = _diffusion_kernel(anorm, alpha)
    logger.debug(
        "Smoothing %i samples in chunks of %i", projection.shape[1], chunk_size
    )

    smoothed = np.empty_like(projection, dtype=np.float64)
    for start, stop in _chunk_bounds(projection.shape[1], chunk_size):
        smoothed[:, start:stop] = kernel @ projection[:, start:stop]

    return smoothed


def _dense_rows(X, start: int, stop: int) -> np.ndarray:
    chunk = X[start:stop]
    chunk = chunk.toarray() if hasattr(chunk, "toarray") else np.asarray(chunk)
    return chunk.astype(np.float64)


def _write_h5ad_skeleton(adata: AnnData, filepath: str) -> None:
    """
    Writes obs, var and uns of `adata` to `filepath` and allocates an empty
    float64 dense X of the same shape, to be filled chunk by chunk.
    """
    skeleton = AnnData(
        obs=adata.obs.copy(), var=adata.var.copy(), uns=dict(adata.uns)
    )
    skeleton.write_h5ad(filepath)

    with h5py.File(filepath, "r+") as f:
        if "X" in f:
            del f["X"]
        X = f.create_dataset("X", shape=adata.shape, dtype="float64", chunks=True)
        X.attrs["encoding-type"] = "array"
        X.attrs["encoding-version"] = "0.2.0"


def _cluster_one(
    X: np.ndarray, algorithm: str, k: int, random_state: int | None
) -> np.ndarray:

    if algorithm == "kmeans":
        model = KMeans(n_clusters=k, init="k-means++", n_init=10, random_state=random_state)
    else:
        try:
            from sklearn_extra.cluster import KMedoids
        except ImportError as exc:
            raise ImportError(
                "\nPlease install scikit-learn-extra:\n\n\tpip install scikit-learn-extra"
            ) from exc
        model = KMedoids(
            n_clusters=k, method="pam", init="k-medoids++", random_state=random_state
        )

    return model.fit_predict(X)
