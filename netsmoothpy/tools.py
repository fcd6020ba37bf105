# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import os
import shutil
import tempfile

from typing import Iterable

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from joblib import Parallel, delayed
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform
from scipy.stats import entropy

from ._representations import _default_output, resolve_representation
from ._utils import (
    CLUSTER_ALGORITHMS,
    DEFAULT_ALPHA_RANGE,
    DEFAULT_CHUNK_SIZE,
    DIFFUSION_STRATEGIES,
    DIM_REDUCE_FLAVORS,
    NORMALIZE_AXES,
    SCORE_METHODS,
    _check_alpha,
    _check_alpha_grid,
    _check_choice,
    _check_chunk_size,
    _cluster_one,
    _network_indexer,
    _solve_chunked,
    _solve_direct,
)
from .exceptions import ComputationError, InvalidParameterError
from .preprocessing import normalize_adjacency, validate_adjacency


logger = logging.getLogger("netsmoothpy")


def net_smooth(
    data: pd.DataFrame | AnnData,
    adjacency: pd.DataFrame,
    alpha: float | str = "auto",
    normalize_adj: str = "rows",
    auto_alpha_method: str = "robustness",
    auto_alpha_range: Iterable[float] = DEFAULT_ALPHA_RANGE,
    auto_alpha_dim_reduce_flavor: str = "auto",
    is_counts: bool = True,
    n_jobs: int = 1,
    parallel: Parallel | None = None,
    chunk_size: int | None = None,
    filepath: str | None = None,
    representation: str | None = None,
    random_state: int = 0,
    **scorer_kwargs,
) -> pd.DataFrame | AnnData:
    """
    Network smoothing of gene expression with a random walk with restart over ``adjacency``.

    Expression is projected onto the network genes, smoothed as
    (1 - alpha) * (I - alpha * A_norm)^-1 x projection, and projected back.
    Genes that are not part of the network keep their original values.

    Args:
        data (pd.DataFrame | AnnData): genes x samples DataFrame, or cells x genes AnnData
            (in memory with dense or sparse X, or opened with ``backed="r"``).
        adjacency (pd.DataFrame): gene x gene adjacency matrix of the network,
            without zero rows or columns.
        alpha (float | str, optional): 1 - restart probability, strictly inside (0, 1),
            or "auto" to pick it among ``auto_alpha_range``. Defaults to "auto".
        normalize_adj (str, optional): "rows" (in-degree) or "columns" (out-degree)
            L1 normalization of the adjacency matrix. Defaults to "rows".
        auto_alpha_method (str, optional): "robustness" picks alpha giving the highest
            proportion of samples in robust clusters, "entropy" the highest Shannon entropy
            of a 2D embedding. Defaults to "robustness".
        auto_alpha_range (Iterable[float], optional): alpha values to search. Defaults to 0.1, ..., 0.9.
        auto_alpha_dim_reduce_flavor (str, optional): "pca", "tsne", "umap" or "auto",
            dimensionality reduction used to score the smoothing. Defaults to "auto".
        is_counts (bool, optional): if the data are counts (log2(x + 1) is applied before
            embedding). Defaults to True.
        n_jobs (int, optional): number of joblib workers for the alpha search. Defaults to 1.
        parallel (Parallel | None, optional): caller-owned ``joblib.Parallel`` to run the alpha
            search with, overrides ``n_jobs``. Defaults to None.
        chunk_size (int | None, optional): number of cells smoothed at once for backed data.
            Defaults to min(1000, n_obs).
        filepath (str | None, optional): .h5ad file to write the smoothed backed data to.
            Defaults to a new temporary file.
        representation (str | None, optional): force "dense", "sparse" or "backed" handling
            of ``data``. Defaults to None (inferred from ``data``).
        random_state (int, optional): seed for the embeddings and clusterings. Defaults to 0.
        scorer_kwargs: forwarded to :func:`score_smoothing`.

    Returns:
        smoothed data of the same type, shape and names as ``data``;
        for backed data, the result opened with ``backed="r"`` from ``filepath``.
    """
    validate_adjacency(adjacency)
    _check_choice(auto_alpha_method, SCORE_METHODS, "auto_alpha_method")
    if auto_alpha_dim_reduce_flavor != "auto":
        _check_choice(
            auto_alpha_dim_reduce_flavor, DIM_REDUCE_FLAVORS, "auto_alpha_dim_reduce_flavor"
        )

    if isinstance(alpha, str):
        if alpha != "auto":
            raise InvalidParameterError(
                f"`alpha` should be a number in (0, 1) or 'auto', got {alpha!r}."
            )
        smoothed, _ = select_alpha(
            data,
            adjacency,
            alpha_grid=auto_alpha_range,
            score_method=auto_alpha_method,
            normalize_adj=normalize_adj,
            dim_reduce_flavor=auto_alpha_dim_reduce_flavor,
            is_counts=is_counts,
            n_jobs=n_jobs,
            parallel=parallel,
            chunk_size=chunk_size,
            filepath=filepath,
            representation=representation,
            random_state=random_state,
            **scorer_kwargs,
        )
        return smoothed

    alpha = _check_alpha(alpha)
    rep, adjacency_norm, chunk_size = _prepare(
        data, adjacency, normalize_adj, representation, chunk_size
    )
    generated = None
    if rep.kind == "backed" and filepath is None:
        filepath = generated = _default_output()

    logger.info("Using given alpha: %s", alpha)
    try:
        smoothed = rep.smooth(adjacency_norm, alpha, chunk_size=chunk_size, filepath=filepath)
    except Exception:
        if generated is not None:
            rep.discard(generated)
        raise

    return rep.annotate(
        rep.finalize(smoothed, filepath),
        {"alpha": alpha, "alpha_selection": "given", "normalize_adj": normalize_adj},
    )


def select_alpha(
    data: pd.DataFrame | AnnData,
    adjacency: pd.DataFrame,
    alpha_grid: Iterable[float] = DEFAULT_ALPHA_RANGE,
    score_method: str = "robustness",
    normalize_adj: str = "rows",
    dim_reduce_flavor: str = "auto",
    is_counts: bool = True,
    n_jobs: int = 1,
    parallel: Parallel | None = None,
    chunk_size: int | None = None,
    filepath: str | None = None,
    representation: str | None = None,
    random_state: int = 0,
    return_scores: bool = False,
    **scorer_kwargs,
):
    """
    Smooth ``data`` with every alpha of ``alpha_grid`` and keep the best scoring result.

    Smoothing and scoring are both run as one joblib task per alpha. The first
    failing task aborts the search. Ties are resolved in favour of the lowest alpha.
    For backed data, candidates are written to a temporary directory, the winner
    is moved to ``filepath`` and all the others are deleted.

    Args:
        data (pd.DataFrame | AnnData): see :func:`net_smooth`.
        adjacency (pd.DataFrame): see :func:`net_smooth`.
        alpha_grid (Iterable[float], optional): candidate alphas, each inside (0, 1).
            Defaults to 0.1, ..., 0.9.
        score_method (str, optional): "robustness" or "entropy". Defaults to "robustness".
        dim_reduce_flavor (str, optional): "pca", "tsne", "umap", or "auto" to run
            :func:`pick_dim_reduction` on the unsmoothed data. Defaults to "auto".
        return_scores (bool, optional): if to also return the score of every alpha.
            Defaults to False.
        Other arguments are described in :func:`net_smooth`.

    Returns:
        (smoothed data, chosen alpha), plus a ``pd.Series`` of scores indexed by alpha
        if ``return_scores`` is True.
    """
    validate_adjacency(adjacency)
    grid = _check_alpha_grid(alpha_grid)
    _check_choice(score_method, SCORE_METHODS, "score_method")
    if dim_reduce_flavor != "auto":
        _check_choice(dim_reduce_flavor, DIM_REDUCE_FLAVORS, "dim_reduce_flavor")

    rep, adjacency_norm, chunk_size = _prepare(
        data, adjacency, normalize_adj, representation, chunk_size
    )

    if dim_reduce_flavor == "auto":
        dim_reduce_flavor = pick_dim_reduction(
            rep.to_matrix(), is_counts=is_counts, random_state=random_state
        )
        logger.info("Picked dim_reduce_flavor: %s", dim_reduce_flavor)

    if parallel is None:
        parallel = Parallel(n_jobs=n_jobs)

    workdir = generated = None
    if rep.kind == "backed" and filepath is None:
        filepath = generated = _default_output()

    try:
        if rep.kind == "backed":
            workdir = tempfile.mkdtemp(
                prefix="netsmoothpy_", dir=os.path.dirname(os.path.abspath(filepath))
            )

        candidates = parallel(
            delayed(rep.smooth)(
                adjacency_norm,
                a,
                chunk_size=chunk_size,
                filepath=None if workdir is None else os.path.join(workdir, f"alpha_{a}.h5ad"),
            )
            for a in grid
        )

        scores = parallel(
            delayed(_score_candidate)(
                rep,
                candidate,
                score_method,
                dim_reduce_flavor,
                is_counts,
                random_state,
                scorer_kwargs,
            )
            for candidate in candidates
        )
        scores = np.asarray(scores, dtype=np.float64)
        if not np.isfinite(scores).all():
            raise ComputationError(
                f"Smoothing scores are not finite for alpha={np.asarray(grid)[~np.isfinite(scores)]}"
            )

        # first maximum, so ties go to the lowest alpha
        best = int(np.argmax(scores))
        for i, candidate in enumerate(candidates):
            if i != best:
                rep.discard(candidate)
        smoothed = rep.finalize(candidates[best], filepath)
    except Exception:
        if generated is not None:
            rep.discard(generated)
        raise
    finally:
        if workdir is not None:
            shutil.rmtree(workdir, ignore_errors=True)

    chosen_alpha = grid[best]
    logger.info("Picked alpha=%s", chosen_alpha)

    smoothed = rep.annotate(
        smoothed,
        {
            "alpha": chosen_alpha,
            "alpha_selection": "auto",
            "normalize_adj": normalize_adj,
            "score_method": score_method,
            "dim_reduce_flavor": dim_reduce_flavor,
            "alpha_grid": np.asarray(grid),
            "scores": scores,
        },
    )

    if return_scores:
        return (
            smoothed,
            chosen_alpha,
            pd.Series(scores, index=pd.Index(grid, name="alpha"), name=score_method),
        )
    return smoothed, chosen_alpha


def _prepare(data, adjacency, normalize_adj, representation, chunk_size):
    _check_choice(normalize_adj, NORMALIZE_AXES, "normalize_adj")
    rep = resolve_representation(data, representation)

    if chunk_size is not None:
        chunk_size = _check_chunk_size(chunk_size, rep.n_samples)
    elif rep.kind == "backed":
        chunk_size = min(DEFAULT_CHUNK_SIZE, rep.n_samples)

    adjacency_norm = normalize_adjacency(adjacency, normalize_adj)

    src, _ = _network_indexer(rep.gene_names, adjacency_norm.index)
    if len(src) == 0:
        logger.warning(
            "None of the %i genes is present in the network, data are left unchanged",
            len(rep.gene_names),
        )

    return rep, adjacency_norm, chunk_size


def _score_candidate(
    rep, candidate, score_method, dim_reduce_flavor, is_counts, random_state, scorer_kwargs
) -> float:
    return score_smoothing(
        rep.to_matrix(candidate),
        method=score_method,
        dim_reduce_flavor=dim_reduce_flavor,
        is_counts=is_counts,
        random_state=random_state,
        **scorer_kwargs,
    )


def diffuse(
    projection: pd.DataFrame | np.ndarray,
    normalized_adjacency: pd.DataFrame | np.ndarray,
    alpha: float,
    strategy: str = "direct",
    chunk_size: int | None = None,
) -> pd.DataFrame | np.ndarray:
    """
    Random walk with restart of a network-space projection:
    (1 - alpha) * (I - alpha * A_norm)^-1 x projection.

    Args:
        projection (pd.DataFrame | np.ndarray): [network genes, samples] matrix,
            e.g. from :func:`netsmoothpy.pp.project_on_network`.
        normalized_adjacency (pd.DataFrame | np.ndarray): output of
            :func:`netsmoothpy.pp.normalize_adjacency`.
        alpha (float): strictly inside (0, 1).
        strategy (str, optional): "direct" solves the whole system at once, "chunked"
            inverts it once and multiplies the kernel with consecutive chunks of samples.
            Defaults to "direct".
        chunk_size (int | None, optional): samples per chunk for the "chunked" strategy.
            Defaults to min(1000, n_samples).

    Returns:
        smoothed projection, a DataFrame if ``projection`` is one.
    """
    alpha = _check_alpha(alpha)
    _check_choice(strategy, DIFFUSION_STRATEGIES, "strategy")

    if isinstance(projection, pd.DataFrame) and isinstance(normalized_adjacency, pd.DataFrame):
        if not projection.index.equals(normalized_adjacency.index):
            raise InvalidParameterError(
                "Projection rows should follow the genes of the adjacency matrix."
            )

    values = np.asarray(projection, dtype=np.float64)
    anorm = np.asarray(normalized_adjacency, dtype=np.float64)
    if anorm.ndim != 2 or anorm.shape[0] != anorm.shape[1] or anorm.shape[0] != values.shape[0]:
        raise InvalidParameterError(
            f"Projection with {values.shape[0]} genes does not match "
            f"a {'x'.join(map(str, anorm.shape))} adjacency matrix."
        )

    if strategy == "direct":
        smoothed = _solve_direct(anorm, values, alpha)
    else:
        n_samples = values.shape[1]
        if chunk_size is None:
            chunk_size = min(DEFAULT_CHUNK_SIZE, n_samples)
        smoothed = _solve_chunked(
            anorm, values, alpha, _check_chunk_size(chunk_size, n_samples)
        )

    if isinstance(projection, pd.DataFrame):
        return pd.DataFrame(smoothed, index=projection.index, columns=projection.columns)
    return smoothed


def dim_reduce(
    matrix: pd.DataFrame | np.ndarray,
    flavor: str = "pca",
    n_comps: int = 2,
    is_counts: bool = True,
    random_state: int = 0,
) -> np.ndarray:
    """
    Embed the samples (columns) of a genes x samples matrix with scanpy.

    "tsne" and "umap" run on top of a PCA; t-SNE perplexity, numbers of PCs
    and of neighbours are capped to what the number of samples allows.
    t-SNE is always two-dimensional.

    Returns:
        [samples, n_comps] embedding
    """
    _check_choice(flavor, DIM_REDUCE_FLAVORS, "flavor")

    adata = AnnData(np.array(matrix, dtype=np.float64).T)
    n_obs, n_vars = adata.shape
    if min(n_obs, n_vars) < 3:
        raise InvalidParameterError(
            f"At least 3 samples and 3 genes are needed for an embedding, got {n_vars} x {n_obs}."
        )

    if is_counts:
        sc.pp.log1p(adata, base=2)

    n_pcs = min(50, n_obs - 1, n_vars - 1)

    if flavor == "pca":
        sc.pp.pca(adata, n_comps=min(n_comps, n_pcs), random_state=random_state)
        return adata.obsm["X_pca"]

    sc.pp.pca(adata, n_comps=n_pcs, random_state=random_state)

    if flavor == "tsne":
        sc.tl.tsne(
            adata,
            n_pcs=n_pcs,
            perplexity=min(30.0, max(1.0, (n_obs - 1) / 3)),
            random_state=random_state,
        )
        return adata.obsm["X_tsne"]

    sc.pp.neighbors(
        adata, n_neighbors=min(15, n_obs - 1), n_pcs=n_pcs, random_state=random_state
    )
    sc.tl.umap(adata, n_components=n_comps, random_state=random_state)
    return adata.obsm["X_umap"]


def shannon_entropy(embedding: np.ndarray, n_bins: int = 20) -> float:
    """
    Shannon entropy (nats) of the occupancy of a ``n_bins`` x ``n_bins`` grid laid
    over the first two dimensions of ``embedding``.
    """
    embedding = np.asarray(embedding, dtype=np.float64)
    counts, _, _ = np.histogram2d(embedding[:, 0], embedding[:, 1], bins=n_bins)
    counts = counts.ravel()
    return float(entropy(counts[counts > 0]))


def pick_dim_reduction(
    matrix: pd.DataFrame | np.ndarray,
    flavors: Iterable[str] = DIM_REDUCE_FLAVORS,
    is_counts: bool = True,
    random_state: int = 0,
    n_bins: int = 20,
) -> str:
    """
    Pick the dimensionality reduction whose 2D embedding of ``matrix`` has the
    highest Shannon entropy, i.e. spreads the samples the most.
    The first of ``flavors`` wins on ties.
    """
    flavors = [_check_choice(f, DIM_REDUCE_FLAVORS, "flavors") for f in flavors]
    if not flavors:
        raise InvalidParameterError("`flavors` must contain at least one flavor.")

    entropies = [
        shannon_entropy(
            dim_reduce(matrix, f, n_comps=2, is_counts=is_counts, random_state=random_state),
            n_bins=n_bins,
        )
        for f in flavors
    ]
    logger.debug(
        "Embedding entropies: %s",
        ", ".join(f"{f}={e:.3f}" for f, e in zip(flavors, entropies)),
    )
    return flavors[int(np.argmax(entropies))]


def robust_clusters(
    embedding: np.ndarray,
    ks: Iterable[int] = (3, 4, 5, 6, 7, 8),
    algorithm: str = "kmeans",
    n_resamples: int = 10,
    subsample_fraction: float = 0.8,
    proportion: float = 0.7,
    min_size: int | None = None,
    random_state: int = 0,
) -> np.ndarray:
    """
    Consensus clustering of the samples over a range of cluster numbers and
    random subsamples.

    For every k of ``ks``, ``n_resamples`` subsamples of the samples are clustered
    with ``algorithm`` ("kmeans" or "pam"). Samples are then grouped by a
    complete-linkage tree over their co-clustering frequencies, cut so that every
    pair in a group was clustered together in at least ``proportion`` of the runs
    they were both drawn in. Groups smaller than ``min_size`` are ambiguous.

    Values of ``ks`` well above the number of natural groups split them into
    pieces that are not clustered together consistently, which lowers the
    proportion of robust samples; keep ``ks`` close to the expected number of groups.

    Args:
        embedding (np.ndarray): [samples, dims] coordinates.
        ks (Iterable[int], optional): numbers of clusters. Defaults to 3, ..., 8.
        algorithm (str, optional): "kmeans" (scikit-learn) or "pam"
            (scikit-learn-extra is required). Defaults to "kmeans".
        n_resamples (int, optional): subsamples per k. Defaults to 10.
        subsample_fraction (float, optional): fraction of samples in each subsample. Defaults to 0.8.
        proportion (float, optional): minimal co-clustering frequency inside a group. Defaults to 0.7.
        min_size (int | None, optional): minimal size of a robust cluster.
            Defaults to n_samples // 10, clipped to [2, 5].
        random_state (int, optional): seed for subsampling and clustering. Defaults to 0.

    Returns:
        cluster label of every sample, -1 for ambiguous samples.
    """
    ks = list(ks)
    _check_choice(algorithm, CLUSTER_ALGORITHMS, "algorithm")
    if not 0 < subsample_fraction <= 1:
        raise InvalidParameterError("`subsample_fraction` must lie in (0, 1].")
    if not 0 <= proportion <= 1:
        raise InvalidParameterError("`proportion` must lie in [0, 1].")

    X = np.asarray(embedding, dtype=np.float64)
    n = X.shape[0]
    if n < 2:
        raise InvalidParameterError("At least 2 samples are needed for clustering.")
    n_sub = max(2, int(round(subsample_fraction * n)))
    if min_size is None:
        min_size = min(5, max(2, n // 10))

    rng = np.random.default_rng(random_state)
    # [n, n] number of runs where both samples were drawn / clustered together
    drawn = np.zeros((n, n))
    together = np.zeros((n, n))

    for k in ks:
        if not 1 < k < n_sub:
            logger.debug("Skipping k=%i for subsamples of %i samples", k, n_sub)
            continue
        for _ in range(n_resamples):
            idx = np.sort(rng.choice(n, size=n_sub, replace=False))
            labels = _cluster_one(X[idx], algorithm, k, int(rng.integers(2**31 - 1)))
            pairs = np.ix_(idx, idx)
            drawn[pairs] += 1
            together[pairs] += labels[:, np.newaxis] == labels[np.newaxis, :]

    if not drawn.any():
        raise InvalidParameterError(
            f"None of ks={ks} is usable with subsamples of {n_sub} samples."
        )

    consensus = np.divide(together, drawn, out=np.zeros_like(together), where=drawn > 0)
    np.fill_diagonal(consensus, 1)

    tree = linkage(squareform(1 - consensus, checks=False), method="complete")
    clusters = fcluster(tree, t=1 - proportion, criterion="distance") - 1

    sizes = np.bincount(clusters)
    clusters[sizes[clusters] < min_size] = -1
    return clusters


def score_smoothing(
    matrix: pd.DataFrame | np.ndarray,
    method: str = "robustness",
    dim_reduce_flavor: str = "pca",
    is_counts: bool = True,
    random_state: int = 0,
    n_bins: int = 20,
    n_dims: int = 10,
    **robust_kwargs,
) -> float:
    """
    Score a smoothed genes x samples matrix, the higher the better.

    Args:
        matrix (pd.DataFrame | np.ndarray): smoothed genes x samples matrix.
        method (str, optional): "robustness" returns the proportion of samples in robust
            clusters (see :func:`robust_clusters`) of the ``n_dims``-dimensional embedding,
            "entropy" the Shannon entropy of the 2D embedding (see :func:`shannon_entropy`).
            Defaults to "robustness".
        dim_reduce_flavor (str, optional): "pca", "tsne" or "umap". Defaults to "pca".
        is_counts (bool, optional): if ``matrix`` holds counts. Defaults to True.
        random_state (int, optional): seed. Defaults to 0.
        n_bins (int, optional): grid size for "entropy". Defaults to 20.
        n_dims (int, optional): embedding dimensions for "robustness" with PCA. Defaults to 10.
        robust_kwargs: forwarded to :func:`robust_clusters`.
    """
    _check_choice(method, SCORE_METHODS, "method")

    if method == "entropy":
        embedding = dim_reduce(
            matrix, dim_reduce_flavor, n_comps=2, is_counts=is_counts, random_state=random_state
        )
        return shannon_entropy(embedding, n_bins=n_bins)

    embedding = dim_reduce(
        matrix,
        dim_reduce_flavor,
        n_comps=n_dims if dim_reduce_flavor == "pca" else 2,
        is_counts=is_counts,
        random_state=random_state,
    )
    clusters = robust_clusters(embedding, random_state=random_state, **robust_kwargs)
    return float(np.mean(clusters != -1))
