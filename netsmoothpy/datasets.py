from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from anndata import AnnData


def negative_binomial_counts(
    n_genes: int = 100,
    n_samples: int = 20,
    n: float = 1,
    p: float = 0.1,
    random_seed: int = 0,
) -> pd.DataFrame:
    """genes x samples matrix of negative binomial counts, genes named gene1, gene2, ..."""
    rng = np.random.default_rng(random_seed)
    counts = rng.negative_binomial(n, p, size=(n_genes, n_samples))
    return pd.DataFrame(
        counts,
        index=[f"gene{i + 1}" for i in range(n_genes)],
        columns=[f"cell{j + 1}" for j in range(n_samples)],
    )


def random_network(
    genes: Sequence[str], density: float = 0.2, random_seed: int = 0
) -> pd.DataFrame:
    """
    Symmetric 0/1 adjacency matrix without self-loops with about ``density``
    of all gene pairs connected. Isolated genes get linked to a random partner,
    so the matrix has no zero row or column.
    """
    genes = list(genes)
    n = len(genes)
    if n < 2:
        raise ValueError("A network needs at least 2 genes.")

    rng = np.random.default_rng(random_seed)
    upper = np.triu(rng.random((n, n)) < density, k=1)
    adj = (upper | upper.T).astype(np.float64)

    for i in np.flatnonzero(adj.sum(axis=1) == 0):
        j = rng.choice(np.delete(np.arange(n), i))
        adj[i, j] = adj[j, i] = 1.0

    return pd.DataFrame(adj, index=genes, columns=genes)


def toy_example(random_seed: int = 0) -> tuple[AnnData, pd.DataFrame]:
    """
    20 cells x 100 genes of negative binomial counts, and a random network
    over the first 80 of these genes (the last 20 are not part of it).
    """
    counts = negative_binomial_counts(100, 20, random_seed=random_seed)
    adata = AnnData(counts.T.astype(np.float32))
    network = random_network(counts.index[:80], density=0.2, random_seed=random_seed)
    return adata, network
