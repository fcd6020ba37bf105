# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import os
import shutil
import tempfile

import h5py
import numpy as np
import pandas as pd

from anndata import AnnData, read_h5ad
from packaging import version
from scanpy._compat import pkg_version
from scipy.sparse import csr_matrix, issparse

from ._utils import (
    REPRESENTATIONS,
    _check_choice,
    _check_unique_genes,
    _chunk_bounds,
    _dense_rows,
    _diffusion_kernel,
    _network_indexer,
    _project,
    _solve_direct,
    _write_h5ad_skeleton,
)
from .exceptions import InvalidParameterError
from .preprocessing import project_on_network, recombine


ANNDATA_MIN_VERSION = version.parse("0.8")
logger = logging.getLogger("netsmoothpy")


class _Representation:
    """
    Smoothing strategy bound to one way of holding the expression data.

    Instances are shipped to joblib workers, so they only keep picklable state.
    """

    kind: str = ""

    def __init__(self, data) -> None:
        self.data = data
        _check_unique_genes(self.gene_names)

    @property
    def gene_names(self) -> pd.Index:
        return self.data.var_names

    @property
    def n_samples(self) -> int:
        return self.data.n_obs

    def smooth(
        self,
        adjacency_norm: pd.DataFrame,
        alpha: float,
        chunk_size: int | None = None,
        filepath: str | None = None,
    ):
        raise NotImplementedError

    def to_matrix(self, result=None) -> np.ndarray:
        """[genes, samples] values of `result`, or of the input data if `result` is None."""
        raise NotImplementedError

    def finalize(self, result, filepath: str | None = None):
        return result

    def discard(self, result) -> None:
        pass

    def annotate(self, result, info: dict):
        if isinstance(result, AnnData):
            result.uns["netsmooth"] = info
        return result


class DenseRepresentation(_Representation):
    """genes x samples DataFrame, or AnnData with an in-memory dense X; direct solve."""

    kind = "dense"

    @property
    def gene_names(self) -> pd.Index:
        if isinstance(self.data, pd.DataFrame):
            return self.data.index
        return self.data.var_names

    @property
    def n_samples(self) -> int:
        return self.data.shape[1 if isinstance(self.data, pd.DataFrame) else 0]

    def _frame(self) -> pd.DataFrame:
        if isinstance(self.data, pd.DataFrame):
            return self.data
        return pd.DataFrame(
            np.asarray(self.data.X).T,
            index=self.data.var_names,
            columns=self.data.obs_names,
        )

    def smooth(self, adjacency_norm, alpha, chunk_size=None, filepath=None):
        expression = self._frame()

        projection = project_on_network(expression, adjacency_norm.index)
        smoothed = _solve_direct(
            adjacency_norm.to_numpy(dtype=np.float64), projection.to_numpy(), alpha
        )
        smoothed = recombine(
            expression,
            pd.DataFrame(smoothed, index=projection.index, columns=projection.columns),
        )

        if isinstance(self.data, pd.DataFrame):
            return smoothed

        result = self.data.copy()
        result.X = np.ascontiguousarray(smoothed.to_numpy().T)
        return result

    def to_matrix(self, result=None) -> np.ndarray:
        data = self.data if result is None else result
        if isinstance(data, pd.DataFrame):
            return data.to_numpy(dtype=np.float64)
        return np.asarray(data.X, dtype=np.float64).T


class SparseRepresentation(_Representation):
    """AnnData with a scipy sparse X; only network genes are densified before the solve."""

    kind = "sparse"

    def smooth(self, adjacency_norm, alpha, chunk_size=None, filepath=None):
        X = self.data.X
        src, dst = _network_indexer(self.gene_names, adjacency_norm.index)

        # [shared genes, cells]
        shared = X[:, src].toarray().T
        projection = _project(shared, dst, adjacency_norm.shape[0])
        smoothed = _solve_direct(
            adjacency_norm.to_numpy(dtype=np.float64), projection, alpha
        )

        # smoothing densifies the matrix anyway
        X_smoothed = X.toarray().astype(np.float64)
        X_smoothed[:, src] = smoothed[dst].T

        result = self.data.copy()
        result.X = X_smoothed
        return result

    def to_matrix(self, result=None) -> np.ndarray:
        X = (self.data if result is None else result).X
        X = X.toarray() if issparse(X) else np.asarray(X)
        return X.astype(np.float64).T


class BackedRepresentation(_Representation):
    """
    AnnData opened with ``backed="r"``. Cells are streamed in chunks through
    a precomputed diffusion kernel and results are written to an .h5ad file,
    so the whole matrix is never held in memory.
    """

    kind = "backed"

    def __init__(self, data: AnnData) -> None:
        anndata_version = pkg_version("anndata")
        if anndata_version < ANNDATA_MIN_VERSION:
            raise ValueError(
                f"disk-backed smoothing only works with anndata>={ANNDATA_MIN_VERSION} "
                f"(you have {anndata_version})"
            )
        # file name instead of the open handle: workers reopen the file read-only
        self.filename = str(data.filename)
        self.shape = data.shape
        self._gene_names = data.var_names.copy()
        _check_unique_genes(self._gene_names)

    @property
    def gene_names(self) -> pd.Index:
        return self._gene_names

    @property
    def n_samples(self) -> int:
        return self.shape[0]

    def smooth(self, adjacency_norm, alpha, chunk_size=None, filepath=None):
        adata = read_h5ad(self.filename, backed="r")
        try:
            src, dst = _network_indexer(adata.var_names, adjacency_norm.index)
            kernel = _diffusion_kernel(adjacency_norm.to_numpy(dtype=np.float64), alpha)
            # zero placeholder rows of the projection do not contribute to K x projection
            kernel = kernel[np.ix_(dst, dst)]

            try:
                _write_h5ad_skeleton(adata, filepath)
                with h5py.File(filepath, "r+") as f:
                    X_out = f["X"]
                    for start, stop in _chunk_bounds(adata.n_obs, chunk_size):
                        # [chunk, genes]
                        chunk = _dense_rows(adata.X, start, stop)
                        chunk[:, src] = chunk[:, src] @ kernel.T
                        X_out[start:stop] = chunk
            except Exception:
                # partially written output is unusable
                self.discard(filepath)
                raise
        finally:
            adata.file.close()

        logger.debug("alpha=%s: smoothed %i cells into %s", alpha, self.shape[0], filepath)
        return filepath

    def to_matrix(self, result=None) -> np.ndarray:
        adata = read_h5ad(self.filename if result is None else result, backed="r")
        try:
            X = _dense_rows(adata.X, 0, adata.n_obs)
        finally:
            adata.file.close()
        return X.T

    def finalize(self, result, filepath=None):
        if filepath is not None and os.path.abspath(result) != os.path.abspath(filepath):
            shutil.move(result, filepath)
            result = filepath
        return read_h5ad(result, backed="r")

    def discard(self, result) -> None:
        if os.path.exists(result):
            os.remove(result)

    def annotate(self, result, info: dict):
        # the result file is opened read-only
        logger.info("Smoothed matrix is saved in %s", result.filename)
        return result


_REPRESENTATION_CLASSES = {
    "dense": DenseRepresentation,
    "sparse": SparseRepresentation,
    "backed": BackedRepresentation,
}


def _default_output() -> str:
    fd, filepath = tempfile.mkstemp(prefix="netsmoothpy_", suffix=".h5ad")
    os.close(fd)
    logger.info("No filepath given, smoothed matrix will be written to %s", filepath)
    return filepath


def resolve_representation(data, representation: str | None = None) -> _Representation:
    """
    Pick the smoothing strategy for `data`.

    DataFrames are dense. AnnData objects are "backed" if opened in backed mode,
    "sparse" if X is a scipy sparse matrix, "dense" otherwise. An explicit
    `representation` may load a backed object into memory or switch an in-memory
    AnnData between dense and sparse X, but never turns in-memory data into backed.
    """
    if isinstance(data, pd.DataFrame):
        kind = "dense"
    elif isinstance(data, AnnData):
        if data.isbacked:
            kind = "backed"
        else:
            kind = "sparse" if issparse(data.X) else "dense"
    else:
        raise InvalidParameterError(
            "Expression data should be a genes x samples pandas.DataFrame or an AnnData, "
            f"got {type(data).__name__}."
        )

    if representation is None:
        representation = kind
    _check_choice(representation, REPRESENTATIONS, "representation")

    if representation != kind:
        if representation == "backed" or isinstance(data, pd.DataFrame):
            raise InvalidParameterError(
                f"{type(data).__name__} holding {kind} data can't be smoothed as {representation}."
            )
        data = data.to_memory() if data.isbacked else data.copy()
        if representation == "sparse" and not issparse(data.X):
            data.X = csr_matrix(data.X)
        elif representation == "dense" and issparse(data.X):
            data.X = data.X.toarray()
        logger.info("Treating %s expression data as %s", kind, representation)

    return _REPRESENTATION_CLASSES[representation](data)
