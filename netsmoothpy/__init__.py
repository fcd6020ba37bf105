"""
netSmooth algorithm:

1. Network validation and normalization:
    - the gene network is given as a square adjacency matrix named by genes
    - no gene may have an all-zero row or column
    - L1 normalization by rows (in-degree) or by columns (out-degree)

2. Projection
    - expression is restricted to the network genes, in the network's order
    - network genes that were not measured enter the diffusion with zero signal

3. Random walk with restart
    - smoothed = (1 - alpha) * (I - alpha * A_norm)^-1 x projection
    - in memory: one linear solve for all the samples
    - disk-backed: the kernel is inverted once and applied to chunks of cells,
        which are written to an .h5ad file one after the other

4. Recombination
    - smoothed values replace the network genes, other genes keep their values

5*. Choosing alpha
    - smooth with every alpha of a grid (0.1, ..., 0.9 by default) in parallel
    - score every result: proportion of cells in robust clusters,
        or Shannon entropy of a 2D embedding
    - keep the best scoring alpha (the lowest one on ties)
"""

from . import preprocessing as pp
from . import tools as tl
from . import datasets
from .exceptions import (
    ComputationError,
    InvalidGraphError,
    InvalidParameterError,
    NetSmoothError,
)
