# pylint: disable=C0114
from __future__ import annotations


class NetSmoothError(Exception):
    """Base class for errors raised by netsmoothpy."""


class InvalidGraphError(NetSmoothError, ValueError):
    """Raised when an adjacency matrix fails shape, naming or zero-sum validation."""


class InvalidParameterError(NetSmoothError, ValueError):
    """Raised for an out-of-range alpha, an unknown option value or a bad chunk size."""


class ComputationError(NetSmoothError, ArithmeticError):
    """Raised when the diffusion system cannot be solved or yields non-finite values."""
