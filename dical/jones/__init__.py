"""DICAL Jones module.

Jones matrices are numpy complex128 arrays with trailing shape (2, 2).
"""

from .algebra import (
    jones_inverse,
    jones_multiply,
    jones_mul_herm,
    identity_jones,
    nan_jones,
    jones_any_nan,
    jones_all_nan,
    jones_partially_nan,
)

__all__ = [
    "jones_inverse",
    "jones_multiply",
    "jones_mul_herm",
    "identity_jones",
    "nan_jones",
    "jones_any_nan",
    "jones_all_nan",
    "jones_partially_nan",
]
