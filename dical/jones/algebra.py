"""DICAL Jones Algebra.

The one Jones representation used throughout the package: numpy complex128
arrays with trailing shape (2, 2). Scalar 2x2 kernels are numba JIT compiled
with ``nogil=True`` so the block scheduler can run them from worker threads.
"""

import numpy as np
from numba import njit
from typing import Tuple, Union

Shape = Union[int, Tuple[int, ...]]


# ---------------------------------------------------------------------------
# Scalar 2x2 ops (numba, called from within other kernels)
# ---------------------------------------------------------------------------

@njit(cache=True, nogil=True)
def _mul22(A, B):
    C = np.zeros((2, 2), dtype=np.complex128)
    C[0, 0] = A[0, 0] * B[0, 0] + A[0, 1] * B[1, 0]
    C[0, 1] = A[0, 0] * B[0, 1] + A[0, 1] * B[1, 1]
    C[1, 0] = A[1, 0] * B[0, 0] + A[1, 1] * B[1, 0]
    C[1, 1] = A[1, 0] * B[0, 1] + A[1, 1] * B[1, 1]
    return C


@njit(cache=True, nogil=True)
def _mul22_h(A, B):
    """A @ B^H."""
    C = np.zeros((2, 2), dtype=np.complex128)
    C[0, 0] = A[0, 0] * np.conj(B[0, 0]) + A[0, 1] * np.conj(B[0, 1])
    C[0, 1] = A[0, 0] * np.conj(B[1, 0]) + A[0, 1] * np.conj(B[1, 1])
    C[1, 0] = A[1, 0] * np.conj(B[0, 0]) + A[1, 1] * np.conj(B[0, 1])
    C[1, 1] = A[1, 0] * np.conj(B[1, 0]) + A[1, 1] * np.conj(B[1, 1])
    return C


@njit(cache=True, nogil=True)
def _hmul22(A, B):
    """A^H @ B."""
    C = np.zeros((2, 2), dtype=np.complex128)
    C[0, 0] = np.conj(A[0, 0]) * B[0, 0] + np.conj(A[1, 0]) * B[1, 0]
    C[0, 1] = np.conj(A[0, 0]) * B[0, 1] + np.conj(A[1, 0]) * B[1, 1]
    C[1, 0] = np.conj(A[0, 1]) * B[0, 0] + np.conj(A[1, 1]) * B[1, 0]
    C[1, 1] = np.conj(A[0, 1]) * B[0, 1] + np.conj(A[1, 1]) * B[1, 1]
    return C


@njit(cache=True, nogil=True)
def _finite22(A):
    for i in range(2):
        for j in range(2):
            if not np.isfinite(A[i, j].real) or not np.isfinite(A[i, j].imag):
                return False
    return True


@njit(cache=True, nogil=True)
def _inv22(A):
    """Ordinary 2x2 inverse; all-NaN when det is zero or the result overflows."""
    det = A[0, 0] * A[1, 1] - A[0, 1] * A[1, 0]
    if det == 0:
        return np.full((2, 2), np.nan + 0j, dtype=np.complex128)
    d = 1.0 / det
    B = np.zeros((2, 2), dtype=np.complex128)
    B[0, 0] =  A[1, 1] * d
    B[0, 1] = -A[0, 1] * d
    B[1, 0] = -A[1, 0] * d
    B[1, 1] =  A[0, 0] * d
    if not _finite22(B):
        return np.full((2, 2), np.nan + 0j, dtype=np.complex128)
    return B


@njit(cache=True, nogil=True)
def _maxdiff22(A, B):
    """Largest squared element-wise distance |A - B|^2."""
    m = 0.0
    for i in range(2):
        for j in range(2):
            d = A[i, j] - B[i, j]
            v = d.real * d.real + d.imag * d.imag
            if v > m:
                m = v
    return m


# ---------------------------------------------------------------------------
# Batch ops over flattened (N, 2, 2) stacks
# ---------------------------------------------------------------------------

@njit(cache=True, nogil=True)
def _batch_inverse(J):
    n = J.shape[0]
    out = np.empty((n, 2, 2), dtype=np.complex128)
    for k in range(n):
        out[k] = _inv22(J[k])
    return out


@njit(cache=True, nogil=True)
def _batch_multiply(A, B):
    n = A.shape[0]
    out = np.empty((n, 2, 2), dtype=np.complex128)
    for k in range(n):
        out[k] = _mul22(A[k], B[k])
    return out


@njit(cache=True, nogil=True)
def _batch_mul_herm(A, B):
    n = A.shape[0]
    out = np.empty((n, 2, 2), dtype=np.complex128)
    for k in range(n):
        out[k] = _mul22_h(A[k], B[k])
    return out


def _as_stack(J: np.ndarray) -> np.ndarray:
    J = np.asarray(J, dtype=np.complex128)
    if J.shape[-2:] != (2, 2):
        raise ValueError(f"Jones arrays need trailing shape (2, 2), got {J.shape}")
    return np.ascontiguousarray(J.reshape(-1, 2, 2))


def jones_inverse(J: np.ndarray) -> np.ndarray:
    """Invert every Jones matrix in ``J``.

    Inversion follows the ordinary 2x2 rule at any amplitude. Matrices with
    a zero determinant, NaN elements, or an inverse that overflows become
    the all-NaN sentinel, so the output is never partially NaN.

    Parameters
    ----------
    J : ndarray (..., 2, 2) complex128

    Returns
    -------
    ndarray (..., 2, 2) complex128
    """
    J = np.asarray(J)
    return _batch_inverse(_as_stack(J)).reshape(J.shape)


def jones_multiply(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """A @ B for matching stacks of Jones matrices."""
    A, B = np.broadcast_arrays(np.asarray(A), np.asarray(B))
    return _batch_multiply(_as_stack(A), _as_stack(B)).reshape(A.shape)


def jones_mul_herm(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """A @ B^H for matching stacks of Jones matrices."""
    A, B = np.broadcast_arrays(np.asarray(A), np.asarray(B))
    return _batch_mul_herm(_as_stack(A), _as_stack(B)).reshape(A.shape)


# ---------------------------------------------------------------------------
# Constructors and NaN predicates
# ---------------------------------------------------------------------------

def _leading(shape: Shape) -> Tuple[int, ...]:
    if isinstance(shape, (int, np.integer)):
        return (int(shape),)
    return tuple(int(s) for s in shape)


def identity_jones(shape: Shape = ()) -> np.ndarray:
    """Identity Jones matrices with leading shape ``shape``."""
    J = np.zeros(_leading(shape) + (2, 2), dtype=np.complex128)
    J[..., 0, 0] = 1.0
    J[..., 1, 1] = 1.0
    return J


def nan_jones(shape: Shape = ()) -> np.ndarray:
    """The all-NaN sentinel, meaning "no solution available"."""
    return np.full(_leading(shape) + (2, 2), np.nan + 0j, dtype=np.complex128)


def _nan_elements(J: np.ndarray) -> np.ndarray:
    J = np.asarray(J)
    return np.isnan(J.real) | np.isnan(J.imag)


def jones_any_nan(J: np.ndarray) -> np.ndarray:
    """True where any element of a Jones matrix is NaN."""
    return _nan_elements(J).any(axis=(-2, -1))


def jones_all_nan(J: np.ndarray) -> np.ndarray:
    """True where every element of a Jones matrix is NaN."""
    return _nan_elements(J).all(axis=(-2, -1))


def jones_partially_nan(J: np.ndarray) -> np.ndarray:
    """True where a Jones matrix mixes NaN and non-NaN elements."""
    return jones_any_nan(J) & ~jones_all_nan(J)
