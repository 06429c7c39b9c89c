"""
Shared builders for dical tests.
"""

import numpy as np

from dical.core.baselines import baseline_tiles


def simulate_visibilities(gains: np.ndarray, model: np.ndarray) -> np.ndarray:
    """
    Corrupt model visibilities with per-tile gains.

    V_obs[..., b] = J_i @ M[..., b] @ J_j^H, for baseline b = (i, j).

    gains: (n_tiles, 2, 2); model: (..., n_bl, 2, 2)
    """
    tile1, tile2 = baseline_tiles(gains.shape[0])
    J_i = gains[tile1]
    J_j_H = np.conj(np.swapaxes(gains[tile2], -1, -2))
    return J_i @ model @ J_j_H


def scaled_identity(shape, k) -> np.ndarray:
    """k * I with leading shape ``shape``."""
    out = np.zeros(tuple(shape) + (2, 2), dtype=np.complex128)
    out[..., 0, 0] = k
    out[..., 1, 1] = k
    return out


def is_prime(n: int) -> bool:
    if n < 2:
        return False
    for d in range(2, int(n ** 0.5) + 1):
        if n % d == 0:
            return False
    return True


def first_primes(count: int) -> list:
    primes = []
    n = 2
    while len(primes) < count:
        if is_prime(n):
            primes.append(n)
        n += 1
    return primes
