"""Baseline <-> tile index helpers.

Cross-correlation baselines are ordered as the upper triangle of the tile
pair matrix, row-major: (0, 1), (0, 2), ..., (0, n-1), (1, 2), ...
"""

from typing import Iterable, Tuple

import numpy as np

from ..errors import CalibrationStructureError


def num_baselines(n_tiles: int) -> int:
    return n_tiles * (n_tiles - 1) // 2


def num_tiles_from_num_baselines(n_bl: int) -> int:
    """Invert ``n_bl = n (n - 1) / 2``; raises if ``n_bl`` is not triangular."""
    n_tiles = int(round((1 + np.sqrt(1 + 8 * n_bl)) / 2))
    if num_baselines(n_tiles) != n_bl:
        raise CalibrationStructureError(
            f"{n_bl} baselines does not correspond to a whole number of tiles"
        )
    return n_tiles


def baseline_tiles(n_tiles: int) -> Tuple[np.ndarray, np.ndarray]:
    """Tile indices (tile1, tile2) of every baseline, tile1 < tile2."""
    tile1, tile2 = np.triu_indices(n_tiles, k=1)
    return tile1.astype(np.int64), tile2.astype(np.int64)


def expand_baseline_weights(
    weights: np.ndarray,
    total_num_tiles: int,
    flagged_tiles: Iterable[int],
) -> np.ndarray:
    """Spread unflagged-baseline weights over every baseline of the full array.

    Parameters
    ----------
    weights : ndarray (n_unflagged_baselines,)
        Weights for baselines between unflagged tiles.
    total_num_tiles : int
        Tile count including flagged tiles.
    flagged_tiles : iterable of int

    Returns
    -------
    ndarray (num_baselines(total_num_tiles),) float64
        NaN for every baseline touching a flagged tile.
    """
    flagged = np.zeros(total_num_tiles, dtype=bool)
    flagged[np.asarray(sorted(set(flagged_tiles)), dtype=np.int64)] = True
    tile1, tile2 = baseline_tiles(total_num_tiles)
    good = ~(flagged[tile1] | flagged[tile2])

    weights = np.asarray(weights, dtype=np.float64)
    if weights.shape != (int(good.sum()),):
        raise CalibrationStructureError(
            f"Got {weights.size} baseline weights, but {total_num_tiles} tiles with "
            f"{int(flagged.sum())} flagged have {int(good.sum())} unflagged baselines"
        )
    out = np.full(tile1.size, np.nan, dtype=np.float64)
    out[good] = weights
    return out
