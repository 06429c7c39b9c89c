"""DICAL Per-Block Calibrator.

Solves for one Jones matrix per tile over a single (timeblock, chanblock)
cell with the MitchCal/StefCal alternating least-squares iteration. For a
baseline (i, j) with data D, model M and weight w the model is
D = J_i M J_j^H, so each tile's gain has the closed-form update

    tile i:  z = J_j M^H,   top_i += w D z,     bot_i += w z^H z
    tile j:  z = J_i M,     top_j += w D^H z,   bot_j += w z^H z
    J_a <- top_a bot_a^-1

computed for all tiles from the same gain vector. Half-steps come in pairs:
the first replaces the gains outright, the second averages old and new
gains and measures how far each tile moved. Convergence is only tested
after a complete pair, so iteration counts are always even.
"""

import logging

import numpy as np
from numba import njit

from ..jones.algebra import _mul22, _mul22_h, _hmul22, _inv22, _finite22, _maxdiff22
from .baselines import baseline_tiles, num_baselines
from .diagnostics import CalibrationResult
from ..errors import CalibrationStructureError

logger = logging.getLogger("dical")


# ---------------------------------------------------------------------------
# Numba kernels
# ---------------------------------------------------------------------------

@njit(cache=True, nogil=True)
def _accumulate(data, model, gains, tile1, tile2, weights, top, bot):
    """Fill the per-tile normal-equation sums ``top`` and ``bot``."""
    top[:] = 0.0
    bot[:] = 0.0
    n_time = data.shape[0]
    n_bl = data.shape[1]
    for t in range(n_time):
        for b in range(n_bl):
            w = weights[b]
            if w <= 0.0:
                continue
            i = tile1[b]
            j = tile2[b]
            D = data[t, b]
            M = model[t, b]

            z = _mul22_h(gains[j], M)
            dz = _mul22(D, z)
            zz = _hmul22(z, z)
            for p in range(2):
                for q in range(2):
                    top[i, p, q] += w * dz[p, q]
                    bot[i, p, q] += w * zz[p, q]

            z = _mul22(gains[i], M)
            dz = _hmul22(D, z)
            zz = _hmul22(z, z)
            for p in range(2):
                for q in range(2):
                    top[j, p, q] += w * dz[p, q]
                    bot[j, p, q] += w * zz[p, q]


@njit(cache=True, nogil=True)
def _solve_block(data, model, di_jones, tile1, tile2, weights, active,
                 max_iterations, stop_threshold, precisions, stalled):
    """Iterate in place on ``di_jones``.

    Returns the number of half-steps and whether the stop test fired.
    """
    n_tiles = di_jones.shape[0]
    top = np.zeros((n_tiles, 2, 2), dtype=np.complex128)
    bot = np.zeros((n_tiles, 2, 2), dtype=np.complex128)

    iteration = 0
    stopped = False
    while iteration + 2 <= max_iterations:
        # First half-step: replace
        _accumulate(data, model, di_jones, tile1, tile2, weights, top, bot)
        for a in range(n_tiles):
            if not active[a] or stalled[a]:
                continue
            new = _mul22(top[a], _inv22(bot[a]))
            if _finite22(new):
                di_jones[a] = new
            else:
                stalled[a] = True

        # Second half-step: average and measure
        _accumulate(data, model, di_jones, tile1, tile2, weights, top, bot)
        for a in range(n_tiles):
            if not active[a] or stalled[a]:
                continue
            new = _mul22(top[a], _inv22(bot[a]))
            if not _finite22(new):
                stalled[a] = True
                continue
            precisions[a] = _maxdiff22(new, di_jones[a])
            for p in range(2):
                for q in range(2):
                    di_jones[a, p, q] = 0.5 * (di_jones[a, p, q] + new[p, q])
        iteration += 2

        max_precision = -1.0
        for a in range(n_tiles):
            if active[a] and not stalled[a] and precisions[a] > max_precision:
                max_precision = precisions[a]
        if max_precision < 0.0:
            break
        if max_precision < stop_threshold:
            stopped = True
            break

    return iteration, stopped


# ---------------------------------------------------------------------------
# Python entry point
# ---------------------------------------------------------------------------

def _check_inputs(vis_data, vis_model, di_jones, baseline_weights,
                  max_iterations, stop_threshold, min_threshold):
    if vis_data.shape != vis_model.shape:
        raise CalibrationStructureError(
            f"Data shape {vis_data.shape} does not match model shape {vis_model.shape}"
        )
    if vis_data.ndim != 4 or vis_data.shape[-2:] != (2, 2):
        raise CalibrationStructureError(
            f"Visibilities must have shape (n_time, n_baselines, 2, 2), got {vis_data.shape}"
        )
    if di_jones.ndim != 3 or di_jones.shape[-2:] != (2, 2):
        raise CalibrationStructureError(
            f"di_jones must have shape (n_tiles, 2, 2), got {di_jones.shape}"
        )
    if di_jones.dtype != np.complex128:
        raise CalibrationStructureError(f"di_jones must be complex128, got {di_jones.dtype}")
    if not di_jones.flags.writeable:
        raise CalibrationStructureError("di_jones must be writable")

    n_tiles = di_jones.shape[0]
    n_bl = vis_data.shape[1]
    if num_baselines(n_tiles) != n_bl:
        raise CalibrationStructureError(
            f"{n_tiles} tiles need {num_baselines(n_tiles)} baselines, "
            f"visibilities have {n_bl}"
        )
    if baseline_weights.shape != (n_bl,):
        raise CalibrationStructureError(
            f"Expected {n_bl} baseline weights, got shape {baseline_weights.shape}"
        )
    if not np.all(np.isfinite(baseline_weights)) or np.any(baseline_weights < 0):
        raise CalibrationStructureError("Baseline weights must be finite and non-negative")

    if int(max_iterations) != max_iterations or max_iterations < 2:
        raise CalibrationStructureError(
            f"max_iterations must be an integer >= 2, got {max_iterations}"
        )
    if not stop_threshold > 0 or not min_threshold > 0:
        raise CalibrationStructureError(
            f"Thresholds must be positive (stop={stop_threshold}, min={min_threshold})"
        )


def calibrate(
    vis_data: np.ndarray,
    vis_model: np.ndarray,
    di_jones: np.ndarray,
    baseline_weights: np.ndarray,
    max_iterations: int,
    stop_threshold: float,
    min_threshold: float,
    chanblock: int = None,
    i_chanblock: int = None,
) -> CalibrationResult:
    """Calibrate one (timeblock, chanblock) cell in place.

    Parameters
    ----------
    vis_data : ndarray (n_time, n_bl, 2, 2) complex128
        Observed visibilities of this cell.
    vis_model : ndarray (n_time, n_bl, 2, 2) complex128
        Model visibilities of this cell.
    di_jones : ndarray (n_tiles, 2, 2) complex128
        Initial guess, overwritten with the solution. May be a view.
    baseline_weights : ndarray (n_bl,) float64
        Zero excludes a baseline.
    max_iterations : int
        Upper bound on half-steps.
    stop_threshold : float
        Stop once every tile moves less than this over a pair of half-steps.
        Only a block that stops this way, with no singular tile, is converged.
    min_threshold : float
        Tiles above this precision at termination count as failed. This
        never makes a block converged.
    chanblock, i_chanblock : int, optional
        Recorded on the result.

    Returns
    -------
    CalibrationResult
    """
    vis_data = np.asarray(vis_data, dtype=np.complex128)
    vis_model = np.asarray(vis_model, dtype=np.complex128)
    baseline_weights = np.asarray(baseline_weights, dtype=np.float64)
    _check_inputs(vis_data, vis_model, di_jones, baseline_weights,
                  max_iterations, stop_threshold, min_threshold)

    n_tiles = di_jones.shape[0]
    tile1, tile2 = baseline_tiles(n_tiles)
    weight_sum = (np.bincount(tile1, weights=baseline_weights, minlength=n_tiles)
                  + np.bincount(tile2, weights=baseline_weights, minlength=n_tiles))
    active = (weight_sum > 0) & (vis_data.shape[0] > 0)
    n_active = int(active.sum())

    if n_active == 0:
        return CalibrationResult(0, False, np.nan, 0, chanblock, i_chanblock)

    precisions = np.full(n_tiles, np.inf)
    stalled = np.zeros(n_tiles, dtype=np.bool_)
    num_iterations, stopped = _solve_block(
        vis_data, vis_model, di_jones, tile1, tile2, baseline_weights, active,
        int(max_iterations), float(stop_threshold), precisions, stalled,
    )

    usable = active & ~stalled
    max_precision = float(precisions[usable].max()) if usable.any() else np.nan
    num_failed = int(np.sum(active & (stalled | (precisions > min_threshold))))
    if stalled.any():
        logger.debug(f"Chanblock {chanblock}: {int(stalled.sum())} tile(s) had singular updates")

    return CalibrationResult(
        num_iterations=int(num_iterations),
        converged=bool(stopped) and not stalled.any(),
        max_precision=max_precision,
        num_failed=num_failed,
        chanblock=chanblock,
        i_chanblock=i_chanblock,
    )
