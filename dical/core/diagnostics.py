"""DICAL calibration diagnostics.

Per-block convergence records plus helpers that summarise a whole grid of
them for logging and quality checks.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger("dical")


@dataclass
class CalibrationResult:
    """Outcome of calibrating one (timeblock, chanblock) cell.

    Attributes
    ----------
    num_iterations : int
        Half-steps performed; always even.
    converged : bool
        The largest precision fell below ``stop_threshold`` before
        ``max_iterations`` ran out and no tile had a singular update.
        Tiles that only reach ``min_threshold`` do not make a block converged.
    max_precision : float
        Largest per-tile precision after the final pair of half-steps.
        NaN when no tile had any weighted baseline.
    num_failed : int
        Active tiles whose precision stayed above ``min_threshold`` or whose
        update became singular.
    chanblock : int, optional
        Chanblock index (counting flagged chanblocks).
    i_chanblock : int, optional
        Unflagged chanblock index.
    """
    num_iterations: int
    converged: bool
    max_precision: float
    num_failed: int
    chanblock: Optional[int] = None
    i_chanblock: Optional[int] = None


def format_status(result: CalibrationResult, stop_threshold: float, min_threshold: float) -> str:
    """One-line human readable status for a block."""
    label = "?" if result.chanblock is None else result.chanblock
    status = f"Chanblock {label:>3}"
    if np.isnan(result.max_precision):
        return status + f": failed    ({result.num_iterations:>2}): no unflagged baselines"
    if not result.converged:
        if result.num_failed > 0:
            return status + (
                f": failed    ({result.num_iterations:>2}): "
                f"{result.max_precision:.5e} > {min_threshold:e} ({result.num_failed} tiles failed)"
            )
        return status + (
            f": unconverged ({result.num_iterations:>2}): "
            f"{min_threshold:e} >= {result.max_precision:.5e} >= {stop_threshold:e}"
        )
    return status + (
        f": converged ({result.num_iterations:>2}): "
        f"{stop_threshold:e} > {result.max_precision:.5e}"
    )


def converged_grid(results: np.ndarray) -> np.ndarray:
    """Boolean (n_timeblocks, n_chanblocks) convergence flags."""
    return np.vectorize(lambda r: r.converged, otypes=[bool])(results)


def iterations_grid(results: np.ndarray) -> np.ndarray:
    return np.vectorize(lambda r: r.num_iterations, otypes=[np.int64])(results)


def precision_grid(results: np.ndarray) -> np.ndarray:
    return np.vectorize(lambda r: r.max_precision, otypes=[np.float64])(results)


def log_convergence_summary(results: np.ndarray, stop_threshold: float, min_threshold: float) -> None:
    """Log a summary of a result grid; warn if any block failed.

    Parameters
    ----------
    results : ndarray (n_timeblocks, n_chanblocks) of CalibrationResult
    stop_threshold, min_threshold : float
    """
    if results.size == 0:
        logger.warning("No blocks were calibrated")
        return

    conv = converged_grid(results)
    iters = iterations_grid(results)
    prec = precision_grid(results)
    n_total = results.size
    n_conv = int(conv.sum())
    n_tight = int(np.sum(prec <= stop_threshold))

    lines = []
    lines.append("=" * 60)
    lines.append("CALIBRATION SUMMARY")
    lines.append("=" * 60)
    lines.append(f"  Blocks:     {n_total} ({results.shape[0]} timeblocks x {results.shape[1]} chanblocks)")
    lines.append(f"  Converged:  {n_conv}/{n_total} ({100.0 * n_conv / n_total:.1f}%)")
    lines.append(f"  Below stop threshold ({stop_threshold:.1e}): {n_tight}")
    lines.append(f"  Within min threshold ({min_threshold:.1e}): {int(np.sum(prec <= min_threshold))}")
    lines.append(f"  Iterations: min={iters.min()}, max={iters.max()}, mean={iters.mean():.1f}")
    if np.any(np.isfinite(prec)):
        lines.append(f"  Worst precision: {np.nanmax(prec):.3e}")
    lines.append("=" * 60)
    logger.info("\n".join(lines))

    if n_conv < n_total:
        failed = [(tb, r.chanblock) for (tb, _), r in np.ndenumerate(results) if not r.converged]
        shown = ", ".join(f"tb{tb}/cb{cb}" for tb, cb in failed[:10])
        more = f" (+{len(failed) - 10} more)" if len(failed) > 10 else ""
        logger.warning(
            f"{len(failed)} block(s) did not converge below {stop_threshold:.1e}: {shown}{more}"
        )
