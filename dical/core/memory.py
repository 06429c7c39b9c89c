"""DICAL Memory Prediction.

Estimates the memory a calibration run needs before any solving starts
and warns when it will not fit.
"""

import logging

import psutil

logger = logging.getLogger("dical")

GB = 1024**3
JONES_BYTES = 4 * 16  # 2x2 complex128


def get_available_ram_gb() -> float:
    """Get available system RAM in GB."""
    return psutil.virtual_memory().available / GB


def get_total_ram_gb() -> float:
    """Get total system RAM in GB."""
    return psutil.virtual_memory().total / GB


def estimate_calibration_memory_gb(
    n_timesteps: int, n_baselines: int, n_chanblocks: int, n_timeblocks: int, n_tiles: int
) -> float:
    """Estimate memory for one calibration run in GB.

    Accounts for: vis_data, vis_model, di_jones (incomplete and one
    complete copy), per-block normal-equation accumulators.
    """
    vis_bytes = 2 * n_timesteps * n_baselines * n_chanblocks * JONES_BYTES
    sol_bytes = 2 * n_timeblocks * n_tiles * n_chanblocks * JONES_BYTES
    # top, bot per worker thread; at most 8 threads by default
    accum_bytes = 8 * 2 * n_tiles * JONES_BYTES
    return (vis_bytes + sol_bytes + accum_bytes) / GB


def check_memory(
    n_timesteps: int,
    n_baselines: int,
    n_chanblocks: int,
    n_timeblocks: int,
    n_tiles: int,
    memory_limit_gb: float = 0.0,
) -> float:
    """Log the estimate; warn if it exceeds the limit (or available RAM).

    Parameters
    ----------
    memory_limit_gb : float
        0 means use available system RAM.

    Returns
    -------
    float
        Estimated GB.
    """
    needed = estimate_calibration_memory_gb(
        n_timesteps, n_baselines, n_chanblocks, n_timeblocks, n_tiles
    )
    limit = memory_limit_gb if memory_limit_gb > 0 else get_available_ram_gb()
    logger.debug(
        f"Memory: ~{needed:.3f} GB needed, {limit:.1f} GB "
        f"{'limit' if memory_limit_gb > 0 else 'available'}"
    )
    if needed > limit:
        logger.warning(
            f"Calibration needs ~{needed:.2f} GB but only {limit:.2f} GB is "
            f"{'allowed' if memory_limit_gb > 0 else 'available'}"
        )
    return needed
