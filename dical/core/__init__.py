"""DICAL core: per-block solver, scheduler, assembler, diagnostics."""

from .blocks import Timeblock, Chanblock, make_timeblocks, make_chanblocks, merge_timeblocks
from .baselines import num_baselines, num_tiles_from_num_baselines, baseline_tiles, expand_baseline_weights
from .calibrate import calibrate
from .diagnostics import (
    CalibrationResult,
    format_status,
    converged_grid,
    iterations_grid,
    precision_grid,
    log_convergence_summary,
)
from .solutions import IncompleteSolutions, CalibrationSolutions
from .scheduler import calibrate_blocks, calibrate_timeblocks, retry_failed_chanblocks
from .logging_utils import setup_logging
