"""
DICAL - Direction-Independent CALibration

Solves one 2x2 Jones matrix per tile, per timeblock, per chanblock from
observed and model visibilities, then assembles inverted, flag-expanded
solutions for downstream writers.

Usage:
    from dical import calibrate_timeblocks, SolverConfig
    incomplete, results = calibrate_timeblocks(vis_data, vis_model, timeblocks,
                                               chanblocks, weights, SolverConfig())
    sols = incomplete.into_cal_sols(tile_xyz, flagged_tiles, flagged_chanblocks)
"""

__version__ = "0.1.0"

from .errors import DicalError, CalibrationStructureError, ConfigError
from .config import SolverConfig, load_config, config_to_yaml
from .core import (
    Timeblock,
    Chanblock,
    make_timeblocks,
    make_chanblocks,
    calibrate,
    calibrate_blocks,
    calibrate_timeblocks,
    CalibrationResult,
    IncompleteSolutions,
    CalibrationSolutions,
    setup_logging,
)

__all__ = [
    "__version__",
    "DicalError",
    "CalibrationStructureError",
    "ConfigError",
    "SolverConfig",
    "load_config",
    "config_to_yaml",
    "Timeblock",
    "Chanblock",
    "make_timeblocks",
    "make_chanblocks",
    "calibrate",
    "calibrate_blocks",
    "calibrate_timeblocks",
    "CalibrationResult",
    "IncompleteSolutions",
    "CalibrationSolutions",
    "setup_logging",
]
