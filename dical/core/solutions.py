"""DICAL Solution Assembler.

The solver works on a compact array indexed by unflagged tile and unflagged
chanblock and fits forward gains. ``IncompleteSolutions.into_cal_sols``
expands that array to every physical tile and chanblock, inverts the gains
so they can be applied to data, and fills everything flagged with the
all-NaN sentinel.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

import numpy as np

from ..jones.algebra import jones_inverse, jones_partially_nan, nan_jones
from .baselines import expand_baseline_weights
from .blocks import Chanblock, Timeblock, validate_chanblocks
from .diagnostics import precision_grid
from ..errors import CalibrationStructureError

logger = logging.getLogger("dical")


@dataclass
class CalibrationSolutions:
    """Complete, physically indexed calibration solutions.

    Attributes
    ----------
    di_jones : ndarray (n_timeblocks, n_tiles, n_chanblocks, 2, 2) complex128
        Inverse gains; all-NaN for flagged tiles and chanblocks.
    flagged_tiles : list of int
    flagged_chanblocks : list of int
    chanblock_freqs : ndarray (n_chanblocks,) float64
        NaN for flagged chanblocks.
    obsid : int, optional
    start_timestamps, end_timestamps, average_timestamps : ndarray (n_timeblocks,)
        GPS seconds.
    max_iterations, stop_threshold, min_threshold
        Solver settings that produced these solutions.
    calibration_results : ndarray (n_timeblocks, n_chanblocks) float64, optional
        Final precision per block; NaN for flagged chanblocks.
    baseline_weights : ndarray (n_tiles * (n_tiles - 1) / 2,) float64, optional
        NaN for baselines with a flagged tile.
    """
    di_jones: np.ndarray
    flagged_tiles: List[int] = field(default_factory=list)
    flagged_chanblocks: List[int] = field(default_factory=list)
    chanblock_freqs: Optional[np.ndarray] = None
    obsid: Optional[int] = None
    start_timestamps: Optional[np.ndarray] = None
    end_timestamps: Optional[np.ndarray] = None
    average_timestamps: Optional[np.ndarray] = None
    max_iterations: Optional[int] = None
    stop_threshold: Optional[float] = None
    min_threshold: Optional[float] = None
    calibration_results: Optional[np.ndarray] = None
    baseline_weights: Optional[np.ndarray] = None

    @property
    def num_timeblocks(self) -> int:
        return self.di_jones.shape[0]

    @property
    def num_tiles(self) -> int:
        return self.di_jones.shape[1]

    @property
    def num_chanblocks(self) -> int:
        return self.di_jones.shape[2]

    def unflagged_tiles(self) -> List[int]:
        flagged = set(self.flagged_tiles)
        return [i for i in range(self.num_tiles) if i not in flagged]

    def unflagged_chanblocks(self) -> List[int]:
        flagged = set(self.flagged_chanblocks)
        return [i for i in range(self.num_chanblocks) if i not in flagged]

    def check_invariants(self) -> None:
        """Raise if any Jones matrix mixes NaN and finite elements."""
        mixed = jones_partially_nan(self.di_jones)
        if mixed.any():
            tb, tile, cb = np.argwhere(mixed)[0]
            raise CalibrationStructureError(
                f"{int(mixed.sum())} partially NaN Jones matrices, first at "
                f"timeblock {tb}, tile {tile}, chanblock {cb}"
            )


@dataclass
class IncompleteSolutions:
    """Solver output indexed by unflagged tile and unflagged chanblock.

    ``di_jones`` holds forward gains with shape
    (n_timeblocks, n_unflagged_tiles, n_unflagged_chanblocks, 2, 2).
    """
    di_jones: np.ndarray
    timeblocks: Sequence[Timeblock]
    chanblocks: Sequence[Chanblock]
    baseline_weights: np.ndarray
    max_iterations: int
    stop_threshold: float
    min_threshold: float

    def into_cal_sols(
        self,
        all_tile_positions: Sequence,
        flagged_tiles: Iterable[int],
        flagged_chanblock_indices: Iterable[int],
        obsid: Optional[int] = None,
        calibration_results: Optional[np.ndarray] = None,
    ) -> CalibrationSolutions:
        """Expand to physical indices and invert.

        Parameters
        ----------
        all_tile_positions : sequence
            One entry per physical tile, flagged tiles included; only its
            length is used.
        flagged_tiles : iterable of int
            Physical tile indices that were not solved.
        flagged_chanblock_indices : iterable of int
            Chanblock indices that were not solved.
        obsid : int, optional
        calibration_results : ndarray (n_timeblocks, n_unflagged_chanblocks), optional
            Result grid from the scheduler; stored as final precisions.

        Returns
        -------
        CalibrationSolutions
        """
        n_timeblocks, n_unflagged_tiles, n_unflagged_cb = self.di_jones.shape[:3]
        total_num_tiles = len(all_tile_positions)
        flagged_tiles = sorted(set(int(t) for t in flagged_tiles))
        flagged_chanblocks = sorted(set(int(c) for c in flagged_chanblock_indices))

        if any(t < 0 or t >= total_num_tiles for t in flagged_tiles):
            raise CalibrationStructureError(
                f"Flagged tiles {flagged_tiles} outside 0..{total_num_tiles - 1}"
            )
        if total_num_tiles - len(flagged_tiles) != n_unflagged_tiles:
            raise CalibrationStructureError(
                f"{total_num_tiles} tiles with {len(flagged_tiles)} flagged leaves "
                f"{total_num_tiles - len(flagged_tiles)}, but di_jones has {n_unflagged_tiles}"
            )
        if len(self.chanblocks) != n_unflagged_cb:
            raise CalibrationStructureError(
                f"{len(self.chanblocks)} chanblocks, but di_jones has {n_unflagged_cb}"
            )
        if len(self.timeblocks) != n_timeblocks:
            raise CalibrationStructureError(
                f"{len(self.timeblocks)} timeblocks, but di_jones has {n_timeblocks}"
            )

        validate_chanblocks(self.chanblocks)
        flagged_set = set(flagged_chanblocks)
        if any(cb.chanblock_index in flagged_set for cb in self.chanblocks):
            raise CalibrationStructureError(
                "A solved chanblock is also listed as flagged"
            )
        total_num_chanblocks = len(self.chanblocks) + len(flagged_chanblocks)
        if any(c < 0 or c >= total_num_chanblocks for c in flagged_chanblocks) or any(
            cb.chanblock_index >= total_num_chanblocks for cb in self.chanblocks
        ):
            raise CalibrationStructureError(
                f"Chanblock indices do not cover 0..{total_num_chanblocks - 1} exactly once"
            )

        tile_flags = np.zeros(total_num_tiles, dtype=bool)
        tile_flags[flagged_tiles] = True
        unflagged_tiles = np.flatnonzero(~tile_flags)
        # unflagged_index i lives at chanblock_index chans[i]
        chans = np.array([cb.chanblock_index for cb in self.chanblocks], dtype=np.int64)

        out = nan_jones((n_timeblocks, total_num_tiles, total_num_chanblocks))
        out[:, unflagged_tiles[:, None], chans[None, :]] = jones_inverse(self.di_jones)

        chanblock_freqs = np.full(total_num_chanblocks, np.nan)
        chanblock_freqs[chans] = [cb.freq for cb in self.chanblocks]

        precisions = None
        if calibration_results is not None:
            precisions = np.full((n_timeblocks, total_num_chanblocks), np.nan)
            grid = np.asarray(calibration_results)
            if grid.dtype == object:
                grid = precision_grid(grid)
            if grid.shape != (n_timeblocks, n_unflagged_cb):
                raise CalibrationStructureError(
                    f"Calibration results shape {grid.shape} does not match "
                    f"({n_timeblocks}, {n_unflagged_cb})"
                )
            precisions[:, chans] = grid

        sols = CalibrationSolutions(
            di_jones=out,
            flagged_tiles=flagged_tiles,
            flagged_chanblocks=flagged_chanblocks,
            chanblock_freqs=chanblock_freqs,
            obsid=obsid,
            start_timestamps=np.array([tb.start for tb in self.timeblocks], dtype=np.float64),
            end_timestamps=np.array([tb.end for tb in self.timeblocks], dtype=np.float64),
            average_timestamps=np.array([tb.average for tb in self.timeblocks], dtype=np.float64),
            max_iterations=self.max_iterations,
            stop_threshold=self.stop_threshold,
            min_threshold=self.min_threshold,
            calibration_results=precisions,
            baseline_weights=expand_baseline_weights(
                self.baseline_weights, total_num_tiles, flagged_tiles
            ),
        )
        logger.debug(
            f"Assembled solutions: {n_timeblocks} timeblocks, {total_num_tiles} tiles "
            f"({len(flagged_tiles)} flagged), {total_num_chanblocks} chanblocks "
            f"({len(flagged_chanblocks)} flagged)"
        )
        return sols
