"""DICAL Timeblocks and Chanblocks.

A timeblock is a run of consecutive timesteps that share one gain solution;
a chanblock is the frequency equivalent. Both are built once by the caller
from its averaging policy and are read-only afterwards.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import numpy as np

from ..errors import CalibrationStructureError


@dataclass(frozen=True)
class Timeblock:
    """One averaged time interval.

    Attributes
    ----------
    index : int
        Position of this timeblock among all timeblocks.
    range : range
        Timestep indices (into the visibility time axis) it covers.
    start, end, average : float
        First, last and average timestamp [GPS s].
    """
    index: int
    range: range
    start: float
    end: float
    average: float

    @property
    def num_timesteps(self) -> int:
        return len(self.range)


@dataclass(frozen=True)
class Chanblock:
    """One averaged frequency interval.

    ``chanblock_index`` counts every chanblock, flagged or not;
    ``unflagged_index`` counts only unflagged ones and addresses the
    chanblock axis of the visibilities and incomplete solutions.
    """
    chanblock_index: int
    unflagged_index: int
    freq: float


def make_timeblocks(timestamps: Sequence[float], time_average_factor: int = 1) -> List[Timeblock]:
    """Group consecutive timesteps into timeblocks of ``time_average_factor``.

    The last timeblock holds whatever timesteps remain.
    """
    timestamps = np.asarray(timestamps, dtype=np.float64)
    if time_average_factor < 1:
        raise CalibrationStructureError(
            f"time_average_factor must be >= 1, got {time_average_factor}"
        )
    timeblocks = []
    for index, start in enumerate(range(0, len(timestamps), time_average_factor)):
        stop = min(start + time_average_factor, len(timestamps))
        times = timestamps[start:stop]
        timeblocks.append(Timeblock(
            index=index,
            range=range(start, stop),
            start=float(times[0]),
            end=float(times[-1]),
            average=float(times.mean()),
        ))
    return timeblocks


def make_chanblocks(freqs: Sequence[float],
                    flagged_chanblock_indices: Optional[Iterable[int]] = None) -> List[Chanblock]:
    """Build unflagged chanblocks from all chanblock frequencies.

    Parameters
    ----------
    freqs : sequence of float
        Centre frequency of every chanblock, flagged ones included [Hz].
    flagged_chanblock_indices : iterable of int, optional

    Returns
    -------
    list of Chanblock
        Only the unflagged chanblocks, in order.
    """
    flagged = set(flagged_chanblock_indices or ())
    bad = [i for i in flagged if not 0 <= i < len(freqs)]
    if bad:
        raise CalibrationStructureError(
            f"Flagged chanblock indices {sorted(bad)} outside 0..{len(freqs) - 1}"
        )
    chanblocks = []
    for i_cb, freq in enumerate(freqs):
        if i_cb in flagged:
            continue
        chanblocks.append(Chanblock(i_cb, len(chanblocks), float(freq)))
    return chanblocks


def merge_timeblocks(timeblocks: Sequence[Timeblock]) -> Timeblock:
    """A single timeblock spanning every timestep of ``timeblocks``."""
    if not timeblocks:
        raise CalibrationStructureError("Cannot merge an empty list of timeblocks")
    first = min(tb.range.start for tb in timeblocks)
    last = max(tb.range.stop for tb in timeblocks)
    n = sum(tb.num_timesteps for tb in timeblocks)
    average = sum(tb.average * tb.num_timesteps for tb in timeblocks) / max(n, 1)
    return Timeblock(
        index=0,
        range=range(first, last),
        start=min(tb.start for tb in timeblocks),
        end=max(tb.end for tb in timeblocks),
        average=average,
    )


def validate_chanblocks(chanblocks: Sequence[Chanblock]) -> None:
    """Unflagged indices must be 0..n-1 and chanblock indices strictly increasing."""
    prev = -1
    for i, cb in enumerate(chanblocks):
        if cb.unflagged_index != i:
            raise CalibrationStructureError(
                f"Chanblock {cb.chanblock_index} has unflagged index "
                f"{cb.unflagged_index}, expected {i}"
            )
        if cb.chanblock_index <= prev:
            raise CalibrationStructureError(
                "Chanblock indices must be strictly increasing "
                f"({prev} followed by {cb.chanblock_index})"
            )
        prev = cb.chanblock_index
