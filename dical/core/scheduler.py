"""DICAL Block Scheduler.

Fans the per-block calibrator out over every (timeblock, chanblock) cell.
Cells are independent and each writes only its own ``di_jones[tb, :, cb]``
view, so they are mapped over a thread pool with no locking. The numba
kernels release the GIL, which lets the threads run concurrently.
"""

import os
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional, Sequence, Tuple

import numpy as np
from rich.progress import Progress, BarColumn, TextColumn, TimeElapsedColumn

from ..config import SolverConfig
from ..jones.algebra import identity_jones
from .baselines import num_baselines, num_tiles_from_num_baselines
from .blocks import Chanblock, Timeblock, merge_timeblocks, validate_chanblocks
from .calibrate import calibrate
from .diagnostics import CalibrationResult, converged_grid, format_status, log_convergence_summary
from ..errors import CalibrationStructureError
from .memory import check_memory
from .solutions import IncompleteSolutions

logger = logging.getLogger("dical")

Cell = Tuple[int, Timeblock, Chanblock]


def get_n_workers(n_tasks: int, n_workers: Optional[int] = None) -> int:
    """Worker threads for ``n_tasks`` cells.

    ``None`` auto-detects ``min(cpu_count, 8)``; never more than the tasks.
    """
    if n_workers is None:
        n_workers = min(os.cpu_count() or 1, 8)
    return max(1, min(n_tasks, n_workers))


def validate_block_inputs(vis_data, vis_model, di_jones, timeblocks, chanblocks, baseline_weights):
    """Raise CalibrationStructureError unless every array and block agrees."""
    if vis_data.shape != vis_model.shape:
        raise CalibrationStructureError(
            f"Data shape {vis_data.shape} does not match model shape {vis_model.shape}"
        )
    if vis_data.ndim != 5 or vis_data.shape[-2:] != (2, 2):
        raise CalibrationStructureError(
            "Visibilities must have shape (n_time, n_baselines, n_chanblocks, 2, 2), "
            f"got {vis_data.shape}"
        )
    n_time, n_bl, n_cb = vis_data.shape[:3]

    expected = (len(timeblocks), di_jones.shape[1] if di_jones.ndim == 5 else -1, len(chanblocks), 2, 2)
    if di_jones.shape != expected:
        raise CalibrationStructureError(
            f"di_jones shape {di_jones.shape} does not match {len(timeblocks)} timeblocks "
            f"and {len(chanblocks)} chanblocks"
        )
    if di_jones.dtype != np.complex128:
        raise CalibrationStructureError(f"di_jones must be complex128, got {di_jones.dtype}")

    n_tiles = di_jones.shape[1]
    if num_baselines(n_tiles) != n_bl:
        raise CalibrationStructureError(
            f"{n_tiles} tiles need {num_baselines(n_tiles)} baselines, visibilities have {n_bl}"
        )
    if baseline_weights.shape != (n_bl,):
        raise CalibrationStructureError(
            f"Expected {n_bl} baseline weights, got shape {baseline_weights.shape}"
        )
    if not np.all(np.isfinite(baseline_weights)) or np.any(baseline_weights < 0):
        raise CalibrationStructureError("Baseline weights must be finite and non-negative")

    if len(chanblocks) != n_cb:
        raise CalibrationStructureError(
            f"{len(chanblocks)} chanblocks given, visibilities have {n_cb}"
        )
    validate_chanblocks(chanblocks)

    for tb in timeblocks:
        r = tb.range
        if r.step != 1 or len(r) == 0 or r.start < 0 or r.stop > n_time:
            raise CalibrationStructureError(
                f"Timeblock {tb.index} covers timesteps {r}, visibilities have {n_time}"
            )


def _run_cells(
    cells: Sequence[Cell],
    solve,
    results: np.ndarray,
    n_workers: Optional[int],
    progress: bool,
    description: str,
    on_result=None,
) -> None:
    """Map ``solve`` over cells, storing each result at its grid slot."""
    n_workers = get_n_workers(len(cells), n_workers)
    if not cells:
        return

    bar = None
    if progress:
        bar = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("({task.completed}/{task.total})"),
            TimeElapsedColumn(),
        )
        task = bar.add_task(description, total=len(cells))
        bar.start()

    def finish(cell, result):
        i_tb, _, cb = cell
        results[i_tb, cb.unflagged_index] = result
        if on_result is not None:
            on_result(result)
        if bar is not None:
            bar.advance(task)

    try:
        if n_workers == 1:
            for cell in cells:
                finish(cell, solve(*cell))
        else:
            with ThreadPoolExecutor(max_workers=n_workers) as executor:
                futures = {executor.submit(solve, *cell): cell for cell in cells}
                for future in as_completed(futures):
                    finish(futures[future], future.result())
    finally:
        if bar is not None:
            bar.stop()


def calibrate_blocks(
    vis_data: np.ndarray,
    vis_model: np.ndarray,
    di_jones: np.ndarray,
    timeblocks: Sequence[Timeblock],
    chanblocks: Sequence[Chanblock],
    baseline_weights: np.ndarray,
    max_iterations: int,
    stop_threshold: float,
    min_threshold: float,
    n_workers: Optional[int] = None,
    progress: bool = False,
    print_convergence_messages: bool = False,
    cells: Optional[Sequence[Tuple[int, int]]] = None,
    results: Optional[np.ndarray] = None,
    description: str = "Calibrating",
) -> np.ndarray:
    """Calibrate every (timeblock, chanblock) cell in place.

    Parameters
    ----------
    vis_data, vis_model : ndarray (n_time, n_bl, n_chanblocks, 2, 2) complex128
        Visibilities averaged to chanblock resolution; the chanblock axis
        holds unflagged chanblocks only.
    di_jones : ndarray (n_timeblocks, n_tiles, n_chanblocks, 2, 2) complex128
        Initial guesses, overwritten with the solutions.
    timeblocks : sequence of Timeblock
        ``di_jones[i]`` belongs to ``timeblocks[i]``.
    chanblocks : sequence of Chanblock
        Unflagged chanblocks in order.
    baseline_weights : ndarray (n_bl,) float64
    max_iterations, stop_threshold, min_threshold
        Passed to :func:`dical.core.calibrate.calibrate`.
    n_workers : int, optional
        Thread count; None auto-detects, 1 runs serially.
    progress : bool
        Show a rich progress bar.
    print_convergence_messages : bool
        Log a status line per cell.
    cells : sequence of (i_timeblock, unflagged_index), optional
        Only calibrate these cells; the rest of ``results`` is left alone.
    results : ndarray of CalibrationResult, optional
        Grid to update; a new one is allocated when omitted.

    Returns
    -------
    results : ndarray (n_timeblocks, n_chanblocks) of CalibrationResult
    """
    vis_data = np.asarray(vis_data, dtype=np.complex128)
    vis_model = np.asarray(vis_model, dtype=np.complex128)
    baseline_weights = np.asarray(baseline_weights, dtype=np.float64)
    validate_block_inputs(vis_data, vis_model, di_jones, timeblocks, chanblocks, baseline_weights)

    if results is None:
        results = np.empty((len(timeblocks), len(chanblocks)), dtype=object)
    if cells is None:
        todo = [(i_tb, tb, cb) for i_tb, tb in enumerate(timeblocks) for cb in chanblocks]
    else:
        todo = [(i_tb, timeblocks[i_tb], chanblocks[i_cb]) for i_tb, i_cb in cells]

    def solve(i_tb: int, tb: Timeblock, cb: Chanblock) -> CalibrationResult:
        times = slice(tb.range.start, tb.range.stop)
        return calibrate(
            vis_data[times, :, cb.unflagged_index],
            vis_model[times, :, cb.unflagged_index],
            di_jones[i_tb, :, cb.unflagged_index],
            baseline_weights,
            max_iterations,
            stop_threshold,
            min_threshold,
            chanblock=cb.chanblock_index,
            i_chanblock=cb.unflagged_index,
        )

    on_result = None
    if print_convergence_messages:
        def on_result(result):
            logger.info(format_status(result, stop_threshold, min_threshold))

    _run_cells(todo, solve, results, n_workers, progress, description, on_result)
    return results


def _retry_pairs(converged: np.ndarray) -> List[Tuple[Optional[int], Optional[int]]]:
    """Converged neighbours (left, right) around each run of failures."""
    pairs = []
    left = None
    in_failures = False
    for i, ok in enumerate(converged):
        if ok:
            if in_failures:
                pairs.append((left, i))
                in_failures = False
            left = i
        else:
            in_failures = True
    if in_failures and left is not None:
        pairs.append((left, None))
    return pairs


def _seed_from_neighbours(di_jones_tb: np.ndarray, converged: np.ndarray) -> None:
    """Overwrite failed chanblocks with a linear blend of converged neighbours.

    ``di_jones_tb`` has shape (n_tiles, n_chanblocks, 2, 2).
    """
    n_cb = di_jones_tb.shape[1]
    for left, right in _retry_pairs(converged):
        if left is not None and right is not None:
            for i in range(left + 1, right):
                w_left = (right - i) / (right - left)
                w_right = (i - left) / (right - left)
                di_jones_tb[:, i] = w_left * di_jones_tb[:, left] + w_right * di_jones_tb[:, right]
        elif left is not None:
            di_jones_tb[:, left + 1:n_cb] = di_jones_tb[:, left:left + 1]
        else:
            di_jones_tb[:, :right] = di_jones_tb[:, right:right + 1]


def retry_failed_chanblocks(
    vis_data, vis_model, di_jones, timeblocks, chanblocks, baseline_weights, results,
    max_iterations, stop_threshold, min_threshold, n_workers=None, progress=False,
    print_convergence_messages=False,
) -> int:
    """Re-solve failed chanblocks seeded from converged neighbours.

    Repeats for each timeblock while a round converges at least one more
    chanblock. Returns the number of chanblocks recovered.
    """
    recovered = 0
    for i_tb in range(len(timeblocks)):
        round_no = 0
        while True:
            converged = converged_grid(results[i_tb])
            n_conv = int(converged.sum())
            if n_conv == 0 or n_conv == len(chanblocks):
                break
            round_no += 1
            logger.info(f"Re-calibrating failed chanblocks of timeblock {i_tb + 1} (round {round_no})")
            _seed_from_neighbours(di_jones[i_tb], converged)
            failed = [(i_tb, i_cb) for i_cb in np.flatnonzero(~converged)]
            calibrate_blocks(
                vis_data, vis_model, di_jones, timeblocks, chanblocks, baseline_weights,
                max_iterations, stop_threshold, min_threshold,
                n_workers=n_workers, progress=progress,
                print_convergence_messages=print_convergence_messages,
                cells=failed, results=results,
                description=f"Retrying timeblock {i_tb + 1}",
            )
            new_conv = int(converged_grid(results[i_tb]).sum()) - n_conv
            recovered += new_conv
            if new_conv == 0:
                break
    return recovered


def calibrate_timeblocks(
    vis_data: np.ndarray,
    vis_model: np.ndarray,
    timeblocks: Sequence[Timeblock],
    chanblocks: Sequence[Chanblock],
    baseline_weights: np.ndarray,
    config: Optional[SolverConfig] = None,
) -> Tuple[IncompleteSolutions, np.ndarray]:
    """Solve every timeblock and chanblock from identity initial guesses.

    Parameters
    ----------
    vis_data, vis_model : ndarray (n_time, n_bl, n_chanblocks, 2, 2) complex128
    timeblocks : sequence of Timeblock
    chanblocks : sequence of Chanblock
        Unflagged chanblocks only.
    baseline_weights : ndarray (n_bl,) float64
    config : SolverConfig, optional
        Defaults to ``SolverConfig()``.

    Returns
    -------
    incomplete : IncompleteSolutions
    results : ndarray (n_timeblocks, n_chanblocks) of CalibrationResult
    """
    config = config or SolverConfig()
    config.validate()
    vis_data = np.asarray(vis_data, dtype=np.complex128)
    vis_model = np.asarray(vis_model, dtype=np.complex128)
    baseline_weights = np.asarray(baseline_weights, dtype=np.float64)
    timeblocks = list(timeblocks)
    chanblocks = list(chanblocks)
    if vis_data.ndim != 5:
        raise CalibrationStructureError(
            "Visibilities must have shape (n_time, n_baselines, n_chanblocks, 2, 2), "
            f"got {vis_data.shape}"
        )
    if not timeblocks:
        raise CalibrationStructureError("At least one timeblock is required")

    n_tiles = num_tiles_from_num_baselines(vis_data.shape[1])
    check_memory(
        n_timesteps=vis_data.shape[0], n_baselines=vis_data.shape[1],
        n_chanblocks=len(chanblocks), n_timeblocks=len(timeblocks), n_tiles=n_tiles,
        memory_limit_gb=config.memory_limit_gb,
    )
    di_jones = identity_jones((len(timeblocks), n_tiles, len(chanblocks)))

    solver_kwargs = dict(
        max_iterations=config.max_iterations,
        stop_threshold=config.stop_threshold,
        min_threshold=config.min_threshold,
        n_workers=config.n_workers,
        progress=config.progress_bar,
        print_convergence_messages=config.convergence_messages,
    )

    logger.info(
        f"Calibrating {len(timeblocks)} timeblock(s) x {len(chanblocks)} chanblock(s), "
        f"{n_tiles} tiles, {vis_data.shape[1]} baselines"
    )

    if config.initial_guess_from_all_timesteps and len(timeblocks) > 1:
        merged = merge_timeblocks(timeblocks)
        guess = identity_jones((1, n_tiles, len(chanblocks)))
        guess_results = calibrate_blocks(
            vis_data, vis_model, guess, [merged], chanblocks, baseline_weights,
            description="Calibrating all timeblocks together", **solver_kwargs,
        )
        n_conv = int(converged_grid(guess_results).sum())
        logger.info(f"All timeblocks: {n_conv}/{len(chanblocks)} chanblocks converged")
        di_jones[:] = guess

    results = calibrate_blocks(
        vis_data, vis_model, di_jones, timeblocks, chanblocks, baseline_weights,
        **solver_kwargs,
    )

    if config.retry_failed:
        recovered = retry_failed_chanblocks(
            vis_data, vis_model, di_jones, timeblocks, chanblocks, baseline_weights,
            results, **solver_kwargs,
        )
        if recovered:
            logger.info(f"Retries recovered {recovered} chanblock(s)")

    log_convergence_summary(results, config.stop_threshold, config.min_threshold)

    incomplete = IncompleteSolutions(
        di_jones=di_jones,
        timeblocks=timeblocks,
        chanblocks=chanblocks,
        baseline_weights=baseline_weights,
        max_iterations=config.max_iterations,
        stop_threshold=config.stop_threshold,
        min_threshold=config.min_threshold,
    )
    return incomplete, results
