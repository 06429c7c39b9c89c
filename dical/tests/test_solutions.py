"""
Tests for assembling complete calibration solutions.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from dical.core.baselines import num_baselines
from dical.core.blocks import Chanblock, Timeblock
from dical.core.diagnostics import CalibrationResult
from dical.core.solutions import CalibrationSolutions, IncompleteSolutions
from dical.errors import CalibrationStructureError
from dical.jones import identity_jones, jones_all_nan, jones_any_nan, jones_inverse, jones_partially_nan

from .helpers import first_primes, scaled_identity

OBSID = 1065880128

TIMEBLOCKS = [Timeblock(index=0, range=range(0, 1), start=1065880128.0, end=1065880130.0,
                        average=1065880129.0)]

TILE_XYZ = [(1.0, 2.0, 3.0)]


def chanblocks_except(flagged, total):
    """Unflagged chanblocks out of ``total`` with the given flagged indices."""
    out = []
    for i in range(total):
        if i not in flagged:
            out.append(Chanblock(i, len(out), 150e6 + 1e6 * i))
    return out


def make_incomplete(di_jones, chanblocks, timeblocks=TIMEBLOCKS, weights=None):
    n_tiles = di_jones.shape[1]
    if weights is None:
        weights = np.ones(num_baselines(n_tiles))
    return IncompleteSolutions(
        di_jones=di_jones,
        timeblocks=timeblocks,
        chanblocks=chanblocks,
        baseline_weights=weights,
        max_iterations=50,
        stop_threshold=1e-8,
        min_threshold=1e-4,
    )


def prime_jones(n_timeblocks, n_tiles, n_chanblocks):
    primes = np.array(first_primes(n_timeblocks * n_tiles * n_chanblocks), dtype=np.float64)
    return scaled_identity((n_timeblocks, n_tiles, n_chanblocks), primes.reshape(
        n_timeblocks, n_tiles, n_chanblocks))


class TestIntoCalSols:
    """Test inversion and flag expansion."""

    def test_trivial(self):
        chanblocks = chanblocks_except([], 3)
        di_jones = prime_jones(1, 5, 3)
        complete = make_incomplete(di_jones, chanblocks).into_cal_sols(
            TILE_XYZ * 5, [], [], OBSID)

        assert complete.di_jones.shape == di_jones.shape
        assert not jones_any_nan(complete.di_jones).any()
        assert_allclose(complete.di_jones, jones_inverse(di_jones))
        assert complete.flagged_tiles == []
        assert complete.flagged_chanblocks == []
        assert complete.obsid == OBSID

    def test_first_chanblock_flagged(self):
        chanblocks = chanblocks_except([0], 4)
        di_jones = prime_jones(1, 5, 3)
        complete = make_incomplete(di_jones, chanblocks).into_cal_sols(
            TILE_XYZ * 5, [], [0], OBSID)

        assert complete.di_jones.shape == (1, 5, 4, 2, 2)
        assert jones_all_nan(complete.di_jones[:, :, 0]).all()
        assert not jones_any_nan(complete.di_jones[:, :, 1:]).any()
        assert_allclose(complete.di_jones[:, :, 1:], jones_inverse(di_jones))
        assert complete.flagged_chanblocks == [0]

    def test_last_chanblock_flagged(self):
        chanblocks = chanblocks_except([3], 4)
        di_jones = prime_jones(1, 5, 3)
        complete = make_incomplete(di_jones, chanblocks).into_cal_sols(
            TILE_XYZ * 5, [], [3], OBSID)

        assert jones_all_nan(complete.di_jones[:, :, -1]).all()
        assert not jones_any_nan(complete.di_jones[:, :, :-1]).any()
        assert_allclose(complete.di_jones[:, :, :-1], jones_inverse(di_jones))
        assert complete.flagged_tiles == []
        assert complete.flagged_chanblocks == [3]

    def test_tile_and_chanblock_flagged(self):
        chanblocks = chanblocks_except([1], 4)
        flagged_tiles = [2]
        n_tiles, n_cb = 5, 3
        di_jones = prime_jones(1, n_tiles, n_cb)
        primes = first_primes(n_tiles * n_cb)
        complete = make_incomplete(di_jones, chanblocks).into_cal_sols(
            TILE_XYZ * 6, flagged_tiles, [1], OBSID)

        assert complete.di_jones.shape == (1, 6, 4, 2, 2)
        i_unflagged_tile = 0
        for i_tile in range(6):
            sub = complete.di_jones[0, i_tile]
            if i_tile in flagged_tiles:
                assert jones_all_nan(sub).all()
                continue
            i_unflagged_cb = 0
            for i_chan in range(4):
                if i_chan == 1:
                    assert jones_all_nan(sub[i_chan])
                    continue
                expected = np.eye(2) / primes[i_unflagged_tile * n_cb + i_unflagged_cb]
                assert_allclose(sub[i_chan], expected)
                i_unflagged_cb += 1
            i_unflagged_tile += 1

    def test_scaled_by_unflagged_tile_index(self):
        # 5 solved tiles plus 2 flagged; one of 3 chanblocks flagged
        flagged_tiles = [1, 4]
        chanblocks = chanblocks_except([2], 3)
        n_tiles = 5
        scale = np.arange(1, n_tiles + 1, dtype=np.float64)
        di_jones = scaled_identity((1, n_tiles, 2), scale[None, :, None])
        complete = make_incomplete(di_jones, chanblocks).into_cal_sols(
            TILE_XYZ * 7, flagged_tiles, [2])

        unflagged = [0, 2, 3, 5, 6]
        for i_unflagged, i_tile in enumerate(unflagged):
            for i_chan in (0, 1):
                assert_allclose(complete.di_jones[0, i_tile, i_chan], np.eye(2) / (i_unflagged + 1))
            assert jones_all_nan(complete.di_jones[0, i_tile, 2])
        for i_tile in flagged_tiles:
            assert jones_all_nan(complete.di_jones[:, i_tile]).all()
        assert not jones_partially_nan(complete.di_jones).any()
        complete.check_invariants()

    def test_inverse_round_trip(self):
        rng = np.random.default_rng(3)
        chanblocks = chanblocks_except([1], 3)
        di_jones = identity_jones((2, 4, 2)) + 0.2 * (
            rng.normal(size=(2, 4, 2, 2, 2)) + 1j * rng.normal(size=(2, 4, 2, 2, 2)))
        timeblocks = TIMEBLOCKS + [Timeblock(1, range(1, 2), 1065880130.0, 1065880132.0, 1065880131.0)]
        complete = make_incomplete(di_jones, chanblocks, timeblocks).into_cal_sols(
            TILE_XYZ * 5, [3], [1])

        recovered = jones_inverse(complete.di_jones[:, [0, 1, 2, 4]][:, :, [0, 2]])
        assert_allclose(recovered, di_jones, rtol=1e-10, atol=1e-12)

    def test_small_gain_inverted_not_flagged(self):
        chanblocks = chanblocks_except([], 1)
        di_jones = 1e-16 * identity_jones((1, 3, 1))
        complete = make_incomplete(di_jones, chanblocks).into_cal_sols(TILE_XYZ * 3, [], [])

        assert not jones_any_nan(complete.di_jones).any()
        assert_allclose(complete.di_jones, 1e16 * identity_jones((1, 3, 1)), rtol=1e-14, atol=0)

    def test_singular_gain_is_nan_not_mixed(self):
        chanblocks = chanblocks_except([], 1)
        di_jones = identity_jones((1, 3, 1))
        di_jones[0, 1, 0] = 0.0
        complete = make_incomplete(di_jones, chanblocks).into_cal_sols(TILE_XYZ * 3, [], [])

        assert jones_all_nan(complete.di_jones[0, 1, 0])
        assert not jones_partially_nan(complete.di_jones).any()


class TestMetadata:
    """Test the metadata carried onto complete solutions."""

    def setup_method(self):
        self.chanblocks = chanblocks_except([1], 4)
        self.di_jones = prime_jones(1, 4, 3)
        self.weights = np.arange(1.0, num_baselines(4) + 1)
        self.incomplete = make_incomplete(self.di_jones, self.chanblocks, weights=self.weights)

    def test_timestamps_and_thresholds(self):
        complete = self.incomplete.into_cal_sols(TILE_XYZ * 5, [0], [1], OBSID)

        assert_array_equal(complete.start_timestamps, [1065880128.0])
        assert_array_equal(complete.end_timestamps, [1065880130.0])
        assert_array_equal(complete.average_timestamps, [1065880129.0])
        assert complete.max_iterations == 50
        assert complete.stop_threshold == 1e-8
        assert complete.min_threshold == 1e-4
        assert complete.num_timeblocks == 1
        assert complete.num_tiles == 5
        assert complete.num_chanblocks == 4
        assert complete.unflagged_tiles() == [1, 2, 3, 4]
        assert complete.unflagged_chanblocks() == [0, 2, 3]

    def test_chanblock_freqs(self):
        complete = self.incomplete.into_cal_sols(TILE_XYZ * 5, [0], [1])
        assert_array_equal(complete.chanblock_freqs[[0, 2, 3]], [150e6, 152e6, 153e6])
        assert np.isnan(complete.chanblock_freqs[1])

    def test_baseline_weights_expanded(self):
        complete = self.incomplete.into_cal_sols(TILE_XYZ * 5, [0], [1])
        weights = complete.baseline_weights

        assert weights.shape == (num_baselines(5),)
        # the first four baselines all involve tile 0
        assert np.isnan(weights[:4]).all()
        assert_array_equal(weights[4:], self.weights)

    def test_precisions_expanded(self):
        results = np.empty((1, 3), dtype=object)
        for i, prec in enumerate([1e-9, 2e-9, 3e-9]):
            results[0, i] = CalibrationResult(10, True, prec, 0, self.chanblocks[i].chanblock_index, i)
        complete = self.incomplete.into_cal_sols(TILE_XYZ * 5, [0], [1], calibration_results=results)

        assert_allclose(complete.calibration_results[0, [0, 2, 3]], [1e-9, 2e-9, 3e-9])
        assert np.isnan(complete.calibration_results[0, 1])

    def test_flags_sorted(self):
        incomplete = make_incomplete(prime_jones(1, 3, 3), self.chanblocks)
        complete = incomplete.into_cal_sols(TILE_XYZ * 5, [4, 0, 4], [1])
        assert complete.flagged_tiles == [0, 4]


class TestStructureErrors:
    """Inconsistent counts are rejected."""

    def test_tile_count_mismatch(self):
        incomplete = make_incomplete(prime_jones(1, 5, 3), chanblocks_except([], 3))
        with pytest.raises(CalibrationStructureError):
            incomplete.into_cal_sols(TILE_XYZ * 7, [0], [])

    def test_flagged_tile_out_of_range(self):
        incomplete = make_incomplete(prime_jones(1, 5, 3), chanblocks_except([], 3))
        with pytest.raises(CalibrationStructureError):
            incomplete.into_cal_sols(TILE_XYZ * 6, [6], [])

    def test_flagged_chanblock_also_solved(self):
        incomplete = make_incomplete(prime_jones(1, 5, 3), chanblocks_except([], 3))
        with pytest.raises(CalibrationStructureError):
            incomplete.into_cal_sols(TILE_XYZ * 5, [], [2])

    def test_chanblock_count_mismatch(self):
        incomplete = make_incomplete(prime_jones(1, 5, 3), chanblocks_except([], 2))
        with pytest.raises(CalibrationStructureError):
            incomplete.into_cal_sols(TILE_XYZ * 5, [], [])

    def test_partially_nan_detected(self):
        di_jones = identity_jones((1, 2, 1))
        di_jones[0, 0, 0, 0, 1] = np.nan
        sols = CalibrationSolutions(di_jones=di_jones)
        with pytest.raises(CalibrationStructureError):
            sols.check_invariants()
