import numpy as np
import pytest

from panelmatch.utils.historyutils import find_treated_observations, match_treatment_histories

nan = np.nan


@pytest.fixture
def example_matrix() -> np.ndarray:
    # Units 1..3 (rows) over times 1..5 (columns); unit 1 switches on at t=3
    return np.array([
        [0, 0, 1, 1, 1],
        [0, 0, 0, 0, 0],
        [0, 0, 0, 0, 0],
    ], dtype=float)


# ----- find_treated_observations -----

def test_find_treated_observations_onsets_only():
    D = np.array([
        [0, 0, 1, 1, 0, 1],
        [1, 1, 1, 1, 1, 1],
        [0, 0, 0, 0, 0, 0],
    ], dtype=float)
    assert find_treated_observations(D, lag=1) == [(0, 2), (0, 5)]


def test_find_treated_observations_requires_full_lookback():
    D = np.array([[0, 1, 1, 0, 1]], dtype=float)
    assert find_treated_observations(D, lag=1) == [(0, 1), (0, 4)]
    assert find_treated_observations(D, lag=2) == [(0, 4)]
    assert find_treated_observations(D, lag=5) == []


def test_missing_previous_period_is_not_an_onset():
    D = np.array([[0, nan, 1, 1]])
    assert find_treated_observations(D, lag=1) == []


def test_observations_ordered_by_unit_then_period():
    D = np.array([
        [0, 0, 0, 1],
        [0, 1, 0, 1],
    ], dtype=float)
    assert find_treated_observations(D, lag=1) == [(0, 3), (1, 1), (1, 3)]


# ----- match_treatment_histories -----

def test_example_no_missing(example_matrix):
    matched = match_treatment_histories(example_matrix, lag=2, lead=[0], match_missing=False)
    assert list(matched) == [(0, 2)]
    np.testing.assert_array_equal(matched[(0, 2)], [1, 2])


def test_example_missing_history_cell(example_matrix):
    example_matrix[2, 0] = nan

    strict = match_treatment_histories(example_matrix, lag=2, lead=[0], match_missing=False)
    np.testing.assert_array_equal(strict[(0, 2)], [1])

    wildcard = match_treatment_histories(example_matrix, lag=2, lead=[0], match_missing=True)
    np.testing.assert_array_equal(wildcard[(0, 2)], [1, 2])


def test_treated_unit_missing_history():
    D = np.array([
        [nan, 0, 1],
        [0, 0, 0],
        [1, 0, 0],
    ])
    strict = match_treatment_histories(D, lag=2, lead=[0], match_missing=False)
    assert strict[(0, 2)].size == 0

    wildcard = match_treatment_histories(D, lag=2, lead=[0], match_missing=True)
    np.testing.assert_array_equal(wildcard[(0, 2)], [1, 2])


def test_controls_must_be_untreated_and_share_history():
    D = np.array([
        [0, 0, 1],
        [0, 0, 1],  # treated at t
        [1, 0, 0],  # different history
        [0, 0, 0],
        [0, 0, nan],  # unknown status at t
    ], dtype=float)
    matched = match_treatment_histories(D, lag=2, lead=[0])
    np.testing.assert_array_equal(matched[(0, 2)], [3])
    np.testing.assert_array_equal(matched[(1, 2)], [3])


def test_empty_matched_sets_are_kept():
    D = np.array([
        [0, 1],
        [1, 1],
    ], dtype=float)
    matched = match_treatment_histories(D, lag=1, lead=[0])
    assert list(matched) == [(0, 1)]
    assert matched[(0, 1)].size == 0


def test_forbid_treatment_reversal():
    D = np.array([
        [0, 0, 1, 1, 1],
        [0, 0, 1, 0, 0],  # reverts: dropped as a treated observation
        [0, 0, 0, 0, 0],
        [0, 0, 0, 1, 1],  # treated inside the lead window: not a control
    ], dtype=float)
    allowed = match_treatment_histories(D, lag=2, lead=[0, 1], forbid_treatment_reversal=False)
    assert list(allowed)[:2] == [(0, 2), (1, 2)]
    np.testing.assert_array_equal(allowed[(0, 2)], [2, 3])

    forbidden = match_treatment_histories(D, lag=2, lead=[0, 1], forbid_treatment_reversal=True)
    assert (1, 2) not in forbidden
    np.testing.assert_array_equal(forbidden[(0, 2)], [2])


def test_forbid_treatment_reversal_window_past_panel_end():
    D = np.array([
        [0, 0, 0, 1],
        [0, 0, 0, 0],
    ], dtype=float)
    assert match_treatment_histories(D, lag=2, lead=[0, 1], forbid_treatment_reversal=True) == {}
    kept = match_treatment_histories(D, lag=2, lead=[0], forbid_treatment_reversal=True)
    np.testing.assert_array_equal(kept[(0, 3)], [1])


def test_matching_disabled_skips_history_comparison():
    D = np.array([
        [0, 1, 1, 1],
        [1, 0, 0, 0],
        [0, 0, 0, 0],
    ], dtype=float)
    assert match_treatment_histories(D, lag=3, lead=[0]) == {}

    unmatched = match_treatment_histories(D, lag=3, lead=[0], matching=False)
    assert list(unmatched) == [(0, 1)]
    np.testing.assert_array_equal(unmatched[(0, 1)], [1, 2])


def test_matching_disabled_still_applies_reversal_constraint():
    D = np.array([
        [0, 1, 1],
        [0, 0, 1],
        [0, 0, 0],
    ], dtype=float)
    matched = match_treatment_histories(D, lag=1, lead=[0, 1], matching=False, forbid_treatment_reversal=True)
    np.testing.assert_array_equal(matched[(0, 1)], [2])
