import numpy as np
from typing import Dict, List, Sequence, Tuple

# A treated observation is addressed by (unit position, period position) in the treatment matrix
TreatedObservation = Tuple[int, int]


def find_treated_observations(treatment_matrix: np.ndarray, lag: int) -> List[TreatedObservation]:
    """Locate treated observations in a unit x time treatment matrix.

    A treated observation is a cell where treatment switches on: the unit is
    treated (1) at period ``t`` and untreated (0) at ``t - 1``. Only periods
    with a complete lookback window of ``lag`` periods inside the panel qualify.

    Parameters
    ----------
    treatment_matrix : np.ndarray
        Float array of shape (n_units, n_periods); NaN marks missing cells.
    lag : int
        Length of the lookback window (>= 1).

    Returns
    -------
    List[Tuple[int, int]]
        (unit position, period position) pairs ordered by unit, then period.
    """
    n_periods = treatment_matrix.shape[1]
    if lag >= n_periods:
        return []
    current = treatment_matrix[:, lag:]
    previous = treatment_matrix[:, lag - 1:n_periods - 1]
    # NaN compares False, so missing cells never start a treatment spell
    onset = (current == 1) & (previous == 0)
    unit_positions, column_offsets = np.nonzero(onset)
    return [(int(unit), int(column + lag)) for unit, column in zip(unit_positions, column_offsets)]


def _history_matches(window: np.ndarray, history: np.ndarray, match_missing: bool) -> np.ndarray:
    """Boolean mask of rows in ``window`` whose treatment history agrees with ``history``."""
    if match_missing:
        # Missing cells on either side are wildcards
        agree = (window == history) | np.isnan(window) | np.isnan(history)
        return agree.all(axis=1)
    if np.isnan(history).any():
        return np.zeros(window.shape[0], dtype=bool)
    # Any NaN in a candidate row makes the comparison False for that row
    return (window == history).all(axis=1)


def match_treatment_histories(
    treatment_matrix: np.ndarray,
    lag: int,
    lead: Sequence[int],
    match_missing: bool = True,
    forbid_treatment_reversal: bool = False,
    matching: bool = True,
) -> Dict[TreatedObservation, np.ndarray]:
    """Build unrefined matched sets from treatment histories.

    For each treated observation (u, t), a control candidate c != u must be
    untreated at t and have the same treatment values as u over the lag
    window [t - lag, t - 1].

    Parameters
    ----------
    treatment_matrix : np.ndarray
        Float array of shape (n_units, n_periods); NaN marks missing cells.
    lag : int
        Number of lookback periods that must match.
    lead : Sequence[int]
        Lead window offsets (non-negative). Only ``max(lead)`` matters here,
        and only when ``forbid_treatment_reversal`` is set.
    match_missing : bool, default=True
        If True, a missing cell in either unit's history is a wildcard. If
        False, any missing cell in either unit's window disqualifies the pair.
    forbid_treatment_reversal : bool, default=False
        If True, the treated unit must stay treated over [t, t + max(lead)]
        (otherwise the treated observation is dropped) and every control must
        stay untreated over the same window. A window running past the last
        period fails the check.
    matching : bool, default=True
        If False, the history comparison is skipped; the onset definition of a
        treated observation then uses a one-period window.

    Returns
    -------
    Dict[Tuple[int, int], np.ndarray]
        Insertion-ordered mapping from treated observation to the ascending
        array of control unit positions. Empty arrays are kept.
    """
    n_units, n_periods = treatment_matrix.shape
    window_lag = lag if matching else 1
    max_lead = max(lead) if len(lead) else 0

    matched_sets: Dict[TreatedObservation, np.ndarray] = {}
    for unit, period in find_treated_observations(treatment_matrix, window_lag):
        if forbid_treatment_reversal:
            window_end = period + max_lead + 1
            if window_end > n_periods or not np.all(treatment_matrix[unit, period:window_end] == 1):
                continue

        eligible = treatment_matrix[:, period] == 0
        eligible[unit] = False

        if matching:
            eligible &= _history_matches(
                treatment_matrix[:, period - lag:period],
                treatment_matrix[unit, period - lag:period],
                match_missing,
            )

        if forbid_treatment_reversal:
            eligible &= np.all(treatment_matrix[:, period:window_end] == 0, axis=1)

        matched_sets[(unit, period)] = np.flatnonzero(eligible)

    return matched_sets
