import numpy as np
import pandas as pd
from typing import Dict, List, Mapping, Sequence, Tuple

from panelmatch.exceptions import PanelMatchConfigError
from panelmatch.utils.datautils import PanelData
from panelmatch.utils.historyutils import TreatedObservation
from panelmatch.utils.refineutils import Refiner

QOI_ATT = "att"
QOI_ATC = "atc"
QOI_ATE = "ate"
VALID_QOIS = (QOI_ATT, QOI_ATC, QOI_ATE)


def qoi_branches(qoi: str) -> List[Tuple[str, bool]]:
    """Matching runs needed for a quantity of interest.

    Returns
    -------
    List[Tuple[str, bool]]
        (result key, flip treatment) pairs. ``att`` runs on the panel as given,
        ``atc`` on the panel with treatment inverted, and ``ate`` runs both
        independently.
    """
    if qoi == QOI_ATT:
        return [(QOI_ATT, False)]
    if qoi == QOI_ATC:
        return [(QOI_ATC, True)]
    if qoi == QOI_ATE:
        return [(QOI_ATT, False), (QOI_ATC, True)]
    raise PanelMatchConfigError(f"Please choose a valid qoi; got '{qoi}', expected one of {list(VALID_QOIS)}.")


def encode_exact_match_values(panel: PanelData, columns: Sequence[str]) -> np.ndarray:
    """Integer-code exact-match columns into a (units, periods, columns) float array.

    Each column is factorized so that any value type can be compared; missing
    values become NaN and never match.
    """
    coded = np.empty((len(panel.frame), len(columns)), dtype=float)
    for position, column in enumerate(columns):
        codes, _ = pd.factorize(panel.frame[column])
        codes = codes.astype(float)
        codes[codes < 0] = np.nan
        coded[:, position] = codes
    return coded.reshape(panel.n_units, panel.n_periods, len(columns))


def filter_exact_matches(
    matched_sets: Mapping[TreatedObservation, np.ndarray],
    exact_values: np.ndarray,
) -> Dict[TreatedObservation, np.ndarray]:
    """Drop candidates whose exact-match values differ from the treated unit's.

    Values are compared at the treated period. A treated observation with a
    missing exact-match value keeps its entry with an empty set.
    """
    filtered: Dict[TreatedObservation, np.ndarray] = {}
    for treated, candidates in matched_sets.items():
        unit, period = treated
        target = exact_values[unit, period]
        if np.isnan(target).any():
            filtered[treated] = candidates[:0]
            continue
        agree = np.all(exact_values[candidates, period] == target, axis=1)
        filtered[treated] = candidates[agree]
    return filtered


def listwise_delete(
    matched_sets: Mapping[TreatedObservation, np.ndarray],
    covariates: np.ndarray,
    refiner: Refiner,
) -> Dict[TreatedObservation, np.ndarray]:
    """Remove every unit with a missing covariate in the refinement window.

    The window is whatever the refiner reads for a treated observation
    (``Refiner.covariate_periods``). Treated observations with incomplete
    covariates of their own are removed from the result; candidates with
    incomplete covariates are removed from their set.
    """
    kept: Dict[TreatedObservation, np.ndarray] = {}
    n_periods = covariates.shape[1]
    for treated, candidates in matched_sets.items():
        unit, period = treated
        periods = [p for p in refiner.covariate_periods(period) if 0 <= p < n_periods]
        if np.isnan(covariates[unit, periods]).any():
            continue
        complete = ~np.isnan(covariates[candidates][:, periods]).any(axis=(1, 2))
        kept[treated] = candidates[complete]
    return kept
